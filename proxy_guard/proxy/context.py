import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional

from proxy_guard.utils import token_fingerprint

logger = logging.getLogger("uvicorn.error")


class ProxyState(str, Enum):
    VALIDATING = "validating"
    GATING = "gating"
    FETCHING = "fetching"
    DECODING = "decoding"
    RESOLVING_CHARSET = "resolving_charset"
    REWRITING = "rewriting"
    EMITTING = "emitting"
    PASSTHROUGH_EMITTING = "passthrough_emitting"
    BLOCKED = "blocked"
    ERROR = "error"
    LOGGED = "logged"


TERMINAL_STATES = {ProxyState.BLOCKED, ProxyState.ERROR, ProxyState.LOGGED}


@dataclass(frozen=True)
class VisitorIdentity:
    ip: str
    fingerprint: Optional[str] = None
    user_agent: Optional[str] = None

    def describe(self) -> str:
        """Loggable form; the fingerprint is reduced to a digest."""
        if not self.fingerprint:
            return self.ip
        return f"{self.ip} fp({token_fingerprint(self.fingerprint)})"


@dataclass(frozen=True)
class ProxyOptions:
    hide_referer: bool = False
    remove_cookies: bool = False


@dataclass
class ProxyRequest:
    """Everything the pipeline knows about one inbound proxy request.

    Passed explicitly through every stage instead of being captured by
    callbacks, so concurrent requests never share option state.
    """

    target_url: str
    visitor: VisitorIdentity
    options: ProxyOptions = field(default_factory=ProxyOptions)
    method: str = "GET"
    proxy_base: str = ""
    state: ProxyState = ProxyState.VALIDATING
    logged_status: Optional[str] = None

    def transition(self, state: ProxyState) -> None:
        if self.state in TERMINAL_STATES:
            logger.debug(
                f"[Proxy] Ignoring transition {self.state.value} -> {state.value} "
                f"for {self.target_url}"
            )
            return
        logger.debug(
            f"[Proxy] {self.target_url}: {self.state.value} -> {state.value}"
        )
        self.state = state

    @property
    def is_logged(self) -> bool:
        return self.logged_status is not None
