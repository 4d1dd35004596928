import logging
from abc import ABC, abstractmethod
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import List, Optional

from prometheus_client import Counter

from proxy_guard.vars import ACTIVITY_LOG, ACTIVITY_LOG_MAX_ENTRIES
from .gate import VisitorGateBase

logger = logging.getLogger("uvicorn.error")

STATUS_SUCCESS = "success"
STATUS_BLOCKED = "blocked"
STATUS_ERROR = "error"

proxy_attempts = Counter(
    "proxy_attempts_total", "Proxy attempts by logged outcome", ["status"]
)


@dataclass
class ActivityLogEntry:
    visitor_id: Optional[int]
    url: str
    status: str
    response_status: Optional[int] = None
    hide_referer: bool = False
    remove_cookies: bool = False
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class ActivityLogBase(ABC):
    """Append-only record of proxy attempt outcomes."""

    @abstractmethod
    async def log_attempt(
        self,
        ip: str,
        fingerprint: Optional[str],
        url: str,
        status: str,
        response_status: Optional[int] = None,
        hide_referer: bool = False,
        remove_cookies: bool = False,
        user_agent: Optional[str] = None,
    ) -> None:
        pass


def activity_log(gate: VisitorGateBase, name: str = ACTIVITY_LOG) -> ActivityLogBase:
    if name == "InMemoryActivityLog":
        return InMemoryActivityLog(gate)
    cls = globals().get(name)
    if cls and isinstance(cls, type) and issubclass(cls, ActivityLogBase):
        return cls(gate)
    else:
        raise ValueError(f"Unknown activity log type: {name}")


class InMemoryActivityLog(ActivityLogBase):
    """Bounded in-process log; the oldest entries fall off first."""

    def __init__(self, gate: VisitorGateBase, max_entries: int = ACTIVITY_LOG_MAX_ENTRIES):
        self.gate = gate
        self._entries: deque[ActivityLogEntry] = deque(maxlen=max_entries)

    @property
    def entries(self) -> List[ActivityLogEntry]:
        return list(self._entries)

    async def log_attempt(
        self,
        ip: str,
        fingerprint: Optional[str],
        url: str,
        status: str,
        response_status: Optional[int] = None,
        hide_referer: bool = False,
        remove_cookies: bool = False,
        user_agent: Optional[str] = None,
    ) -> None:
        visitor = await self.gate.upsert(ip, fingerprint, user_agent)
        self._entries.append(
            ActivityLogEntry(
                visitor_id=visitor.id,
                url=url,
                status=status,
                response_status=response_status,
                hide_referer=hide_referer,
                remove_cookies=remove_cookies,
            )
        )
        proxy_attempts.labels(status=status).inc()
        logger.info(
            f"[Visitors] Visitor {visitor.id} {status} {url}"
            + (f" ({response_status})" if response_status is not None else "")
        )
