import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from itertools import count
from typing import Optional, Tuple

from proxy_guard.utils import token_fingerprint
from proxy_guard.vars import VISITOR_GATE

logger = logging.getLogger("uvicorn.error")


def _now() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class VisitorRecord:
    id: int
    ip_address: str
    fingerprint: Optional[str] = None
    user_agent: Optional[str] = None
    blocked: bool = False
    first_seen: datetime = field(default_factory=_now)
    last_seen: datetime = field(default_factory=_now)


class VisitorGateBase(ABC):
    """
    Answers whether a visitor may use the proxy.

    Implementations own the visitor records: `is_blocked` creates a record
    the first time an identity is seen and refreshes `last_seen` otherwise.
    """

    @abstractmethod
    async def is_blocked(
        self, ip: str, fingerprint: Optional[str], user_agent: Optional[str] = None
    ) -> bool:
        pass

    @abstractmethod
    async def upsert(
        self, ip: str, fingerprint: Optional[str], user_agent: Optional[str] = None
    ) -> VisitorRecord:
        pass


def visitor_gate(name: str = VISITOR_GATE) -> VisitorGateBase:
    if name == "InMemoryVisitorGate":
        return InMemoryVisitorGate()
    cls = globals().get(name)
    if cls and isinstance(cls, type) and issubclass(cls, VisitorGateBase):
        return cls()
    else:
        raise ValueError(f"Unknown visitor gate type: {name}")


class InMemoryVisitorGate(VisitorGateBase):
    def __init__(self):
        self._visitors: dict[Tuple[str, Optional[str]], VisitorRecord] = {}
        self._ids = count(1)

    def get(self, ip: str, fingerprint: Optional[str]) -> VisitorRecord | None:
        return self._visitors.get((ip, fingerprint or None))

    async def upsert(
        self, ip: str, fingerprint: Optional[str], user_agent: Optional[str] = None
    ) -> VisitorRecord:
        key = (ip, fingerprint or None)
        visitor = self._visitors.get(key)
        if visitor is None:
            visitor = VisitorRecord(
                id=next(self._ids),
                ip_address=ip,
                fingerprint=fingerprint or None,
                user_agent=user_agent,
            )
            self._visitors[key] = visitor
            logger.info(
                f"[Visitors] New visitor {visitor.id} from {ip} "
                f"fp({token_fingerprint(fingerprint)})"
            )
        else:
            visitor.last_seen = _now()
            if user_agent:
                visitor.user_agent = user_agent
        return visitor

    async def is_blocked(
        self, ip: str, fingerprint: Optional[str], user_agent: Optional[str] = None
    ) -> bool:
        visitor = await self.upsert(ip, fingerprint, user_agent)
        return visitor.blocked

    def set_blocked(self, ip: str, fingerprint: Optional[str], blocked: bool) -> VisitorRecord:
        """Admin-side toggle; creates the record if the visitor is unknown."""
        key = (ip, fingerprint or None)
        visitor = self._visitors.get(key)
        if visitor is None:
            visitor = VisitorRecord(
                id=next(self._ids), ip_address=ip, fingerprint=fingerprint or None
            )
            self._visitors[key] = visitor
        visitor.blocked = blocked
        logger.info(
            f"[Visitors] Visitor {visitor.id} {'blocked' if blocked else 'unblocked'}"
        )
        return visitor
