from .gate import VisitorGateBase, InMemoryVisitorGate, VisitorRecord, visitor_gate
from .activity_log import (
    ActivityLogBase,
    ActivityLogEntry,
    InMemoryActivityLog,
    activity_log,
    STATUS_SUCCESS,
    STATUS_BLOCKED,
    STATUS_ERROR,
)

__all__ = [
    "VisitorGateBase",
    "InMemoryVisitorGate",
    "VisitorRecord",
    "visitor_gate",
    "ActivityLogBase",
    "ActivityLogEntry",
    "InMemoryActivityLog",
    "activity_log",
    "STATUS_SUCCESS",
    "STATUS_BLOCKED",
    "STATUS_ERROR",
]
