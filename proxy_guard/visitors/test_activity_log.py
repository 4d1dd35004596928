import pytest
from prometheus_client import REGISTRY

from proxy_guard.visitors import (
    InMemoryActivityLog,
    InMemoryVisitorGate,
    STATUS_BLOCKED,
    STATUS_ERROR,
    STATUS_SUCCESS,
    activity_log,
)


def _count(status: str) -> float:
    return REGISTRY.get_sample_value("proxy_attempts_total", {"status": status}) or 0.0


class TestActivityLogFactory:
    def test_default(self):
        assert isinstance(activity_log(InMemoryVisitorGate()), InMemoryActivityLog)

    def test_unknown(self):
        with pytest.raises(ValueError, match="Unknown activity log type"):
            activity_log(InMemoryVisitorGate(), "PostgresActivityLog")


class TestInMemoryActivityLog:
    @pytest.mark.asyncio
    async def test_entry_linked_to_visitor(self):
        gate = InMemoryVisitorGate()
        log = InMemoryActivityLog(gate)

        await log.log_attempt(
            "198.51.100.1",
            "fp-a",
            "https://example.com/",
            STATUS_SUCCESS,
            response_status=200,
            hide_referer=True,
            user_agent="agent/1",
        )

        visitor = gate.get("198.51.100.1", "fp-a")
        entry = log.entries[0]
        assert entry.visitor_id == visitor.id
        assert entry.url == "https://example.com/"
        assert entry.status == STATUS_SUCCESS
        assert entry.response_status == 200
        assert entry.hide_referer is True
        assert entry.remove_cookies is False
        assert visitor.user_agent == "agent/1"

    @pytest.mark.asyncio
    async def test_entries_in_order(self):
        log = InMemoryActivityLog(InMemoryVisitorGate())
        for status in (STATUS_SUCCESS, STATUS_BLOCKED, STATUS_ERROR):
            await log.log_attempt("198.51.100.1", None, "https://example.com/", status)
        assert [e.status for e in log.entries] == ["success", "blocked", "error"]

    @pytest.mark.asyncio
    async def test_bounded(self):
        log = InMemoryActivityLog(InMemoryVisitorGate(), max_entries=3)
        for i in range(5):
            await log.log_attempt("198.51.100.1", None, f"https://example.com/{i}", "success")
        assert [e.url for e in log.entries] == [
            "https://example.com/2",
            "https://example.com/3",
            "https://example.com/4",
        ]

    @pytest.mark.asyncio
    async def test_counter_incremented(self):
        log = InMemoryActivityLog(InMemoryVisitorGate())
        before = _count(STATUS_BLOCKED)
        await log.log_attempt("198.51.100.1", None, "https://example.com/", STATUS_BLOCKED)
        assert _count(STATUS_BLOCKED) == before + 1
