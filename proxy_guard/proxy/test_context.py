import pytest

from proxy_guard.proxy.context import (
    TERMINAL_STATES,
    ProxyRequest,
    ProxyState,
    VisitorIdentity,
)


def _request() -> ProxyRequest:
    return ProxyRequest(
        target_url="https://example.com/",
        visitor=VisitorIdentity(ip="198.51.100.1", fingerprint="fp-secret"),
    )


class TestProxyRequestState:
    def test_starts_validating(self):
        req = _request()
        assert req.state == ProxyState.VALIDATING
        assert req.is_logged is False

    def test_happy_path(self):
        req = _request()
        for state in (
            ProxyState.GATING,
            ProxyState.FETCHING,
            ProxyState.DECODING,
            ProxyState.RESOLVING_CHARSET,
            ProxyState.REWRITING,
            ProxyState.EMITTING,
            ProxyState.LOGGED,
        ):
            req.transition(state)
            assert req.state == state

    @pytest.mark.parametrize("terminal", sorted(TERMINAL_STATES, key=lambda s: s.value))
    def test_terminal_states_are_final(self, terminal):
        req = _request()
        req.transition(terminal)
        req.transition(ProxyState.FETCHING)
        req.transition(ProxyState.LOGGED)
        assert req.state == terminal


class TestVisitorIdentity:
    def test_describe_masks_fingerprint(self):
        described = VisitorIdentity(ip="198.51.100.1", fingerprint="fp-secret").describe()
        assert described.startswith("198.51.100.1 fp(")
        assert "fp-secret" not in described

    def test_describe_without_fingerprint(self):
        assert VisitorIdentity(ip="198.51.100.1").describe() == "198.51.100.1"
