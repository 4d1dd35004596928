# Ensure tests import modules from this service directory first, so
# `import proxy_guard.*` resolves to the working tree even without an install.
import os
import sys

import pytest

SERVICE_ROOT = os.path.dirname(__file__)

if SERVICE_ROOT not in sys.path:
    sys.path.insert(0, SERVICE_ROOT)

from proxy_guard.proxy.pipeline import ProxyPipeline  # noqa: E402
from proxy_guard.utils_tests.fake_upstream import (  # noqa: E402
    FakeUpstream,
    upstream_response,
)
from proxy_guard.visitors import InMemoryActivityLog, InMemoryVisitorGate  # noqa: E402


@pytest.fixture
def fake_upstream():
    """
    Factory for fake origins.

    `fake_upstream(responder)` answers every request through the callable;
    `fake_upstream(status_code=..., headers=..., content=...)` answers every
    request with a fresh copy of the same canned response.
    """

    def _create(responder=None, **canned):
        if responder is None:
            return FakeUpstream(lambda request: upstream_response(**canned))
        return FakeUpstream(responder)

    return _create


@pytest.fixture
def visitor_gate():
    return InMemoryVisitorGate()


@pytest.fixture
def activity(visitor_gate):
    return InMemoryActivityLog(visitor_gate)


@pytest.fixture
def make_pipeline(visitor_gate, activity):
    def _create(upstream: FakeUpstream, follow_redirects: bool = True, **kwargs):
        return ProxyPipeline(
            visitor_gate,
            activity,
            upstream.fetcher(follow_redirects=follow_redirects),
            **kwargs,
        )

    return _create
