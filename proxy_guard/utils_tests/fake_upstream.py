from typing import Callable, List, Optional, Sequence, Tuple

import httpx

from proxy_guard.proxy.fetcher import UpstreamFetcher


def upstream_response(
    status_code: int = 200,
    headers: Optional[Sequence[Tuple[str, str]]] = None,
    content: bytes = b"",
) -> httpx.Response:
    """
    Response as a real origin would stream it.

    Built on a raw stream rather than `content=` so httpx neither decodes the
    body up front nor marks the stream as consumed; `aiter_raw()` then yields
    the bytes exactly as given, still content-encoded.
    """
    headers = list(headers or [])
    if content and not any(name.lower() == "content-length" for name, _ in headers):
        headers.append(("Content-Length", str(len(content))))
    return httpx.Response(status_code, headers=headers, stream=httpx.ByteStream(content))


class FakeUpstream:
    """
    Stand-in for remote origins: a MockTransport handler that records every
    request it receives and answers through `responder`.
    """

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.responder = responder
        self.requests: List[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    @property
    def calls(self) -> int:
        return len(self.requests)

    def fetcher(self, follow_redirects: bool = True, **kwargs) -> UpstreamFetcher:
        return UpstreamFetcher(
            follow_redirects=follow_redirects,
            transport=httpx.MockTransport(self),
            **kwargs,
        )
