import asyncio
import logging
import socket
import ssl
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, Iterable, Optional, Tuple

import httpx

from proxy_guard.utils.exception_logging import find_exception_in_chain
from proxy_guard.vars import (
    FINGERPRINT_HEADER,
    PROXY_FOLLOW_REDIRECTS,
    PROXY_MAX_REDIRECTS,
    PROXY_TIMEOUT,
    PROXY_VERIFY_TLS,
)
from .context import ProxyOptions
from .decoding import ACCEPT_ENCODING
from .errors import UpstreamError
from .rewriter import origin_of, unwrap_proxy_url

logger = logging.getLogger("uvicorn.error")

# Hop-by-hop headers that should NOT be forwarded (RFC 2616)
HOP_BY_HOP_HEADERS = {
    "connection",
    "keep-alive",
    "proxy-authenticate",
    "proxy-authorization",
    "te",
    "trailers",
    "transfer-encoding",
    "upgrade",
}

# Headers that would reveal the visitor (or the proxy hop) to the target
FORWARDED_HEADERS = {
    "forwarded",
    "x-forwarded-for",
    "x-forwarded-host",
    "x-forwarded-proto",
    "x-forwarded-prefix",
    "x-real-ip",
    "x-scheme",
}

_DNS_FAILURE_MARKERS = (
    "name or service not known",
    "nodename nor servname",
    "getaddrinfo",
    "temporary failure in name resolution",
    "no address associated",
)


def prepare_headers(
    incoming: Iterable[Tuple[str, str]], target_url: str, options: ProxyOptions
) -> Dict[str, str]:
    """
    Build the outbound header set for the upstream GET.

    Host is left to the HTTP client so it matches the target (changeOrigin
    semantics). Forwarding headers are dropped so the visitor's address does
    not reach the target.
    """
    dropped = HOP_BY_HOP_HEADERS | FORWARDED_HEADERS | {
        "host",
        "content-length",
        "content-type",
        "accept-encoding",
        FINGERPRINT_HEADER.lower(),
    }
    headers: Dict[str, str] = {}
    for name, value in incoming:
        name_lower = name.lower()
        if name_lower in dropped:
            continue
        headers[name_lower] = value

    headers["accept-encoding"] = ACCEPT_ENCODING

    if options.hide_referer:
        headers.pop("referer", None)
        headers.pop("origin", None)
    else:
        if "origin" in headers:
            headers["origin"] = origin_of(target_url)
        if "referer" in headers:
            unwrapped = unwrap_proxy_url(headers["referer"])
            if unwrapped:
                headers["referer"] = unwrapped

    if options.remove_cookies:
        headers.pop("cookie", None)

    return headers


def classify_transport_error(exc: Exception) -> UpstreamError:
    """Map an httpx failure onto a stable error kind."""
    detail = f"{type(exc).__name__}: {exc}"
    if isinstance(exc, httpx.TimeoutException):
        return UpstreamError("timeout", detail)
    if isinstance(exc, httpx.TooManyRedirects):
        return UpstreamError("too_many_redirects", detail)
    if isinstance(exc, httpx.ConnectError):
        if find_exception_in_chain(exc, ssl.SSLError) is not None or "ssl" in str(
            exc
        ).lower():
            return UpstreamError("tls_failed", detail)
        if find_exception_in_chain(exc, socket.gaierror) is not None or any(
            marker in str(exc).lower() for marker in _DNS_FAILURE_MARKERS
        ):
            return UpstreamError("dns_failed", detail)
        return UpstreamError("connection_failed", detail)
    if isinstance(exc, (httpx.ProtocolError, httpx.UnsupportedProtocol)):
        return UpstreamError("protocol_error", detail)
    return UpstreamError("request_failed", detail)


@dataclass(frozen=True)
class UpstreamResponse:
    """
    Status, headers and final URL of an upstream reply, plus its still-open
    raw body stream. Stages read from it and build new values; nothing
    mutates it.
    """

    status_code: int
    headers: Tuple[Tuple[str, str], ...]
    url: str
    _response: httpx.Response = field(repr=False, compare=False)
    _client: httpx.AsyncClient = field(repr=False, compare=False)

    def header(self, name: str) -> Optional[str]:
        name = name.lower()
        for key, value in self.headers:
            if key == name:
                return value
        return None

    @property
    def content_type(self) -> str:
        return self.header("content-type") or ""

    @property
    def content_encoding(self) -> Optional[str]:
        return self.header("content-encoding")

    @property
    def content_length(self) -> Optional[int]:
        value = self.header("content-length")
        try:
            return int(value) if value is not None else None
        except ValueError:
            return None

    async def aiter_raw(self) -> AsyncIterator[bytes]:
        """Body bytes exactly as sent, still content-encoded."""
        async for chunk in self._response.aiter_raw():
            yield chunk

    async def read_raw(self) -> bytes:
        chunks = []
        async for chunk in self.aiter_raw():
            chunks.append(chunk)
        return b"".join(chunks)

    async def aclose(self) -> None:
        try:
            await self._response.aclose()
        finally:
            await self._client.aclose()


class UpstreamFetcher:
    """Issues the GET against the target origin for one proxy request."""

    def __init__(
        self,
        timeout: float = PROXY_TIMEOUT,
        verify: bool = PROXY_VERIFY_TLS,
        follow_redirects: bool = PROXY_FOLLOW_REDIRECTS,
        max_redirects: int = PROXY_MAX_REDIRECTS,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.timeout = timeout
        self.verify = verify
        self.follow_redirects = follow_redirects
        self.max_redirects = max_redirects
        self.transport = transport

    def _client(self) -> httpx.AsyncClient:
        kwargs = {
            "timeout": httpx.Timeout(self.timeout),
            "follow_redirects": self.follow_redirects,
            "max_redirects": self.max_redirects,
        }
        if self.transport is not None:
            kwargs["transport"] = self.transport
        else:
            kwargs["verify"] = self.verify
        return httpx.AsyncClient(**kwargs)

    async def fetch(self, target_url: str, headers: Dict[str, str]) -> UpstreamResponse:
        """
        Open the upstream response in streaming mode.

        The caller owns the returned value and must `aclose()` it. Transport
        failures are raised as `UpstreamError`.
        """
        client = self._client()
        try:
            request = client.build_request("GET", target_url, headers=headers)
            response = await client.send(request, stream=True)
        except asyncio.CancelledError:
            await client.aclose()
            raise
        except httpx.HTTPError as e:
            await client.aclose()
            raise classify_transport_error(e) from e
        except Exception:
            await client.aclose()
            raise

        logger.debug(
            f"[Proxy] Upstream {target_url} answered {response.status_code} "
            f"(final URL {response.url})"
        )
        return UpstreamResponse(
            status_code=response.status_code,
            headers=tuple(
                (key.lower(), value) for key, value in response.headers.multi_items()
            ),
            url=str(response.url),
            _response=response,
            _client=client,
        )
