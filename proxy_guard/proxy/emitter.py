import asyncio
import logging
from typing import AsyncIterator, List, Optional, Tuple

from fastapi.responses import Response, StreamingResponse

from .context import ProxyOptions
from .fetcher import HOP_BY_HOP_HEADERS, UpstreamResponse

logger = logging.getLogger("uvicorn.error")

# Framing headers that no longer describe a body we re-encoded ourselves
REWRITE_DROPPED_HEADERS = {"content-encoding", "transfer-encoding", "content-length"}

Headers = List[Tuple[str, str]]


def _encode_header(value: str) -> bytes:
    try:
        return value.encode("latin-1")
    except UnicodeEncodeError:
        return value.encode("utf-8")


def _raw_headers(headers: Headers) -> List[Tuple[bytes, bytes]]:
    return [(name.encode("latin-1"), _encode_header(value)) for name, value in headers]


def response_headers(
    upstream: UpstreamResponse,
    options: ProxyOptions,
    location: Optional[str] = None,
) -> Headers:
    """
    Header list to send back to the visitor, before any body-specific fixes.

    Hop-by-hop headers are dropped, `Set-Cookie` is dropped when the visitor
    asked for cookie removal, and `Location` is replaced by `location` when
    given.
    """
    headers: Headers = []
    for name, value in upstream.headers:
        if name in HOP_BY_HOP_HEADERS:
            continue
        if name == "set-cookie" and options.remove_cookies:
            continue
        if name == "location" and location is not None:
            value = location
        headers.append((name, value))
    return headers


def emit_rewritten(
    status_code: int, headers: Headers, body: bytes, content_type: str
) -> Response:
    """Buffered response for a rewritten text body with recomputed framing."""
    final_headers = [
        (name, value)
        for name, value in headers
        if name not in REWRITE_DROPPED_HEADERS and name != "content-type"
    ]
    if content_type:
        final_headers.append(("content-type", content_type))
    final_headers.append(("content-length", str(len(body))))

    response = Response(content=body, status_code=status_code)
    response.raw_headers = _raw_headers(final_headers)
    return response


def emit_buffered_original(status_code: int, headers: Headers, body: bytes) -> Response:
    """Original bytes with the original content headers (fallback path)."""
    final_headers = [(name, value) for name, value in headers if name != "content-length"]
    final_headers.append(("content-length", str(len(body))))
    response = Response(content=body, status_code=status_code)
    response.raw_headers = _raw_headers(final_headers)
    return response


async def _stream_body(upstream: UpstreamResponse) -> AsyncIterator[bytes]:
    try:
        async for chunk in upstream.aiter_raw():
            yield chunk
    except asyncio.CancelledError:
        logger.info(f"[Proxy] Visitor disconnected while streaming {upstream.url}")
        raise
    except Exception as e:
        # Headers are already on the wire; the server drops the connection.
        logger.warning(f"[Proxy] Passthrough of {upstream.url} aborted: {e}")
        raise
    finally:
        await upstream.aclose()


def emit_passthrough(upstream: UpstreamResponse, headers: Headers) -> StreamingResponse:
    """Stream the raw upstream body without buffering it."""
    response = StreamingResponse(_stream_body(upstream), status_code=upstream.status_code)
    response.raw_headers = _raw_headers(headers)
    return response
