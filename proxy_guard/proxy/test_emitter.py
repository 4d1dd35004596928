import httpx
import pytest
from fastapi.responses import StreamingResponse

from proxy_guard.proxy.context import ProxyOptions
from proxy_guard.proxy.emitter import (
    emit_buffered_original,
    emit_passthrough,
    emit_rewritten,
    response_headers,
)
from proxy_guard.proxy.fetcher import UpstreamFetcher
from proxy_guard.utils_tests.fake_upstream import upstream_response

TARGET = "https://example.com/page"


async def _upstream(status=200, headers=None, content=b""):
    def handler(request: httpx.Request) -> httpx.Response:
        return upstream_response(status, headers=headers, content=content)

    fetcher = UpstreamFetcher(
        follow_redirects=False, transport=httpx.MockTransport(handler)
    )
    return await fetcher.fetch(TARGET, {})


def _header_list(response):
    return [(k.decode("latin-1"), v.decode("latin-1")) for k, v in response.raw_headers]


class TestResponseHeaders:
    @pytest.mark.asyncio
    async def test_hop_by_hop_dropped_and_cookies_kept(self):
        upstream = await _upstream(
            headers=[
                ("Content-Type", "text/html"),
                ("Connection", "close"),
                ("Keep-Alive", "timeout=5"),
                ("Set-Cookie", "a=1; Path=/"),
                ("Set-Cookie", "b=2; Path=/"),
                ("X-Custom", "yes"),
            ]
        )
        try:
            headers = response_headers(upstream, ProxyOptions())
        finally:
            await upstream.aclose()

        names = [name for name, _ in headers]
        assert "connection" not in names
        assert "keep-alive" not in names
        assert ("x-custom", "yes") in headers
        assert [v for n, v in headers if n == "set-cookie"] == ["a=1; Path=/", "b=2; Path=/"]

    @pytest.mark.asyncio
    async def test_set_cookie_removed_on_request(self):
        upstream = await _upstream(headers=[("Set-Cookie", "a=1"), ("X-Custom", "yes")])
        try:
            headers = response_headers(upstream, ProxyOptions(remove_cookies=True))
        finally:
            await upstream.aclose()
        assert all(name != "set-cookie" for name, _ in headers)
        assert ("x-custom", "yes") in headers

    @pytest.mark.asyncio
    async def test_location_substituted(self):
        upstream = await _upstream(status=302, headers=[("Location", "/login")])
        try:
            headers = response_headers(upstream, ProxyOptions(), location="http://proxy/x")
        finally:
            await upstream.aclose()
        assert ("location", "http://proxy/x") in headers
        assert ("location", "/login") not in headers


class TestEmitRewritten:
    def test_framing_headers_recomputed(self):
        body = "<p>ünïcode</p>".encode("utf-8")
        headers = [
            ("content-type", "text/html; charset=klingon-8"),
            ("content-encoding", "gzip"),
            ("content-length", "9999"),
            ("transfer-encoding", "chunked"),
            ("cache-control", "no-cache"),
        ]
        response = emit_rewritten(200, headers, body, "text/html; charset=utf-8")
        emitted = _header_list(response)

        assert response.status_code == 200
        assert response.body == body
        assert ("content-length", str(len(body))) in emitted
        assert ("content-type", "text/html; charset=utf-8") in emitted
        assert ("cache-control", "no-cache") in emitted
        assert not any(n in ("content-encoding", "transfer-encoding") for n, _ in emitted)
        assert [n for n, _ in emitted].count("content-length") == 1


class TestEmitBufferedOriginal:
    def test_original_encoding_kept(self):
        body = b"\x1f\x8bnot really gzip"
        headers = [("content-type", "text/html"), ("content-encoding", "gzip")]
        response = emit_buffered_original(200, headers, body)
        emitted = _header_list(response)

        assert response.body == body
        assert ("content-encoding", "gzip") in emitted
        assert ("content-length", str(len(body))) in emitted


class TestEmitPassthrough:
    @pytest.mark.asyncio
    async def test_streams_bytes_and_closes_upstream(self):
        png = b"\x89PNG\r\n\x1a\n" + bytes(range(256))
        upstream = await _upstream(
            headers=[("Content-Type", "image/png"), ("X-Custom", "yes")], content=png
        )
        headers = response_headers(upstream, ProxyOptions())
        response = emit_passthrough(upstream, headers)

        assert isinstance(response, StreamingResponse)
        assert ("x-custom", "yes") in _header_list(response)

        chunks = [chunk async for chunk in response.body_iterator]
        assert b"".join(chunks) == png
        assert upstream._client.is_closed
