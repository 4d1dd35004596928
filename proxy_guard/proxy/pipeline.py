"""
Per-request proxy pipeline.

Validating -> Gating -> Fetching -> (Decoding -> Resolving charset ->
Rewriting -> Emitting | Passthrough emitting) -> Logged, with Blocked and
Error as the other terminal states. Every terminal state produces exactly
one activity log entry before the response is handed to the server.
"""

import asyncio
import logging
from typing import Iterable, Optional, Tuple

import httpx
from fastapi.responses import Response
from opentelemetry import trace

from proxy_guard.utils.exception_logging import log_exception_with_details
from proxy_guard.utils.traced_requests import traced_request
from proxy_guard.vars import PROXY_FOREIGN_REDIRECTS, PROXY_MAX_REWRITE_BYTES
from proxy_guard.visitors import (
    ActivityLogBase,
    VisitorGateBase,
    STATUS_BLOCKED,
    STATUS_ERROR,
    STATUS_SUCCESS,
)
from .context import ProxyRequest, ProxyState
from .decoding import (
    corrected_content_type,
    decode_body,
    decode_text,
    encode_text,
    is_supported_encoding,
    resolve_charset,
)
from .emitter import (
    Headers,
    emit_buffered_original,
    emit_passthrough,
    emit_rewritten,
    response_headers,
)
from .errors import (
    Blocked,
    DecodeError,
    ForeignRedirectBlocked,
    ProxyError,
    RewriteError,
    UpstreamError,
)
from .fetcher import UpstreamFetcher, UpstreamResponse, classify_transport_error, prepare_headers
from .rewriter import (
    FOREIGN_REDIRECT_POLICIES,
    RewriteContext,
    is_rewritable,
    origin_of,
    rewrite_location,
    rewrite_text,
)

logger = logging.getLogger("uvicorn.error")
tracer = trace.get_tracer(__name__)

# Statuses that never carry a body worth rewriting
_BODYLESS_STATUSES = {204, 304}


class ProxyPipeline:
    def __init__(
        self,
        gate: VisitorGateBase,
        activity: ActivityLogBase,
        fetcher: UpstreamFetcher,
        foreign_redirects: str = PROXY_FOREIGN_REDIRECTS,
        max_rewrite_bytes: int = PROXY_MAX_REWRITE_BYTES,
    ):
        if foreign_redirects not in FOREIGN_REDIRECT_POLICIES:
            logger.warning(
                f"[Proxy] Unknown foreign redirect policy {foreign_redirects!r}, using 'proxy'"
            )
            foreign_redirects = "proxy"
        self.gate = gate
        self.activity = activity
        self.fetcher = fetcher
        self.foreign_redirects = foreign_redirects
        self.max_rewrite_bytes = max_rewrite_bytes

    async def record(
        self, req: ProxyRequest, status: str, response_status: Optional[int] = None
    ) -> None:
        """Write the single activity entry for this request."""
        if req.is_logged:
            return
        req.logged_status = status
        try:
            await self.activity.log_attempt(
                req.visitor.ip,
                req.visitor.fingerprint,
                req.target_url,
                status,
                response_status=response_status,
                hide_referer=req.options.hide_referer,
                remove_cookies=req.options.remove_cookies,
                user_agent=req.visitor.user_agent,
            )
        except Exception as e:
            log_exception_with_details(
                logger, "[Proxy] Activity log failed:", e, level=logging.WARNING
            )

    async def _fail(self, req: ProxyRequest, response_status: Optional[int] = None) -> None:
        req.transition(ProxyState.ERROR)
        await self.record(req, STATUS_ERROR, response_status)

    async def admit(self, req: ProxyRequest) -> None:
        """Consult the visitor gate; raises `Blocked` after logging the attempt."""
        req.transition(ProxyState.GATING)
        blocked = await self.gate.is_blocked(
            req.visitor.ip, req.visitor.fingerprint, req.visitor.user_agent
        )
        if blocked:
            logger.warning(
                f"[Proxy] Blocked visitor {req.visitor.describe()}: {req.method} {req.target_url}"
            )
            req.transition(ProxyState.BLOCKED)
            await self.record(req, STATUS_BLOCKED)
            raise Blocked()

    async def serve(
        self, req: ProxyRequest, incoming_headers: Iterable[Tuple[str, str]]
    ) -> Response:
        with traced_request(
            tracer,
            operation="proxy_request",
            target_url=req.target_url,
            visitor=req.visitor.describe(),
            start_message=f"[Proxy] {req.visitor.describe()} -> {req.target_url}",
            extra_attrs={
                "proxy.method": req.method,
                "proxy.hide_referer": req.options.hide_referer,
                "proxy.remove_cookies": req.options.remove_cookies,
            },
        ) as span:
            try:
                await self.admit(req)
                req.transition(ProxyState.FETCHING)
                headers = prepare_headers(incoming_headers, req.target_url, req.options)
                upstream = await self.fetcher.fetch(req.target_url, headers)
                span.set_attribute("proxy.status_code", upstream.status_code)
                return await self._emit(req, upstream, span)
            except UpstreamError as e:
                logger.error(f"[Proxy] Upstream failure for {req.target_url}: {e.detail}")
                span.set_attribute("proxy.error", e.kind)
                await self._fail(req)
                raise
            except ProxyError as e:
                span.set_attribute("proxy.error", e.message)
                if not req.is_logged:
                    await self._fail(req)
                raise
            except asyncio.CancelledError:
                logger.info(f"[Proxy] Request for {req.target_url} cancelled")
                span.set_attribute("proxy.error", "cancelled")
                await self._fail(req)
                raise
            except Exception as e:
                log_exception_with_details(logger, f"[Proxy] {req.target_url}:", e)
                span.set_attribute("proxy.error", "internal_error")
                await self._fail(req)
                raise ProxyError(error="internal_error") from e
            finally:
                span.set_attribute("proxy.state", req.state.value)

    def _should_rewrite(self, upstream: UpstreamResponse) -> bool:
        if upstream.status_code in _BODYLESS_STATUSES:
            return False
        if not is_rewritable(upstream.content_type):
            return False
        if not is_supported_encoding(upstream.content_encoding):
            return False
        length = upstream.content_length
        if length is not None and length > self.max_rewrite_bytes:
            logger.info(
                f"[Proxy] {upstream.url} is {length} bytes, streaming without rewriting"
            )
            return False
        return True

    async def _emit(self, req: ProxyRequest, upstream: UpstreamResponse, span) -> Response:
        handed_off = False
        try:
            ctx = RewriteContext(
                base_url=upstream.url,
                proxy_base=req.proxy_base,
                options=req.options,
                foreign_redirects=self.foreign_redirects,
            )

            location = upstream.header("location")
            new_location = None
            if location:
                new_location = rewrite_location(location, ctx)
                if new_location is None:
                    logger.warning(
                        f"[Proxy] Blocked redirect from {upstream.url} to {location}"
                    )
                    await self._fail(req, upstream.status_code)
                    raise ForeignRedirectBlocked(error=origin_of(location))
                span.set_attribute("proxy.rewritten_location", new_location)

            headers = response_headers(upstream, req.options, location=new_location)

            if not self._should_rewrite(upstream):
                req.transition(ProxyState.PASSTHROUGH_EMITTING)
                span.set_attribute("proxy.rewritten", False)
                await self.record(req, STATUS_SUCCESS, upstream.status_code)
                req.transition(ProxyState.LOGGED)
                handed_off = True
                return emit_passthrough(upstream, headers)

            try:
                raw = await upstream.read_raw()
            except httpx.HTTPError as e:
                raise classify_transport_error(e) from e

            response = self._rewrite(req, upstream, headers, raw, ctx)
            span.set_attribute("proxy.rewritten", response is not None)
            if response is None:
                response = emit_buffered_original(upstream.status_code, headers, raw)

            await self.record(req, STATUS_SUCCESS, upstream.status_code)
            req.transition(ProxyState.LOGGED)
            return response
        finally:
            if not handed_off:
                await upstream.aclose()

    def _rewrite(
        self,
        req: ProxyRequest,
        upstream: UpstreamResponse,
        headers: Headers,
        raw: bytes,
        ctx: RewriteContext,
    ) -> Optional[Response]:
        """Rewritten response, or None when the original bytes must be sent."""
        try:
            req.transition(ProxyState.DECODING)
            body = decode_body(raw, upstream.content_encoding)

            req.transition(ProxyState.RESOLVING_CHARSET)
            charset = resolve_charset(upstream.content_type)
            text = decode_text(body, charset)

            req.transition(ProxyState.REWRITING)
            rewritten = rewrite_text(text, upstream.content_type, ctx)

            req.transition(ProxyState.EMITTING)
            return emit_rewritten(
                upstream.status_code,
                headers,
                encode_text(rewritten, charset),
                corrected_content_type(upstream.content_type, charset),
            )
        except (DecodeError, RewriteError) as e:
            logger.warning(
                f"[Rewrite] Sending {upstream.url} unmodified: {e}"
            )
        except Exception as e:
            log_exception_with_details(
                logger, f"[Rewrite] Unexpected failure for {upstream.url}:", e
            )
        req.transition(ProxyState.EMITTING)
        return None
