import logging
from typing import Optional
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import Response

from proxy_guard.models import ProxyPostRequest, ProxyRedirectResponse
from proxy_guard.vars import FINGERPRINT_HEADER, PROXY_ROUTE, PUBLIC_URL
from proxy_guard.visitors import (
    ActivityLogBase,
    VisitorGateBase,
    STATUS_SUCCESS,
    activity_log,
    visitor_gate,
)
from .context import ProxyOptions, ProxyRequest, ProxyState, VisitorIdentity
from .fetcher import UpstreamFetcher
from .pipeline import ProxyPipeline
from .url_validation import validate_target_url

router = APIRouter(prefix="/api")
logger = logging.getLogger("uvicorn.error")

_gate = visitor_gate()
_activity = activity_log(_gate)


def get_visitor_gate() -> VisitorGateBase:
    return _gate


def get_activity_log() -> ActivityLogBase:
    return _activity


def get_fetcher() -> UpstreamFetcher:
    return UpstreamFetcher()


def get_pipeline(
    gate: VisitorGateBase = Depends(get_visitor_gate),
    activity: ActivityLogBase = Depends(get_activity_log),
    fetcher: UpstreamFetcher = Depends(get_fetcher),
) -> ProxyPipeline:
    return ProxyPipeline(gate, activity, fetcher)


def visitor_identity(request: Request) -> VisitorIdentity:
    ip = request.client.host if request.client else "0.0.0.0"
    return VisitorIdentity(
        ip=ip,
        fingerprint=request.headers.get(FINGERPRINT_HEADER) or None,
        user_agent=request.headers.get("user-agent"),
    )


def proxy_base_url(request: Request) -> str:
    """Origin rewritten links point at: PUBLIC_URL, else the inbound host."""
    if PUBLIC_URL:
        return PUBLIC_URL
    host = request.headers.get("host") or (request.url.netloc or "localhost")
    return f"{request.url.scheme}://{host}"


def _flag(value: Optional[str]) -> bool:
    return (value or "").lower() == "true"


def redirect_path(target_url: str, options: ProxyOptions) -> str:
    """Relative GET link equivalent to a POSTed proxy request."""
    params = [("url", target_url)]
    if options.hide_referer:
        params.append(("hideReferer", "true"))
    if options.remove_cookies:
        params.append(("removeCookies", "true"))
    return f"{PROXY_ROUTE}?{urlencode(params)}"


@router.get("/proxy")
async def proxy_get(
    request: Request,
    url: Optional[str] = Query(None, description="Absolute http(s) URL to fetch"),
    hide_referer: Optional[str] = Query(
        None, alias="hideReferer", description="Strip referer/origin headers"
    ),
    remove_cookies: Optional[str] = Query(
        None, alias="removeCookies", description="Strip cookies both ways"
    ),
    pipeline: ProxyPipeline = Depends(get_pipeline),
) -> Response:
    target_url = validate_target_url(url)
    proxy_request = ProxyRequest(
        target_url=target_url,
        visitor=visitor_identity(request),
        options=ProxyOptions(
            hide_referer=_flag(hide_referer), remove_cookies=_flag(remove_cookies)
        ),
        method="GET",
        proxy_base=proxy_base_url(request),
    )
    return await pipeline.serve(proxy_request, request.headers.items())


@router.post("/proxy", response_model=ProxyRedirectResponse)
async def proxy_post(
    request: Request,
    body: Optional[ProxyPostRequest] = None,
    pipeline: ProxyPipeline = Depends(get_pipeline),
) -> ProxyRedirectResponse:
    """Validate and gate, then hand back the GET link that serves the page."""
    if body is None:
        body = ProxyPostRequest()
    target_url = validate_target_url(body.url)
    options = ProxyOptions(
        hide_referer=body.hideReferer is True, remove_cookies=body.removeCookies is True
    )
    proxy_request = ProxyRequest(
        target_url=target_url,
        visitor=visitor_identity(request),
        options=options,
        method="POST",
        proxy_base=proxy_base_url(request),
    )
    await pipeline.admit(proxy_request)
    await pipeline.record(proxy_request, STATUS_SUCCESS)
    proxy_request.transition(ProxyState.LOGGED)
    logger.info(f"[Proxy] POST for {target_url} answered with redirect descriptor")
    return ProxyRedirectResponse(
        success=True,
        message="Proxy request successful",
        url=redirect_path(target_url, options),
    )
