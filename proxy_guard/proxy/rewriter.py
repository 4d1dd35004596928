"""
Pattern-based link rewriting for proxied HTML, CSS and JavaScript.

Every resource reference found in the text is resolved against the page URL
and replaced by ``<proxy-base>/api/proxy?url=<encoded absolute URL>`` so the
browser keeps loading through the proxy. Values that are already absolute,
protocol-relative, fragments or non-navigational schemes are left untouched.
"""

import html
import logging
import re
from dataclasses import dataclass, field
from typing import Callable, Optional
from urllib.parse import quote, urljoin, urlsplit, parse_qs

from proxy_guard.vars import PROXY_ROUTE
from .context import ProxyOptions
from .errors import RewriteError

logger = logging.getLogger("uvicorn.error")

HTML_TYPES = ("text/html",)
CSS_TYPES = ("text/css",)
JS_TYPES = ("application/javascript", "text/javascript")
REWRITABLE_TYPES = HTML_TYPES + CSS_TYPES + JS_TYPES

FOREIGN_REDIRECT_POLICIES = ("proxy", "passthrough", "block")

_SKIP_PREFIXES = ("data:", "mailto:", "#", "javascript:", "about:", "//")
_ABSOLUTE_SCHEME = re.compile(r"^[a-zA-Z][a-zA-Z0-9+.\-]*://")

_ATTR_PATTERN = re.compile(
    r"""(?P<prefix>(?<![\w-])(?:src|href|action)\s*=\s*)(?P<quote>["'])(?P<value>.*?)(?P=quote)""",
    re.IGNORECASE | re.DOTALL,
)
_SRCSET_PATTERN = re.compile(
    r"""(?P<prefix>(?<![\w-])srcset\s*=\s*)(?P<quote>["'])(?P<value>.*?)(?P=quote)""",
    re.IGNORECASE | re.DOTALL,
)
# Quoted url() values run to the matching quote, so they may contain ")" or
# the other quote character. Inside HTML attributes the quotes can be
# entity-encoded.
_CSS_URL_QUOTED_PATTERN = re.compile(
    r"""(?P<prefix>url\(\s*)(?P<quote>["']|&quot;|&\#0*39;|&\#x0*27;|&apos;)(?P<value>.*?)(?P=quote)(?P<suffix>\s*\))""",
    re.IGNORECASE,
)
_CSS_URL_BARE_PATTERN = re.compile(
    r"""(?P<prefix>url\(\s*)(?P<quote>)(?P<value>[^"'\s)&][^"'\s)]*)(?P<suffix>\s*\))""",
    re.IGNORECASE,
)
_CSS_IMPORT_PATTERN = re.compile(
    r"""(?P<prefix>@import\s+)(?P<quote>["'])(?P<value>.*?)(?P=quote)""",
    re.IGNORECASE,
)
_SRCSET_CANDIDATE = re.compile(r"^(\s*)(\S+)(.*)$", re.DOTALL)


def media_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";")[0].strip().lower()


def is_rewritable(content_type: Optional[str]) -> bool:
    return media_type(content_type) in REWRITABLE_TYPES


def should_skip(value: str) -> bool:
    """Values that must never be rewritten."""
    stripped = value.strip()
    if not stripped:
        return True
    lowered = stripped.lower()
    if lowered.startswith(_SKIP_PREFIXES):
        return True
    return bool(_ABSOLUTE_SCHEME.match(stripped))


def build_proxy_url(
    proxy_base: str, absolute_url: str, options: Optional[ProxyOptions] = None
) -> str:
    """``<proxy-base>/api/proxy?url=...`` with the privacy flags carried along."""
    link = f"{proxy_base}{PROXY_ROUTE}?url={quote(absolute_url, safe='')}"
    if options is not None:
        if options.hide_referer:
            link += "&hideReferer=true"
        if options.remove_cookies:
            link += "&removeCookies=true"
    return link


def unwrap_proxy_url(link: str) -> Optional[str]:
    """Target URL carried by a proxied link, or None if `link` is not one."""
    try:
        parts = urlsplit(link)
    except ValueError:
        return None
    if parts.path != PROXY_ROUTE:
        return None
    values = parse_qs(parts.query).get("url")
    return values[0] if values else None


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return f"{parts.scheme.lower()}://{(parts.netloc or '').lower()}"


@dataclass
class RewriteContext:
    base_url: str
    proxy_base: str
    options: ProxyOptions = field(default_factory=ProxyOptions)
    foreign_redirects: str = "proxy"

    def proxied(self, value: str) -> str:
        """Resolve `value` against the page and wrap it in a proxied link."""
        try:
            absolute = urljoin(self.base_url, value.strip())
            parts = urlsplit(absolute)
            if parts.scheme.lower() not in ("http", "https") or not parts.netloc:
                raise RewriteError(f"Not a fetchable URL: {absolute}")
        except ValueError as e:
            raise RewriteError(str(e)) from e
        return build_proxy_url(self.proxy_base, absolute, self.options)


def _replace_value(
    ctx: RewriteContext, unescape_entities: bool = False
) -> Callable[[re.Match], str]:
    def replace(match: re.Match) -> str:
        value = match.group("value")
        if should_skip(value):
            return match.group(0)
        try:
            rewritten = ctx.proxied(html.unescape(value) if unescape_entities else value)
        except RewriteError as e:
            logger.debug(f"[Rewrite] Leaving {value!r} as is: {e}")
            return match.group(0)
        groups = match.groupdict()
        return (
            f"{groups['prefix']}{groups['quote']}{rewritten}"
            f"{groups['quote']}{groups.get('suffix') or ''}"
        )

    return replace


def rewrite_srcset_value(value: str, ctx: RewriteContext) -> str:
    candidates = []
    for candidate in value.split(","):
        match = _SRCSET_CANDIDATE.match(candidate)
        if not match:
            candidates.append(candidate)
            continue
        leading, url, descriptor = match.groups()
        if not should_skip(url):
            try:
                url = ctx.proxied(html.unescape(url))
            except RewriteError as e:
                logger.debug(f"[Rewrite] Leaving srcset candidate {url!r}: {e}")
        candidates.append(f"{leading}{url}{descriptor}")
    return ",".join(candidates)


def _replace_srcset(ctx: RewriteContext) -> Callable[[re.Match], str]:
    def replace(match: re.Match) -> str:
        quote_char = match.group("quote")
        rewritten = rewrite_srcset_value(match.group("value"), ctx)
        return f"{match.group('prefix')}{quote_char}{rewritten}{quote_char}"

    return replace


def _rewrite_css_urls(text: str, ctx: RewriteContext, unescape_entities: bool = False) -> str:
    replace = _replace_value(ctx, unescape_entities=unescape_entities)
    text = _CSS_URL_QUOTED_PATTERN.sub(replace, text)
    return _CSS_URL_BARE_PATTERN.sub(replace, text)


def rewrite_html(text: str, ctx: RewriteContext) -> str:
    text = _SRCSET_PATTERN.sub(_replace_srcset(ctx), text)
    text = _ATTR_PATTERN.sub(_replace_value(ctx, unescape_entities=True), text)
    return _rewrite_css_urls(text, ctx, unescape_entities=True)


def rewrite_css(text: str, ctx: RewriteContext) -> str:
    text = _CSS_IMPORT_PATTERN.sub(_replace_value(ctx), text)
    return _rewrite_css_urls(text, ctx)


def rewrite_js(text: str, ctx: RewriteContext) -> str:
    # Only static markup/CSS embedded in string literals; URLs assembled at
    # runtime are out of reach for pattern rewriting.
    text = _ATTR_PATTERN.sub(_replace_value(ctx), text)
    return _rewrite_css_urls(text, ctx)


def rewrite_text(text: str, content_type: str, ctx: RewriteContext) -> str:
    kind = media_type(content_type)
    if kind in HTML_TYPES:
        return rewrite_html(text, ctx)
    if kind in CSS_TYPES:
        return rewrite_css(text, ctx)
    if kind in JS_TYPES:
        return rewrite_js(text, ctx)
    return text


def rewrite_location(location: str, ctx: RewriteContext) -> Optional[str]:
    """
    Proxied form of a redirect target.

    Relative targets resolve against the page URL. Absolute targets on a
    foreign origin follow `ctx.foreign_redirects`: ``proxy`` rewrites them
    too, ``passthrough`` returns them unchanged and ``block`` returns None.
    """
    if not location:
        return location
    try:
        absolute = urljoin(ctx.base_url, location.strip())
    except ValueError:
        logger.debug(f"[Rewrite] Unresolvable Location {location!r}")
        return location

    if origin_of(absolute) != origin_of(ctx.base_url):
        if ctx.foreign_redirects == "passthrough":
            return location
        if ctx.foreign_redirects == "block":
            return None
    try:
        return ctx.proxied(absolute)
    except RewriteError as e:
        logger.debug(f"[Rewrite] Leaving Location {location!r}: {e}")
        return location
