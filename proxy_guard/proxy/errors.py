"""
Error taxonomy for the proxy pipeline.

`ProxyError` subclasses are surfaced to the visitor as JSON bodies of the form
``{"message": ..., "error": ...}``. `DecodeError` and `RewriteError` never
leave the pipeline; they trigger the local fallbacks instead.
"""

from typing import Optional


class ProxyError(Exception):
    status_code = 500
    message = "Proxy error"

    def __init__(self, message: Optional[str] = None, error: Optional[str] = None):
        self.message = message or self.message
        self.error = error
        super().__init__(self.message if not error else f"{self.message}: {error}")

    def to_dict(self) -> dict:
        body = {"message": self.message}
        if self.error:
            body["error"] = self.error
        return body


class MissingURL(ProxyError):
    status_code = 400
    message = "No URL provided"


class InvalidURL(ProxyError):
    status_code = 400
    message = "Invalid URL"


class Blocked(ProxyError):
    status_code = 403
    message = "Access blocked by administrator"


class ForeignRedirectBlocked(ProxyError):
    status_code = 403
    message = "Redirect to a foreign origin blocked"


class UpstreamError(ProxyError):
    """Transport-level failure talking to the target origin.

    `kind` is a stable, machine-readable code; the original exception text is
    only ever logged, never returned to the visitor.
    """

    status_code = 500

    def __init__(self, kind: str, detail: Optional[str] = None):
        self.kind = kind
        self.detail = detail
        super().__init__(error=kind)


class DecodeError(Exception):
    """Body could not be decoded with its declared Content-Encoding or charset."""


class RewriteError(Exception):
    """A single link candidate could not be resolved."""
