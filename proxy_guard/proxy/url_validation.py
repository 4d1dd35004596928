from typing import Optional
from urllib.parse import urlsplit

import httpx

from .errors import InvalidURL, MissingURL

SUPPORTED_SCHEMES = {"http", "https"}


def validate_target_url(raw: Optional[str]) -> str:
    """
    Validate a visitor-supplied target URL.

    Returns the trimmed input unchanged (no re-serialization), so a URL that
    travelled through a proxied link comes back byte-identical.
    """
    if raw is None or not isinstance(raw, str) or not raw.strip():
        raise MissingURL()

    candidate = raw.strip()
    try:
        parsed = urlsplit(candidate)
        # Accessing .port validates the port range and digits.
        parsed.port
    except ValueError as e:
        raise InvalidURL(error=str(e))

    if parsed.scheme.lower() not in SUPPORTED_SCHEMES:
        raise InvalidURL(error=f"Unsupported scheme: {parsed.scheme or '<none>'}")
    if not parsed.hostname:
        raise InvalidURL(error="URL has no host")
    if any(ch.isspace() for ch in parsed.netloc):
        raise InvalidURL(error="Host contains whitespace")

    try:
        httpx.URL(candidate)
    except (httpx.InvalidURL, ValueError) as e:
        raise InvalidURL(error=str(e))

    return candidate
