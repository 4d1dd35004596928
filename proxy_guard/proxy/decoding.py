"""
Content decoding and charset resolution for buffered upstream bodies.
"""

import codecs
import gzip
import logging
import re
import zlib
from typing import Optional

import brotli

from .errors import DecodeError

logger = logging.getLogger("uvicorn.error")

DEFAULT_CHARSET = "utf-8"

# Codings we can reverse; advertised upstream via Accept-Encoding.
SUPPORTED_ENCODINGS = ("gzip", "deflate", "br")
ACCEPT_ENCODING = ", ".join(SUPPORTED_ENCODINGS)

_ENCODING_ALIASES = {
    "x-gzip": "gzip",
    "brotli": "br",
}

_CHARSET_PATTERN = re.compile(r"""charset\s*=\s*["']?([^;"'\s]+)""", re.IGNORECASE)


def _codings(content_encoding: Optional[str]) -> list:
    if not content_encoding:
        return []
    codings = []
    for token in content_encoding.split(","):
        token = token.strip().lower()
        if token and token != "identity":
            codings.append(_ENCODING_ALIASES.get(token, token))
    return codings


def is_supported_encoding(content_encoding: Optional[str]) -> bool:
    """True when every coding in the header is one `decode_body` can reverse."""
    return all(c in SUPPORTED_ENCODINGS for c in _codings(content_encoding))


def _inflate(body: bytes) -> bytes:
    try:
        return zlib.decompress(body)
    except zlib.error:
        # Some servers send raw deflate streams without the zlib wrapper.
        return zlib.decompress(body, -zlib.MAX_WBITS)


def decode_body(body: bytes, content_encoding: Optional[str]) -> bytes:
    """
    Reverse the transport codings named in `content_encoding`.

    Codings are undone in reverse order of application. Unknown codings are
    left alone; callers check `is_supported_encoding` before relying on the
    result being plain content.
    """
    codings = _codings(content_encoding)
    if not codings or not is_supported_encoding(content_encoding):
        return body

    decoded = body
    for coding in reversed(codings):
        try:
            if coding == "gzip":
                decoded = gzip.decompress(decoded)
            elif coding == "deflate":
                decoded = _inflate(decoded)
            elif coding == "br":
                decoded = brotli.decompress(decoded)
        except (OSError, EOFError, zlib.error, brotli.error) as e:
            raise DecodeError(f"Failed to decode {coding} body: {e}") from e
    return decoded


def declared_charset(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    match = _CHARSET_PATTERN.search(content_type)
    return match.group(1) if match else None


def _text_codec(name: str) -> Optional[str]:
    """Canonical codec name, or None unless `name` is a bytes<->str encoding."""
    try:
        info = codecs.lookup(name)
        # Non-text codecs (base64, rot13, zlib, ...) refuse bytes.decode.
        b"".decode(info.name)
    except LookupError:
        return None
    return info.name


def resolve_charset(content_type: Optional[str]) -> str:
    """Charset named in Content-Type if Python can decode it, else utf-8."""
    name = declared_charset(content_type)
    if not name:
        return DEFAULT_CHARSET
    codec = _text_codec(name)
    if codec is None:
        logger.debug(f"[Rewrite] Unknown charset {name!r}, falling back to utf-8")
        return DEFAULT_CHARSET
    return codec


def corrected_content_type(content_type: str, charset: str) -> str:
    """Replace an undecodable charset parameter with the one actually used."""
    name = declared_charset(content_type)
    if not name or _text_codec(name) is not None:
        return content_type
    return _CHARSET_PATTERN.sub(f"charset={charset}", content_type, count=1)


def decode_text(body: bytes, charset: str) -> str:
    # surrogateescape keeps undecodable bytes intact for the round trip back.
    try:
        return body.decode(charset, errors="surrogateescape")
    except (UnicodeDecodeError, LookupError) as e:
        raise DecodeError(f"Failed to decode body as {charset}: {e}") from e


def encode_text(text: str, charset: str) -> bytes:
    try:
        return text.encode(charset, errors="surrogateescape")
    except (UnicodeEncodeError, LookupError) as e:
        raise DecodeError(f"Failed to encode body as {charset}: {e}") from e
