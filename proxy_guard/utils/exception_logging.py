"""
Exception helpers for the proxy: safe formatting, logging with details, and
lookup of a root cause buried in chained or grouped transport exceptions.
"""

import logging
from typing import Optional, Tuple, Type, Union


def _safe_str(obj) -> str:
    """
    Safely convert an object to string, handling cases where __str__ or __repr__ might fail.
    """
    try:
        return str(obj)
    except Exception:
        try:
            return repr(obj)
        except Exception:
            try:
                return f"<{type(obj).__name__} object (string conversion failed)>"
            except Exception:
                return "<object (all string conversions failed)>"


def _safe_get_exceptions(exception_group) -> list:
    try:
        return list(exception_group.exceptions)
    except Exception:
        return []


def find_exception_in_chain(
    exception: BaseException,
    target_type: Union[Type[BaseException], Tuple[Type[BaseException], ...]],
    _seen: Optional[set] = None,
) -> Optional[BaseException]:
    """
    Search an exception, its ``__cause__``/``__context__`` chain and any
    exception-group members for the first instance of `target_type`.

    httpx wraps the socket, DNS and SSL errors raised by the transport, so
    the interesting type is usually a few links down the chain.
    """
    seen = _seen if _seen is not None else set()
    try:
        if exception is None or id(exception) in seen:
            return None
        seen.add(id(exception))

        if isinstance(exception, target_type):
            return exception

        for sub_exc in _safe_get_exceptions(exception):
            found = find_exception_in_chain(sub_exc, target_type, seen)
            if found is not None:
                return found

        for linked in (exception.__cause__, exception.__context__):
            found = find_exception_in_chain(linked, target_type, seen)
            if found is not None:
                return found
        return None
    except Exception:
        return None


def format_exception_message(exception: BaseException) -> str:
    """Single-line description ``Type: message``, never raises."""
    if exception is None:
        return "None"
    try:
        return f"{type(exception).__name__}: {_safe_str(exception)}"
    except Exception:
        return "<unformattable exception>"


def log_exception_with_details(
    logger: logging.Logger,
    prefix: str,
    exception: BaseException,
    level: int = logging.ERROR,
) -> None:
    """
    Log an exception with its traceback, expanding sub-exceptions of
    exception groups. Never raises, even for broken exception objects or a
    failing logger.
    """
    try:
        safe_prefix = _safe_str(prefix) if prefix is not None else ""
        sub_exceptions = _safe_get_exceptions(exception)
        if sub_exceptions:
            logger.log(
                level,
                f"{safe_prefix} Exception with {len(sub_exceptions)} sub-exceptions: "
                f"{_safe_str(exception)}",
            )
            for i, sub_exc in enumerate(sub_exceptions):
                logger.log(
                    level,
                    f"{safe_prefix} Sub-exception {i+1}: {format_exception_message(sub_exc)}",
                    exc_info=sub_exc,
                )
            return
        logger.log(
            level,
            f"{safe_prefix} {format_exception_message(exception)}",
            exc_info=exception if exception is not None else False,
        )
    except Exception:
        try:
            logger.log(logging.ERROR, f"{prefix} Exception (logging failed)")
        except Exception:
            pass
