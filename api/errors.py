"""
Helpers for keeping error text a sane size.

Worker error strings and driver exceptions end up in request ``details`` and
in log lines; both are capped so a runaway message cannot bloat either.
"""

from typing import Optional

from config import ERROR_DETAIL_MAX_LENGTH, ERROR_LOG_MAX_LENGTH

ELLIPSIS = "..."


def truncate_string(text: Optional[str], max_length: int) -> Optional[str]:
    """
    Cut ``text`` down to ``max_length`` characters, ending with "..." when cut.

    None passes through unchanged. With max_length below 4 there is no room for
    the ellipsis and the text is simply sliced.
    """
    if text is None:
        return None
    if len(text) <= max_length:
        return text
    if max_length < len(ELLIPSIS) + 1:
        return text[:max_length]
    return text[: max_length - len(ELLIPSIS)] + ELLIPSIS


def describe_error(error: object) -> str:
    """str() of an exception, falling back to its class name (TimeoutError has no message)."""
    text = str(error)
    if not text and isinstance(error, BaseException):
        return type(error).__name__
    return text


def truncate_error(error: object, max_length: int = ERROR_LOG_MAX_LENGTH) -> str:
    """Stringify an exception (or any value) for a log line."""
    return truncate_string(describe_error(error), max_length) or ""


def truncate_details(details: str, max_length: int = ERROR_DETAIL_MAX_LENGTH) -> str:
    """Cap text stored in a request's ``details`` column."""
    return truncate_string(details, max_length) or ""
