"""Derive a safe, stable image name from a row's link."""

import re
from urllib.parse import unquote_plus

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_-]")


def fallback_name(position: int) -> str:
    return f"qr_image_{position:04d}"


def last_query_value(link: str) -> str:
    """Value of the last query parameter, by position in the string.

    Returns an empty string if the link has no query string or the last
    parameter carries no value.
    """
    _, sep, query = link.partition("?")
    if not sep:
        return ""
    query = query.split("#", 1)[0]
    last = query.split("&")[-1]
    _, sep, value = last.partition("=")
    return unquote_plus(value) if sep else ""


def sanitize(value: str) -> str:
    return _UNSAFE_CHARS.sub("_", value)


def resolve_filename(link: str, position: int) -> str:
    """Name for a row's image, without extension.

    ``https://x.example/a?campaign=7&id=42`` gives ``42``. Links without a
    usable query value fall back to ``qr_image_0007`` for the 7th row.

    Args:
        link: The row's primary link.
        position: 1-based position of the row in the run.
    """
    name = sanitize(last_query_value(link))
    return name or fallback_name(position)
