from __future__ import annotations

import html
import re
from datetime import datetime

_TAG_RE = re.compile(r"<[^>]*>")
_SCRIPT_RE = re.compile(r"<(script|style)[^>]*>.*?</\1>", re.IGNORECASE | re.DOTALL)

ELLIPSIS = "…"


def strip_tags(text: str | None) -> str:
    """Remove markup (including script/style bodies) and collapse whitespace."""
    if not text:
        return ""
    out = _SCRIPT_RE.sub("", text)
    out = _TAG_RE.sub(" ", out)
    out = html.unescape(out)
    return " ".join(out.split())


def trim_words(text: str | None, num_words: int, more: str = ELLIPSIS) -> str:
    """
    Plain-text excerpt of at most `num_words` words.

    `more` is appended only when words were actually dropped.
    """
    words = strip_tags(text).split(" ")
    words = [w for w in words if w]
    if len(words) <= num_words:
        return " ".join(words)
    return " ".join(words[:num_words]) + more


def parse_datetime(value: object) -> datetime | None:
    """Accept a datetime or an ISO-8601 string; anything else yields None."""
    if isinstance(value, datetime):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return datetime.fromisoformat(value.strip())
    except ValueError:
        return None


def isoformat(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None
