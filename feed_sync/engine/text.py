"""Plain-text helpers: summaries, word counts and published-date coercion."""

from __future__ import annotations

import math
import re
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from html import unescape

from selectolax.parser import HTMLParser

_CJK_PATTERN = re.compile(r"[\u4e00-\u9fff]")
_WORD_PATTERN = re.compile(r"\b\w+\b")
_WHITESPACE = re.compile(r"\s+")
_NUMERIC = re.compile(r"^\d+(\.\d+)?$")

SUMMARY_LENGTH = 200
WORDS_PER_MINUTE = 200

_DATE_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y/%m/%d %H:%M:%S",
    "%Y/%m/%d %H:%M",
    "%Y-%m-%d",
    "%Y/%m/%d",
)


def strip_html(html: str | None) -> str:
    """Return the visible text of an HTML fragment."""

    if not html:
        return ""
    if "<" not in html:
        return unescape(html)
    tree = HTMLParser(html)
    tree.strip_tags(["script", "style"])
    root = tree.body or tree.root
    if root is None:
        return ""
    return root.text(separator=" ", strip=False)


def clean_text_content(html: str | None) -> str:
    """Strip tags and collapse runs of whitespace into single spaces."""

    return _WHITESPACE.sub(" ", strip_html(html)).strip()


def generate_summary(content: str | None, max_length: int = SUMMARY_LENGTH) -> str:
    text = clean_text_content(content)
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    last_space = cut.rfind(" ")
    if last_space > 0:
        cut = cut[:last_space]
    return cut.rstrip() + "..."


def count_words(content: str | None) -> int:
    """CJK ideographs count one each; the remaining text counts latin words."""

    text = clean_text_content(content)
    if not text:
        return 0
    cjk = len(_CJK_PATTERN.findall(text))
    rest = _CJK_PATTERN.sub(" ", text)
    return cjk + len(_WORD_PATTERN.findall(rest))


def reading_time(word_count: int) -> int:
    if word_count <= 0:
        return 0
    return max(1, math.ceil(word_count / WORDS_PER_MINUTE))


def parse_published_date(value: object, *, now: datetime | None = None) -> datetime:
    """Coerce a feed date into an aware UTC datetime; unparseable values become ``now``."""

    parsed = _coerce_datetime(value)
    if parsed is None:
        return now or datetime.now(timezone.utc)
    return parsed


def _coerce_datetime(value: object) -> datetime | None:
    if value is None:
        return None
    if isinstance(value, datetime):
        dt = value
    elif isinstance(value, (int, float)):
        return _from_timestamp(float(value))
    elif isinstance(value, str):
        text = value.strip()
        if not text:
            return None
        if _NUMERIC.match(text):
            return _from_timestamp(float(text))
        dt = _parse_text(text)
        if dt is None:
            return None
    else:
        return None
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _from_timestamp(numeric: float) -> datetime | None:
    # below 1e10 the value is seconds, otherwise milliseconds
    if numeric >= 1e10:
        numeric /= 1000.0
    try:
        return datetime.fromtimestamp(numeric, tz=timezone.utc)
    except (OverflowError, OSError, ValueError):
        return None


def _parse_text(text: str) -> datetime | None:
    normalised = text[:-1] + "+00:00" if text.endswith(("Z", "z")) else text
    try:
        return datetime.fromisoformat(normalised)
    except ValueError:
        pass
    try:
        return parsedate_to_datetime(text)
    except (TypeError, ValueError, IndexError):
        pass
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt)
        except ValueError:
            continue
    return None


__all__ = [
    "clean_text_content",
    "count_words",
    "generate_summary",
    "parse_published_date",
    "reading_time",
    "strip_html",
]
