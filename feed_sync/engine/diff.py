"""Incremental diff: find where already-stored items begin in a freshly parsed feed."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Sequence

from ..domain import StoredArticleRef
from .feed_parser import FeedItem
from .text import clean_text_content, parse_published_date

DEFAULT_TIME_TOLERANCE = 60.0


@dataclass(slots=True)
class BasicItem:
    """Title/link/date projection of a parsed item, in feed order."""

    title: str
    link: str
    published_at: datetime
    item: FeedItem


def collect_basic_items(items: Iterable[FeedItem], max_articles: int) -> list[BasicItem]:
    """Cap the raw list at ``max_articles`` (<= 0: no cap), then keep items with a title and a link."""

    items = list(items)
    if max_articles > 0:
        items = items[:max_articles]
    collected: list[BasicItem] = []
    for item in items:
        link = item.resolved_link
        title = clean_text_content(item.title)
        if not title or not link:
            continue
        collected.append(
            BasicItem(
                title=title,
                link=link,
                published_at=parse_published_date(item.published),
                item=item,
            )
        )
    return collected


def _matches(item: BasicItem, stored: StoredArticleRef, tolerance: float) -> bool:
    if item.link == stored.url:
        return True
    if item.title != stored.title or stored.published_at is None:
        return False
    return abs((item.published_at - stored.published_at).total_seconds()) < tolerance


def find_new_item_boundary(
    parsed_items: Sequence[BasicItem],
    recent_stored: Sequence[StoredArticleRef],
    tolerance: float = DEFAULT_TIME_TOLERANCE,
) -> int:
    """Return the count of leading items that are new.

    The walk stops at the first item matching a stored article; feeds list
    newest first, so everything from that point on is assumed to be known.
    """

    if not recent_stored:
        return len(parsed_items)
    for index, item in enumerate(parsed_items):
        if any(_matches(item, stored, tolerance) for stored in recent_stored):
            return index
    return len(parsed_items)


__all__ = ["BasicItem", "DEFAULT_TIME_TOLERANCE", "collect_basic_items", "find_new_item_boundary"]
