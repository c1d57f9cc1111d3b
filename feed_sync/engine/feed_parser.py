"""RSS/Atom parsing built on feedparser plus a media:* metadata pass."""

from __future__ import annotations

import io
import xml.etree.ElementTree as ET
from dataclasses import dataclass, field
from typing import Any, Iterable

import feedparser
import structlog

from ..errors import FeedFormatError

MEDIA_NS = "http://search.yahoo.com/mrss/"
FEED_MARKERS = ("<?xml", "<rss", "<feed", "<channel", "<rdf:RDF")

logger = structlog.get_logger("feed_sync.feed_parser")


@dataclass(slots=True)
class Enclosure:
    url: str
    type: str = ""
    length: int | None = None


@dataclass(slots=True)
class MediaContent:
    url: str
    medium: str | None = None
    type: str | None = None
    width: int | None = None
    height: int | None = None
    description: str | None = None
    credit: str | None = None
    title: str | None = None


@dataclass(slots=True)
class MediaThumbnail:
    url: str
    width: int | None = None
    height: int | None = None


@dataclass(slots=True)
class MediaMetadata:
    contents: list[MediaContent] = field(default_factory=list)
    thumbnail: MediaThumbnail | None = None
    description: str | None = None
    credit: str | None = None
    title: str | None = None

    @property
    def is_empty(self) -> bool:
        return not self.contents and self.thumbnail is None


@dataclass(slots=True)
class FeedItem:
    title: str = ""
    links: list[str] = field(default_factory=list)
    guid: str | None = None
    description: str = ""
    content: str = ""
    published: str | None = None
    author: str = ""
    categories: list[str] = field(default_factory=list)
    enclosures: list[Enclosure] = field(default_factory=list)
    media: MediaMetadata = field(default_factory=MediaMetadata)

    @property
    def resolved_link(self) -> str:
        if self.links:
            return self.links[0]
        return self.guid or ""

    @property
    def excerpt(self) -> str:
        """Full content when the feed ships it, otherwise the description."""

        return self.content or self.description


@dataclass(slots=True)
class Feed:
    title: str = ""
    description: str = ""
    link: str = ""
    items: list[FeedItem] = field(default_factory=list)


def ensure_feed_body(text: str) -> str:
    """Reject bodies that are obviously not a feed. Returns the stripped body."""

    trimmed = (text or "").strip()
    if not trimmed:
        raise FeedFormatError("响应内容为空")
    if "Just a moment" in trimmed and "_cf_chl_opt" in trimmed:
        raise FeedFormatError("该网站启用了 Cloudflare 防护，无法直接访问；建议通过 RSSHub 订阅")
    head = trimmed[:64].lower()
    if head.startswith("<!doctype html") or head.startswith("<html"):
        raise FeedFormatError("该地址返回的是网页而非 RSS，请检查 URL 是否正确")
    if not any(marker in trimmed for marker in FEED_MARKERS):
        raise FeedFormatError("响应不是有效的 RSS/Atom 格式")
    return trimmed


def parse_feed(raw: bytes | str) -> Feed:
    if isinstance(raw, bytes):
        text = raw.decode("utf-8", errors="replace")
        payload = raw.strip()
    else:
        text = raw
        payload = raw.strip().encode("utf-8")
    ensure_feed_body(text)

    parsed = feedparser.parse(payload)
    entries = parsed.get("entries") or []
    channel = parsed.get("feed") or {}
    if parsed.get("bozo") and not entries and not channel.get("title"):
        error = parsed.get("bozo_exception")
        raise FeedFormatError(f"无法解析 RSS/Atom 内容: {error}")

    media = list(_iter_media_metadata(payload))
    items: list[FeedItem] = []
    for index, entry in enumerate(entries):
        item = _entry_to_item(entry)
        if index < len(media):
            item.media = media[index]
        items.append(item)
    return Feed(
        title=_clean(channel.get("title")),
        description=_clean(channel.get("subtitle") or channel.get("description")),
        link=_clean(channel.get("link")),
        items=items,
    )


# ----------------------------------------------------------------------
# feedparser entry mapping
# ----------------------------------------------------------------------
def _clean(value: Any) -> str:
    if value is None:
        return ""
    return str(value).strip()


def _entry_to_item(entry: Any) -> FeedItem:
    links: list[str] = []
    for link in entry.get("links") or []:
        href = _clean(link.get("href"))
        if not href or link.get("rel", "alternate") != "alternate":
            continue
        if href not in links:
            links.append(href)
    fallback_link = _clean(entry.get("link"))
    if fallback_link and fallback_link not in links:
        links.append(fallback_link)

    content = ""
    for block in entry.get("content") or []:
        value = _clean(block.get("value"))
        if value:
            content = value
            break

    enclosures: list[Enclosure] = []
    for enclosure in entry.get("enclosures") or []:
        href = _clean(enclosure.get("href") or enclosure.get("url"))
        if not href:
            continue
        enclosures.append(
            Enclosure(url=href, type=_clean(enclosure.get("type")), length=_to_int(enclosure.get("length")))
        )

    author = _clean(entry.get("author"))
    if not author:
        detail = entry.get("author_detail") or {}
        author = _clean(detail.get("name"))

    return FeedItem(
        title=_clean(entry.get("title")),
        links=links,
        guid=_clean(entry.get("id")) or None,
        description=_clean(entry.get("summary")),
        content=content,
        published=_clean(entry.get("published") or entry.get("updated")) or None,
        author=author,
        categories=[_clean(tag.get("term")) for tag in entry.get("tags") or [] if tag.get("term")],
        enclosures=enclosures,
    )


def _to_int(value: Any) -> int | None:
    try:
        return int(str(value).strip())
    except (TypeError, ValueError):
        return None


# ----------------------------------------------------------------------
# media:* metadata pass
# ----------------------------------------------------------------------
def _local(tag: str) -> str:
    return tag.rsplit("}", 1)[-1]


def _is_media(elem: ET.Element, name: str) -> bool:
    return elem.tag == f"{{{MEDIA_NS}}}{name}"


def _text(elem: ET.Element | None) -> str | None:
    if elem is None or elem.text is None:
        return None
    value = elem.text.strip()
    return value or None


def _media_child(elem: ET.Element, name: str) -> ET.Element | None:
    return elem.find(f"{{{MEDIA_NS}}}{name}")


def _iter_media_metadata(payload: bytes) -> Iterable[MediaMetadata]:
    """Yield metadata per ``<item>``/``<entry>`` in document order.

    A parse error stops the pass; items after that point get empty metadata.
    """

    try:
        for _, elem in ET.iterparse(io.BytesIO(payload), events=("end",)):
            if _local(elem.tag) not in ("item", "entry"):
                continue
            yield _extract_media(elem)
            elem.clear()
    except ET.ParseError as exc:
        logger.info("media_metadata_unavailable", error=str(exc))


def _extract_media(item: ET.Element) -> MediaMetadata:
    metadata = MediaMetadata(
        description=_text(_media_child(item, "description")),
        credit=_text(_media_child(item, "credit")),
        title=_text(_media_child(item, "title")),
    )
    containers = [item, *[child for child in item if _is_media(child, "group")]]
    for container in containers:
        if container is not item:
            metadata.description = metadata.description or _text(_media_child(container, "description"))
            metadata.credit = metadata.credit or _text(_media_child(container, "credit"))
            metadata.title = metadata.title or _text(_media_child(container, "title"))
        for child in container:
            if _is_media(child, "content"):
                url = (child.get("url") or "").strip()
                if not url:
                    continue
                metadata.contents.append(
                    MediaContent(
                        url=url,
                        medium=child.get("medium"),
                        type=child.get("type"),
                        width=_to_int(child.get("width")),
                        height=_to_int(child.get("height")),
                        description=_text(_media_child(child, "description")),
                        credit=_text(_media_child(child, "credit")),
                        title=_text(_media_child(child, "title")),
                    )
                )
            elif _is_media(child, "thumbnail") and metadata.thumbnail is None:
                url = (child.get("url") or "").strip()
                if url:
                    metadata.thumbnail = MediaThumbnail(
                        url=url,
                        width=_to_int(child.get("width")),
                        height=_to_int(child.get("height")),
                    )
    # nested values win over item-level ones
    for content in metadata.contents:
        content.description = content.description or metadata.description
        content.credit = content.credit or metadata.credit
        content.title = content.title or metadata.title
    return metadata


__all__ = [
    "Enclosure",
    "FEED_MARKERS",
    "Feed",
    "FeedItem",
    "MediaContent",
    "MediaMetadata",
    "MediaThumbnail",
    "ensure_feed_body",
    "parse_feed",
]
