"""Runtime records exchanged between the engine, the store and the CLI."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from threading import Lock


class SourceMode(str, Enum):
    """Transport used to obtain a source's articles."""

    DIRECT = "direct"
    PROXY = "proxy"


class ContentType(str, Enum):
    """Whether articles of a source keep their images."""

    TEXT = "text"
    IMAGE_TEXT = "image_text"


class FilterMode(str, Enum):
    INCLUDE = "include"
    EXCLUDE = "exclude"


class FilterScope(str, Enum):
    GLOBAL = "global"
    SPECIFIC = "specific"


@dataclass(slots=True)
class Source:
    """A subscribed feed endpoint plus its fetch/display configuration."""

    id: int | None
    url: str
    title: str = ""
    description: str = ""
    mode: SourceMode = SourceMode.DIRECT
    content_type: ContentType = ContentType.IMAGE_TEXT
    max_articles: int = 20
    is_active: bool = True
    error_count: int = 0
    last_fetch_at: datetime | None = None
    group_id: int | None = None
    sort_order: int = 0
    article_count: int = 0
    unread_count: int = 0
    last_updated: datetime | None = None
    server_source_id: int | None = None

    @property
    def name(self) -> str:
        return self.title or self.url


@dataclass(slots=True)
class Article:
    """A persisted (or about to be persisted) article."""

    source_id: int
    title: str
    url: str
    content: str = ""
    summary: str = ""
    author: str = ""
    guid: str | None = None
    source_name: str = ""
    image_url: str | None = None
    image_caption: str | None = None
    image_credit: str | None = None
    published_at: datetime | None = None
    word_count: int = 0
    reading_time: int = 0
    is_read: bool = False
    is_favorite: bool = False
    read_progress: float = 0.0
    tags: list[str] = field(default_factory=list)
    id: int | None = None


@dataclass(slots=True, frozen=True)
class StoredArticleRef:
    """Minimal projection of a stored article used for boundary detection."""

    url: str
    title: str
    published_at: datetime | None


@dataclass(slots=True)
class FilterRule:
    id: int | None
    keyword: str
    is_regex: bool = False
    mode: FilterMode = FilterMode.EXCLUDE
    scope: FilterScope = FilterScope.GLOBAL
    source_ids: list[int] = field(default_factory=list)


@dataclass(slots=True)
class FetchTaskResult:
    source_id: int | None
    source_name: str
    success: bool
    new_article_count: int = 0
    error: str | None = None
    attempts: int = 1
    articles: list[Article] = field(default_factory=list, repr=False)


@dataclass
class BatchResult:
    """Aggregate outcome of a refresh batch; safe to update from worker threads."""

    success_count: int = 0
    failed_count: int = 0
    total_articles: int = 0
    errors: list[tuple[str, str]] = field(default_factory=list)
    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_success(self, new_articles: int) -> None:
        with self._lock:
            self.success_count += 1
            self.total_articles += new_articles

    def record_failure(self, source_name: str, message: str) -> None:
        with self._lock:
            self.failed_count += 1
            self.errors.append((source_name, message))

    def record(self, result: FetchTaskResult) -> None:
        if result.success:
            self.record_success(result.new_article_count)
        else:
            self.record_failure(result.source_name, result.error or "Unknown error")

    def as_dict(self) -> dict[str, object]:
        with self._lock:
            return {
                "success": self.success_count,
                "failed": self.failed_count,
                "total_articles": self.total_articles,
                "errors": [{"source": name, "error": message} for name, message in self.errors],
            }


@dataclass(slots=True)
class SyncAckBatch:
    """Item ids consumed from the aggregation server, acknowledged once."""

    item_ids: list[int] = field(default_factory=list)

    def as_payload(self) -> dict[str, list[int]]:
        return {"item_ids": list(self.item_ids)}


__all__ = [
    "Article",
    "BatchResult",
    "ContentType",
    "FetchTaskResult",
    "FilterMode",
    "FilterRule",
    "FilterScope",
    "Source",
    "SourceMode",
    "StoredArticleRef",
    "SyncAckBatch",
]
