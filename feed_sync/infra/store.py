"""Article/source/filter-rule store backed by SQLite.

Engine components only depend on the small protocols declared at the top of
this module, so tests can hand them in-memory fakes.
"""

from __future__ import annotations

import json
import re
import sqlite3
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterable, Protocol, Sequence

from ..domain import (
    Article,
    ContentType,
    FilterMode,
    FilterRule,
    FilterScope,
    Source,
    SourceMode,
    StoredArticleRef,
)
from ..errors import DuplicateSourceError, SourceNotFoundError
from ..events import EventBus
from .storage import SQLiteManager

_TRAILING_SEGMENT_SLASH = re.compile(r"/[^/]+/$")


class SourceStore(Protocol):
    def get_source(self, source_id: int) -> Source: ...

    def list_sources(self, active_only: bool = False) -> list[Source]: ...

    def find_source_by_url(self, url: str) -> Source | None: ...

    def add_source(self, source: Source) -> Source: ...

    def record_fetch_success(self, source_id: int) -> None: ...

    def record_fetch_failure(self, source_id: int) -> None: ...

    def update_source_stats(self, source_id: int) -> None: ...


class ArticleStore(Protocol):
    def recent_article_refs(self, source_id: int, limit: int = 20) -> list[StoredArticleRef]: ...

    def article_exists(self, url: str, guid: str | None = None) -> bool: ...

    def insert_article(self, article: Article) -> Article | None: ...


class RuleProvider(Protocol):
    def get_effective_rules(self, source_id: int) -> list[FilterRule]: ...


def normalise_source_url(url: str) -> str:
    """Drop the trailing slash of a single trailing path segment (``/feed/`` -> ``/feed``)."""

    url = url.strip()
    if _TRAILING_SEGMENT_SLASH.search(url):
        return url[:-1]
    return url


def _to_text(value: datetime | None) -> str | None:
    if value is None:
        return None
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat(timespec="seconds")


def _to_datetime(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def _now() -> datetime:
    return datetime.now(timezone.utc)


class SQLiteStore:
    """Concrete store implementing SourceStore, ArticleStore and RuleProvider."""

    def __init__(self, manager: SQLiteManager, db_path: Path, bus: EventBus | None = None) -> None:
        self.manager = manager
        self.db_path = db_path
        self.bus = bus
        self._conn = self.manager.connect(db_path)
        self._lock = self.manager.lock_for(db_path)

    # ------------------------------------------------------------------
    # Low-level helpers
    # ------------------------------------------------------------------
    def query(self, sql: str, params: Sequence[object] = ()) -> list[sqlite3.Row]:
        with self._lock:
            return self._conn.execute(sql, tuple(params)).fetchall()

    def execute(self, sql: str, params: Sequence[object] = ()) -> int:
        """Execute a statement and return the affected row count."""

        with self._lock:
            cursor = self._conn.execute(sql, tuple(params))
            return cursor.rowcount

    def insert(self, sql: str, params: Sequence[object] = ()) -> int | None:
        with self._lock:
            cursor = self._conn.execute(sql, tuple(params))
            if cursor.rowcount == 0:
                return None
            return cursor.lastrowid

    def transaction(self):
        return self.manager.transaction(self.db_path)

    # ------------------------------------------------------------------
    # Sources
    # ------------------------------------------------------------------
    def add_source(self, source: Source) -> Source:
        url = normalise_source_url(source.url)
        if self.find_source_by_url(url) is not None:
            raise DuplicateSourceError(f"Source already subscribed: {url}")
        with self.transaction() as conn:
            row = conn.execute(
                "SELECT COALESCE(MAX(sort_order), -1) + 1 AS next_order FROM rss_sources WHERE deleted_at IS NULL"
            ).fetchone()
            cursor = conn.execute(
                """
                INSERT INTO rss_sources (
                    url, title, description, mode, content_type, max_articles,
                    is_active, group_id, sort_order, server_source_id
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    url,
                    source.title,
                    source.description,
                    source.mode.value,
                    source.content_type.value,
                    source.max_articles,
                    1 if source.is_active else 0,
                    source.group_id,
                    row["next_order"],
                    source.server_source_id,
                ),
            )
            source_id = cursor.lastrowid
        return self.get_source(source_id)

    def get_source(self, source_id: int) -> Source:
        rows = self.query(
            "SELECT * FROM rss_sources WHERE id = ? AND deleted_at IS NULL", (source_id,)
        )
        if not rows:
            raise SourceNotFoundError(f"Source not found: {source_id}")
        return self._row_to_source(rows[0])

    def list_sources(self, active_only: bool = False) -> list[Source]:
        sql = "SELECT * FROM rss_sources WHERE deleted_at IS NULL"
        if active_only:
            sql += " AND is_active = 1"
        sql += " ORDER BY sort_order ASC, id ASC"
        return [self._row_to_source(row) for row in self.query(sql)]

    def find_source_by_url(self, url: str) -> Source | None:
        normalised = normalise_source_url(url)
        rows = self.query(
            "SELECT * FROM rss_sources WHERE (url = ? OR url = ?) AND deleted_at IS NULL LIMIT 1",
            (normalised, url.strip()),
        )
        return self._row_to_source(rows[0]) if rows else None

    def update_source(self, source_id: int, **fields: object) -> Source:
        allowed = {
            "title",
            "description",
            "mode",
            "content_type",
            "max_articles",
            "is_active",
            "group_id",
            "server_source_id",
        }
        unknown = set(fields) - allowed
        if unknown:
            raise ValueError(f"Unsupported source fields: {sorted(unknown)}")
        if fields:
            assignments = ", ".join(f"{name} = ?" for name in fields)
            values = [
                value.value if isinstance(value, (SourceMode, ContentType)) else value
                for value in fields.values()
            ]
            updated = self.execute(
                f"UPDATE rss_sources SET {assignments} WHERE id = ? AND deleted_at IS NULL",
                (*values, source_id),
            )
            if not updated:
                raise SourceNotFoundError(f"Source not found: {source_id}")
        if self.bus is not None:
            self.bus.source_updated(source_id)
        return self.get_source(source_id)

    def delete_source(self, source_id: int) -> int:
        """Soft-delete a source and cascade-delete its articles. Returns removed article count."""

        with self.transaction() as conn:
            updated = conn.execute(
                "UPDATE rss_sources SET deleted_at = ?, is_active = 0 WHERE id = ? AND deleted_at IS NULL",
                (_to_text(_now()), source_id),
            ).rowcount
            if not updated:
                raise SourceNotFoundError(f"Source not found: {source_id}")
            removed = conn.execute(
                "DELETE FROM articles WHERE rss_source_id = ?", (source_id,)
            ).rowcount
            conn.execute("DELETE FROM filter_bindings WHERE rss_source_id = ?", (source_id,))
        if self.bus is not None:
            self.bus.source_deleted(source_id)
        return removed

    def update_sources_order(self, ordered_ids: Iterable[int]) -> None:
        with self.transaction() as conn:
            for position, source_id in enumerate(ordered_ids):
                conn.execute(
                    "UPDATE rss_sources SET sort_order = ? WHERE id = ?", (position, source_id)
                )
        if self.bus is not None:
            self.bus.source_updated(None, reason="reordered")

    def record_fetch_success(self, source_id: int) -> None:
        self.execute(
            "UPDATE rss_sources SET error_count = 0, last_fetch_at = ? WHERE id = ?",
            (_to_text(_now()), source_id),
        )

    def record_fetch_failure(self, source_id: int) -> None:
        self.execute(
            "UPDATE rss_sources SET error_count = error_count + 1, last_fetch_at = ? WHERE id = ?",
            (_to_text(_now()), source_id),
        )

    def update_source_stats(self, source_id: int) -> None:
        with self.transaction() as conn:
            total = conn.execute(
                "SELECT COUNT(*) AS count FROM articles WHERE rss_source_id = ?", (source_id,)
            ).fetchone()["count"]
            unread = conn.execute(
                "SELECT COUNT(*) AS count FROM articles WHERE rss_source_id = ? AND is_read = 0",
                (source_id,),
            ).fetchone()["count"]
            conn.execute(
                "UPDATE rss_sources SET last_updated = ?, article_count = ?, unread_count = ? WHERE id = ?",
                (_to_text(_now()), total, unread, source_id),
            )
        if self.bus is not None:
            self.bus.stats_updated(source_id)

    # ------------------------------------------------------------------
    # Articles
    # ------------------------------------------------------------------
    def recent_article_refs(self, source_id: int, limit: int = 20) -> list[StoredArticleRef]:
        rows = self.query(
            "SELECT url, title, published_at FROM articles WHERE rss_source_id = ? "
            "ORDER BY published_at DESC LIMIT ?",
            (source_id, limit),
        )
        return [
            StoredArticleRef(
                url=row["url"], title=row["title"], published_at=_to_datetime(row["published_at"])
            )
            for row in rows
        ]

    def article_exists(self, url: str, guid: str | None = None) -> bool:
        key = guid or url
        rows = self.query(
            "SELECT 1 FROM articles WHERE url = ? OR guid = ? OR url = ? LIMIT 1",
            (url, key, key),
        )
        return bool(rows)

    def insert_article(self, article: Article) -> Article | None:
        """Insert unless the url/guid already exists; returns the stored article or None."""

        article_id = self.insert(
            """
            INSERT OR IGNORE INTO articles (
                rss_source_id, source_name, title, url, guid, content, summary, author,
                image_url, image_caption, image_credit, published_at, word_count,
                reading_time, is_read, is_favorite, read_progress, tags
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                article.source_id,
                article.source_name,
                article.title,
                article.url,
                article.guid or article.url,
                article.content,
                article.summary,
                article.author,
                article.image_url,
                article.image_caption,
                article.image_credit,
                _to_text(article.published_at),
                article.word_count,
                article.reading_time,
                1 if article.is_read else 0,
                1 if article.is_favorite else 0,
                article.read_progress,
                json.dumps(article.tags, ensure_ascii=False),
            ),
        )
        if article_id is None:
            return None
        article.id = article_id
        if article.guid is None:
            article.guid = article.url
        return article

    def list_articles(
        self,
        source_id: int | None = None,
        *,
        unread_only: bool = False,
        limit: int = 50,
    ) -> list[Article]:
        clauses: list[str] = []
        params: list[object] = []
        if source_id is not None:
            clauses.append("rss_source_id = ?")
            params.append(source_id)
        if unread_only:
            clauses.append("is_read = 0")
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        rows = self.query(
            f"SELECT * FROM articles {where} ORDER BY published_at DESC, id DESC LIMIT ?",
            (*params, limit),
        )
        return [self._row_to_article(row) for row in rows]

    def get_article(self, article_id: int) -> Article | None:
        rows = self.query("SELECT * FROM articles WHERE id = ?", (article_id,))
        return self._row_to_article(rows[0]) if rows else None

    def mark_read(self, article_id: int, progress: float = 1.0) -> bool:
        updated = self.execute(
            "UPDATE articles SET is_read = 1, read_progress = ? WHERE id = ?",
            (progress, article_id),
        )
        if updated and self.bus is not None:
            self.bus.article_read(article_id)
        return bool(updated)

    def clear_source_articles(self, source_id: int | None = None) -> int:
        if source_id is None:
            removed = self.execute("DELETE FROM articles")
        else:
            removed = self.execute("DELETE FROM articles WHERE rss_source_id = ?", (source_id,))
            self.update_source_stats(source_id)
        if self.bus is not None:
            self.bus.articles_cleared(source_id)
        return removed

    # ------------------------------------------------------------------
    # Filter rules
    # ------------------------------------------------------------------
    def create_rule(
        self,
        keyword: str,
        is_regex: bool = False,
        mode: FilterMode = FilterMode.EXCLUDE,
        scope: FilterScope = FilterScope.GLOBAL,
        source_ids: Iterable[int] = (),
    ) -> FilterRule:
        keyword = keyword.strip()
        if not keyword:
            raise ValueError("Filter keyword cannot be empty")
        targets = list(source_ids)
        if scope is FilterScope.SPECIFIC and not targets:
            raise ValueError("Source-bound rules need at least one source id")
        with self.transaction() as conn:
            rule_id = conn.execute(
                "INSERT INTO filter_rules (keyword, is_regex, mode, scope) VALUES (?, ?, ?, ?)",
                (keyword, 1 if is_regex else 0, mode.value, scope.value),
            ).lastrowid
            if scope is FilterScope.SPECIFIC:
                conn.executemany(
                    "INSERT OR IGNORE INTO filter_bindings (rule_id, rss_source_id) VALUES (?, ?)",
                    [(rule_id, source_id) for source_id in targets],
                )
        return FilterRule(
            id=rule_id,
            keyword=keyword,
            is_regex=is_regex,
            mode=mode,
            scope=scope,
            source_ids=targets if scope is FilterScope.SPECIFIC else [],
        )

    def delete_rule(self, rule_id: int) -> bool:
        with self.transaction() as conn:
            conn.execute("DELETE FROM filter_bindings WHERE rule_id = ?", (rule_id,))
            removed = conn.execute("DELETE FROM filter_rules WHERE id = ?", (rule_id,)).rowcount
        return bool(removed)

    def list_rules(self) -> list[FilterRule]:
        return self._load_rules(self.query("SELECT * FROM filter_rules ORDER BY id DESC"))

    def get_effective_rules(self, source_id: int) -> list[FilterRule]:
        """Global rules plus rules bound to ``source_id``, newest first."""

        rows = self.query(
            """
            SELECT * FROM filter_rules
            WHERE scope = 'global'
               OR id IN (SELECT rule_id FROM filter_bindings WHERE rss_source_id = ?)
            ORDER BY id DESC
            """,
            (source_id,),
        )
        return self._load_rules(rows)

    def _load_rules(self, rows: list[sqlite3.Row]) -> list[FilterRule]:
        if not rows:
            return []
        ids = [row["id"] for row in rows]
        placeholders = ", ".join("?" for _ in ids)
        bindings: dict[int, list[int]] = {}
        for binding in self.query(
            f"SELECT rule_id, rss_source_id FROM filter_bindings WHERE rule_id IN ({placeholders})",
            ids,
        ):
            bindings.setdefault(binding["rule_id"], []).append(binding["rss_source_id"])
        return [
            FilterRule(
                id=row["id"],
                keyword=row["keyword"],
                is_regex=bool(row["is_regex"]),
                mode=FilterMode(row["mode"]),
                scope=FilterScope(row["scope"]),
                source_ids=sorted(bindings.get(row["id"], [])),
            )
            for row in rows
        ]

    # ------------------------------------------------------------------
    @staticmethod
    def _row_to_source(row: sqlite3.Row) -> Source:
        return Source(
            id=row["id"],
            url=row["url"],
            title=row["title"],
            description=row["description"],
            mode=SourceMode(row["mode"]),
            content_type=ContentType(row["content_type"]),
            max_articles=row["max_articles"],
            is_active=bool(row["is_active"]),
            error_count=row["error_count"],
            last_fetch_at=_to_datetime(row["last_fetch_at"]),
            group_id=row["group_id"],
            sort_order=row["sort_order"],
            article_count=row["article_count"],
            unread_count=row["unread_count"],
            last_updated=_to_datetime(row["last_updated"]),
            server_source_id=row["server_source_id"],
        )

    @staticmethod
    def _row_to_article(row: sqlite3.Row) -> Article:
        try:
            tags = json.loads(row["tags"] or "[]")
        except json.JSONDecodeError:
            tags = []
        return Article(
            id=row["id"],
            source_id=row["rss_source_id"],
            source_name=row["source_name"],
            title=row["title"],
            url=row["url"],
            guid=row["guid"],
            content=row["content"],
            summary=row["summary"],
            author=row["author"],
            image_url=row["image_url"],
            image_caption=row["image_caption"],
            image_credit=row["image_credit"],
            published_at=_to_datetime(row["published_at"]),
            word_count=row["word_count"],
            reading_time=row["reading_time"],
            is_read=bool(row["is_read"]),
            is_favorite=bool(row["is_favorite"]),
            read_progress=row["read_progress"],
            tags=tags if isinstance(tags, list) else [],
        )


__all__ = [
    "ArticleStore",
    "RuleProvider",
    "SQLiteStore",
    "SourceStore",
    "normalise_source_url",
]
