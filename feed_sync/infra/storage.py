"""SQLite connection management and schema bootstrap for the article store."""

from __future__ import annotations

import sqlite3
from contextlib import contextmanager
from pathlib import Path
from threading import RLock
from typing import Dict, Iterator

SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS rss_sources (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        url TEXT NOT NULL,
        title TEXT NOT NULL DEFAULT '',
        description TEXT NOT NULL DEFAULT '',
        mode TEXT NOT NULL DEFAULT 'direct',
        content_type TEXT NOT NULL DEFAULT 'image_text',
        max_articles INTEGER NOT NULL DEFAULT 20,
        is_active INTEGER NOT NULL DEFAULT 1,
        error_count INTEGER NOT NULL DEFAULT 0,
        last_fetch_at TEXT,
        group_id INTEGER,
        sort_order INTEGER NOT NULL DEFAULT 0,
        article_count INTEGER NOT NULL DEFAULT 0,
        unread_count INTEGER NOT NULL DEFAULT 0,
        last_updated TEXT,
        server_source_id INTEGER,
        deleted_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS articles (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        rss_source_id INTEGER NOT NULL,
        source_name TEXT NOT NULL DEFAULT '',
        title TEXT NOT NULL,
        url TEXT NOT NULL,
        guid TEXT,
        content TEXT NOT NULL DEFAULT '',
        summary TEXT NOT NULL DEFAULT '',
        author TEXT NOT NULL DEFAULT '',
        image_url TEXT,
        image_caption TEXT,
        image_credit TEXT,
        published_at TEXT,
        word_count INTEGER NOT NULL DEFAULT 0,
        reading_time INTEGER NOT NULL DEFAULT 0,
        is_read INTEGER NOT NULL DEFAULT 0,
        is_favorite INTEGER NOT NULL DEFAULT 0,
        read_progress REAL NOT NULL DEFAULT 0,
        tags TEXT NOT NULL DEFAULT '[]',
        created_at TEXT NOT NULL DEFAULT (datetime('now')),
        UNIQUE (rss_source_id, url)
    )
    """,
    "CREATE UNIQUE INDEX IF NOT EXISTS idx_articles_guid ON articles(guid) WHERE guid IS NOT NULL",
    "CREATE INDEX IF NOT EXISTS idx_articles_source_published ON articles(rss_source_id, published_at DESC)",
    """
    CREATE TABLE IF NOT EXISTS filter_rules (
        id INTEGER PRIMARY KEY AUTOINCREMENT,
        keyword TEXT NOT NULL,
        is_regex INTEGER NOT NULL DEFAULT 0,
        mode TEXT NOT NULL DEFAULT 'exclude',
        scope TEXT NOT NULL DEFAULT 'global',
        created_at TEXT NOT NULL DEFAULT (datetime('now'))
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS filter_bindings (
        rule_id INTEGER NOT NULL REFERENCES filter_rules(id) ON DELETE CASCADE,
        rss_source_id INTEGER NOT NULL,
        PRIMARY KEY (rule_id, rss_source_id)
    )
    """,
)


class SQLiteManager:
    """Manage SQLite connections with basic schema guarantees."""

    def __init__(self) -> None:
        self._connections: Dict[Path, sqlite3.Connection] = {}
        self._locks: Dict[Path, RLock] = {}
        self._lock = RLock()

    def connect(self, path: Path) -> sqlite3.Connection:
        path.parent.mkdir(parents=True, exist_ok=True)
        with self._lock:
            if path not in self._connections:
                conn = sqlite3.connect(path, check_same_thread=False, isolation_level=None)
                conn.row_factory = sqlite3.Row
                conn.execute("PRAGMA foreign_keys = ON")
                self._connections[path] = conn
                self._locks[path] = RLock()
                self._ensure_schema(conn)
            return self._connections[path]

    def lock_for(self, path: Path) -> RLock:
        """Per-database lock serialising statements on the shared connection."""

        self.connect(path)
        return self._locks[path]

    @contextmanager
    def transaction(self, path: Path) -> Iterator[sqlite3.Connection]:
        """Run a block inside BEGIN/COMMIT, rolling back on any exception."""

        conn = self.connect(path)
        with self.lock_for(path):
            conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                conn.execute("ROLLBACK")
                raise
            else:
                conn.execute("COMMIT")

    def _ensure_schema(self, conn: sqlite3.Connection) -> None:
        for statement in SCHEMA:
            conn.execute(statement)

    def reset(self, path: Path) -> None:
        with self._lock:
            if path in self._connections:
                self._connections[path].close()
                del self._connections[path]
                self._locks.pop(path, None)
        if path.exists():
            path.unlink()

    def close_all(self) -> None:
        with self._lock:
            for conn in self._connections.values():
                conn.close()
            self._connections.clear()
            self._locks.clear()


__all__ = ["SCHEMA", "SQLiteManager"]
