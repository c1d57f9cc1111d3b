"""Infra layer utilities (SQLite connections and the article store)."""

from .storage import SQLiteManager
from .store import ArticleStore, RuleProvider, SQLiteStore, SourceStore

__all__ = ["ArticleStore", "RuleProvider", "SQLiteManager", "SQLiteStore", "SourceStore"]
