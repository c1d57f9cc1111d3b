"""Shared fixtures: isolated home directory, SQLite store and RSS builders."""

from __future__ import annotations

from pathlib import Path
from typing import Any, Callable, Iterable, Sequence

import pytest

from feed_sync.config import ConfigLocator, ConfigRepository, GlobalConfig
from feed_sync.domain import ContentType, Source, SourceMode
from feed_sync.events import Event, EventBus, reset_event_bus
from feed_sync.infra import SQLiteManager, SQLiteStore


@pytest.fixture(autouse=True)
def isolated_home(tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> Path:
    monkeypatch.setenv("FEED_SYNC_HOME", str(tmp_path))
    monkeypatch.delenv("FEED_SYNC_PROXY_TOKEN", raising=False)
    return tmp_path


@pytest.fixture
def sample_global_config() -> GlobalConfig:
    return GlobalConfig(
        max_concurrent=2,
        enable_progress_bar=False,
        retry={"max_attempts": 3, "base_delay": 0.0, "max_delay": 0.0},
    )


@pytest.fixture
def temp_config_repository(tmp_path: Path, sample_global_config: GlobalConfig) -> Iterable[ConfigRepository]:
    repository = ConfigRepository(ConfigLocator(project_root=tmp_path))
    repository.save_global_config(sample_global_config)
    yield repository


@pytest.fixture
def event_bus() -> EventBus:
    return reset_event_bus()


@pytest.fixture
def recorded_events(event_bus: EventBus) -> list[Event]:
    events: list[Event] = []
    event_bus.subscribe(events.append)
    return events


@pytest.fixture
def store(tmp_path: Path, event_bus: EventBus) -> Iterable[SQLiteStore]:
    manager = SQLiteManager()
    yield SQLiteStore(manager, tmp_path / "data" / "feed_sync.db", event_bus)
    manager.close_all()


@pytest.fixture
def make_source(store: SQLiteStore) -> Callable[..., Source]:
    counter = {"value": 0}

    def _builder(**overrides: Any) -> Source:
        counter["value"] += 1
        base: dict[str, Any] = {
            "id": None,
            "url": f"https://example{counter['value']}.com/feed",
            "title": f"Example {counter['value']}",
            "mode": SourceMode.DIRECT,
            "content_type": ContentType.TEXT,
            "max_articles": 20,
        }
        base.update(overrides)
        return store.add_source(Source(**base))

    return _builder


def build_rss(items: Sequence[dict[str, str]], title: str = "Example Feed", extra_ns: str = "") -> str:
    """Render a minimal RSS 2.0 document. Each item may carry title/link/pubDate/description/extra."""

    rendered = []
    for item in items:
        parts = [f"<title>{item['title']}</title>", f"<link>{item['link']}</link>"]
        if item.get("pubDate"):
            parts.append(f"<pubDate>{item['pubDate']}</pubDate>")
        if item.get("description"):
            parts.append(f"<description><![CDATA[{item['description']}]]></description>")
        if item.get("extra"):
            parts.append(item["extra"])
        rendered.append("<item>" + "".join(parts) + "</item>")
    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        f'<rss version="2.0"{extra_ns}><channel><title>{title}</title>'
        "<link>https://example.com</link><description>Example description</description>"
        + "".join(rendered)
        + "</channel></rss>"
    )


@pytest.fixture
def rss_builder() -> Callable[..., str]:
    return build_rss
