from __future__ import annotations

import threading
import time
from datetime import datetime, timezone

import httpx
import pytest

from feed_sync.domain import Article, BatchResult, ContentType, FilterMode, FilterScope, Source, SourceMode
from feed_sync.engine import RetryPolicy, ThreadPoolManager
from feed_sync.engine.fetcher import FetchResponse
from feed_sync.errors import FeedFormatError, NetworkError
from feed_sync.events import EventType
from feed_sync.orchestrator import Orchestrator


class StubFetcher:
    """Scripted feed responses per URL; each call pops the next outcome."""

    def __init__(self) -> None:
        self.feeds: dict[str, list[str | Exception]] = {}
        self.calls: dict[str, int] = {}
        self.head_responses: dict[str, httpx.Response] = {}

    def script(self, url: str, *outcomes: str | Exception) -> None:
        self.feeds[url] = list(outcomes)

    def fetch_feed(self, url: str) -> FetchResponse:
        self.calls[url] = self.calls.get(url, 0) + 1
        outcomes = self.feeds[url]
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return FetchResponse(url=url, status_code=200, text=outcome, headers={}, content=outcome.encode("utf-8"))

    def fetch_page(self, url: str) -> None:
        return None

    def head(self, url: str, timeout=None, headers=None):  # noqa: ANN001
        return self.head_responses.get(url, httpx.Response(404))

    def close(self) -> None:
        return None


class StubProxyClient:
    """Server pulls return ``result``; per-source syncs follow scripted outcomes per URL."""

    def __init__(self, result: BatchResult | None = None) -> None:
        self.result = result or BatchResult()
        self.modes: list[str] = []
        self.pulled: list[tuple[Source, list[Article]]] = []
        self.outcomes: dict[str, list[int | Exception]] = {}
        self.source_calls: list[str] = []

    @property
    def is_configured(self) -> bool:
        return True

    def sync_from_server(self, mode: str = "sync", on_articles_ready=None) -> BatchResult:  # noqa: ANN001
        self.modes.append(mode)
        if on_articles_ready is not None:
            for source, articles in self.pulled:
                on_articles_ready(source, articles)
        return self.result

    def sync_source(self, source: Source, mode: str = "refresh", on_articles_ready=None) -> int:  # noqa: ANN001
        self.source_calls.append(source.url)
        outcomes = self.outcomes.get(source.url, [0])
        outcome = outcomes.pop(0) if len(outcomes) > 1 else outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        articles = [
            Article(source_id=source.id, source_name=source.name, title=f"{source.name} #{index}", url=f"{source.url}/{index}")
            for index in range(outcome)
        ]
        if articles and on_articles_ready is not None:
            on_articles_ready(source, articles)
        return len(articles)

    def close(self) -> None:
        return None


def _items(*indices: int, prefix: str = "Post") -> list[dict[str, str]]:
    return [
        {
            "title": f"{prefix} {index}",
            "link": f"https://example.com/posts/{index}",
            "pubDate": f"Mon, 06 Jan 2025 {10 - index:02d}:00:00 GMT",
            "description": f"<p>{prefix} {index} body</p>",
        }
        for index in indices
    ]


@pytest.fixture
def fetcher() -> StubFetcher:
    return StubFetcher()


@pytest.fixture
def proxy_client() -> StubProxyClient:
    return StubProxyClient()


@pytest.fixture
def orchestrator(temp_config_repository, store, event_bus, fetcher, proxy_client) -> Orchestrator:
    instance = Orchestrator(
        config_repository=temp_config_repository,
        store=store,
        thread_pool=ThreadPoolManager(2),
        fetcher=fetcher,
        proxy_client=proxy_client,
        bus=event_bus,
        retry_policy=RetryPolicy(max_attempts=3, base_delay=0.0, max_delay=0.0, sleep=lambda _: None),
    )
    yield instance
    instance.close()


def _types(events) -> list[EventType]:
    return [event.type for event in events]


def test_first_refresh_stores_all_items(orchestrator, fetcher, make_source, store, rss_builder, recorded_events) -> None:
    source = make_source()
    fetcher.script(source.url, rss_builder(_items(1, 2, 3)))

    result = orchestrator.refresh_source(source.id)

    assert (result.success_count, result.failed_count, result.total_articles) == (1, 0, 3)
    articles = store.list_articles(source.id)
    assert [a.title for a in articles] == ["Post 1", "Post 2", "Post 3"]
    assert articles[0].guid == articles[0].url
    assert articles[0].summary == "Post 1 body"
    assert articles[0].word_count == 3
    assert articles[0].reading_time == 1
    refreshed = store.get_source(source.id)
    assert (refreshed.article_count, refreshed.unread_count, refreshed.error_count) == (3, 3, 0)

    types = _types(recorded_events)
    assert types[0] is EventType.BATCH_SYNC_START
    assert types[-1] is EventType.BATCH_SYNC_END
    assert types.count(EventType.SOURCE_REFRESHED) == 1
    assert not orchestrator.is_batch_syncing


def test_known_head_short_circuits_and_emits_nothing(
    orchestrator, fetcher, make_source, store, rss_builder, recorded_events
) -> None:
    source = make_source()
    fetcher.script(source.url, rss_builder(_items(1, 2)), rss_builder(_items(1, 2)), rss_builder(_items(0, 1, 2)))
    orchestrator.refresh_source(source.id)
    recorded_events.clear()

    unchanged = orchestrator.refresh_source(source.id)
    assert (unchanged.success_count, unchanged.total_articles) == (1, 0)
    assert EventType.SOURCE_REFRESHED not in _types(recorded_events)

    newer = orchestrator.refresh_source(source.id)
    assert newer.total_articles == 1
    assert store.list_articles(source.id)[0].title == "Post 0"


def test_max_articles_caps_processing(orchestrator, fetcher, make_source, store, rss_builder) -> None:
    source = make_source(max_articles=2)
    fetcher.script(source.url, rss_builder(_items(1, 2, 3, 4)))
    assert orchestrator.refresh_source(source.id).total_articles == 2


def test_network_errors_are_retried(orchestrator, fetcher, make_source, store, rss_builder) -> None:
    source = make_source()
    fetcher.script(
        source.url,
        NetworkError("timeout"),
        NetworkError("HTTP 503", status_code=503),
        rss_builder(_items(1, 2)),
    )
    ready: list[int] = []

    result = orchestrator.refresh_source(source.id, on_articles_ready=lambda _, articles: ready.append(len(articles)))

    assert (result.success_count, result.failed_count, result.total_articles) == (1, 0, 2)
    assert result.errors == []
    assert fetcher.calls[source.url] == 3
    assert ready == [2]
    assert len(store.list_articles(source.id)) == 2
    assert store.get_source(source.id).error_count == 0


def test_stored_item_in_the_middle_limits_import_to_newer_items(
    orchestrator, fetcher, make_source, store, rss_builder
) -> None:
    source = make_source()
    store.insert_article(
        Article(
            source_id=source.id,
            title="Post 2",
            url="https://example.com/posts/2",
            guid="https://example.com/posts/2",
            published_at=datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc),
        )
    )
    fetcher.script(source.url, rss_builder(_items(0, 1, 2, 3, 4)))

    result = orchestrator.refresh_source(source.id)

    assert result.total_articles == 2
    assert sorted(a.title for a in store.list_articles(source.id)) == ["Post 0", "Post 1", "Post 2"]


def test_identical_second_fetch_imports_nothing_and_stays_silent(
    orchestrator, fetcher, make_source, rss_builder, recorded_events
) -> None:
    first = make_source()
    second = make_source()
    fetcher.script(first.url, rss_builder(_items(1, 2)))
    fetcher.script(second.url, rss_builder(_items(3, 4, prefix="Other")))
    assert orchestrator.refresh_all().total_articles == 4
    recorded_events.clear()

    again = orchestrator.refresh_all()

    assert (again.success_count, again.failed_count, again.total_articles) == (2, 0, 0)
    types = _types(recorded_events)
    assert EventType.ALL_SOURCES_REFRESHED not in types
    assert EventType.SOURCE_REFRESHED not in types
    assert types[0] is EventType.BATCH_SYNC_START
    assert types[-1] is EventType.BATCH_SYNC_END


class SlowFetcher(StubFetcher):
    """Tracks how many feed fetches are in flight at once."""

    def __init__(self) -> None:
        super().__init__()
        self._lock = threading.Lock()
        self.active = 0
        self.peak = 0

    def fetch_feed(self, url: str) -> FetchResponse:
        with self._lock:
            self.active += 1
            self.peak = max(self.peak, self.active)
        try:
            time.sleep(0.05)
            return super().fetch_feed(url)
        finally:
            with self._lock:
                self.active -= 1


def test_max_concurrent_bounds_in_flight_fetches(temp_config_repository, store, event_bus, make_source, rss_builder) -> None:
    fetcher = SlowFetcher()
    for index in range(6):
        source = make_source()
        fetcher.script(source.url, rss_builder(_items(index, prefix=f"S{index}")))
    orchestrator = Orchestrator(
        config_repository=temp_config_repository,
        store=store,
        thread_pool=ThreadPoolManager(5),
        fetcher=fetcher,
        proxy_client=StubProxyClient(),
        bus=event_bus,
        retry_policy=RetryPolicy(max_attempts=1, base_delay=0.0, max_delay=0.0, sleep=lambda _: None),
    )
    try:
        result = orchestrator.refresh_all(max_concurrent=3)
    finally:
        orchestrator.close()

    assert result.success_count == 6
    assert 1 <= fetcher.peak <= 3


def test_format_errors_are_not_retried(orchestrator, fetcher, make_source, store) -> None:
    source = make_source()
    fetcher.script(source.url, FeedFormatError("该地址返回的是网页而非 RSS"))
    errors: list[tuple[str, str]] = []

    result = orchestrator.refresh_source(source.id, on_error=lambda exc, name: errors.append((type(exc).__name__, name)))

    assert (result.success_count, result.failed_count) == (0, 1)
    assert fetcher.calls[source.url] == 1
    assert errors == [("FeedFormatError", source.name)]
    assert result.errors[0] == (source.name, "该地址返回的是网页而非 RSS")
    assert store.get_source(source.id).error_count == 1


def test_failures_are_isolated_between_sources(
    orchestrator, fetcher, make_source, rss_builder, recorded_events
) -> None:
    healthy = make_source()
    broken = make_source()
    fetcher.script(healthy.url, rss_builder(_items(1, 2)))
    fetcher.script(broken.url, NetworkError("connection refused"))
    progress: list[tuple[int, int, str]] = []

    result = orchestrator.refresh_all(on_progress=lambda done, total, name: progress.append((done, total, name)))

    assert (result.success_count, result.failed_count, result.total_articles) == (1, 1, 2)
    assert fetcher.calls[broken.url] == 3
    assert sorted(entry[0] for entry in progress) == [1, 2]
    assert {entry[1] for entry in progress} == {2}
    refreshed = [event for event in recorded_events if event.type is EventType.ALL_SOURCES_REFRESHED]
    assert len(refreshed) == 1
    assert refreshed[0].source_ids == (healthy.id,)


def test_missing_source_is_reported(orchestrator) -> None:
    result = orchestrator.refresh_sources([999])
    assert result.failed_count == 1
    assert result.errors[0][0] == "#999"


def test_include_rules_whitelist_articles(orchestrator, fetcher, make_source, store, rss_builder) -> None:
    source = make_source()
    other = make_source()
    store.create_rule("python", mode=FilterMode.INCLUDE, scope=FilterScope.SPECIFIC, source_ids=[source.id])
    store.create_rule("beta", mode=FilterMode.EXCLUDE)
    items = _items(1, 2, 3)
    items[0]["title"] = "Python 3.14 released"
    items[1]["title"] = "Python beta notes"
    fetcher.script(source.url, rss_builder(items))
    fetcher.script(other.url, rss_builder(_items(5, prefix="Rust")))

    orchestrator.refresh_all()

    assert [a.title for a in store.list_articles(source.id)] == ["Python 3.14 released"]
    assert [a.title for a in store.list_articles(other.id)] == ["Rust 5"]


def test_image_text_sources_get_validated_cover(orchestrator, fetcher, make_source, store, rss_builder) -> None:
    source = make_source(content_type=ContentType.IMAGE_TEXT)
    items = _items(1, 2)
    items[0]["description"] = '<p>one</p><img src="https://img.example.com/big.jpg" alt="Big">'
    items[1]["description"] = '<p>two</p><img src="https://img.example.com/tiny.jpg">'
    fetcher.head_responses = {
        "https://img.example.com/big.jpg": httpx.Response(
            200, headers={"content-type": "image/jpeg", "content-length": "80000"}
        ),
        "https://img.example.com/tiny.jpg": httpx.Response(
            200, headers={"content-type": "image/jpeg", "content-length": "1200"}
        ),
    }
    fetcher.script(source.url, rss_builder(items))

    orchestrator.refresh_source(source.id)

    by_title = {a.title: a for a in store.list_articles(source.id)}
    assert by_title["Post 1"].image_url == "https://img.example.com/big.jpg"
    assert by_title["Post 1"].image_caption == "Big"
    assert by_title["Post 2"].image_url is None


def test_text_sources_skip_images(orchestrator, fetcher, make_source, store, rss_builder) -> None:
    source = make_source(content_type=ContentType.TEXT)
    items = _items(1)
    items[0]["description"] = '<p>one</p><img src="https://img.example.com/big.jpg">'
    fetcher.script(source.url, rss_builder(items))
    orchestrator.refresh_source(source.id)
    article = store.list_articles(source.id)[0]
    assert article.image_url is None
    assert "<img" not in article.content


def test_targeted_proxy_refresh_syncs_only_that_source(
    orchestrator, proxy_client, make_source, store, recorded_events
) -> None:
    wanted = make_source(mode=SourceMode.PROXY)
    make_source(mode=SourceMode.PROXY)
    proxy_client.outcomes[wanted.url] = [2]
    ready: list[tuple[int, int]] = []

    result = orchestrator.refresh_source(
        wanted.id, on_articles_ready=lambda source, articles: ready.append((source.id, len(articles)))
    )

    assert proxy_client.source_calls == [wanted.url]
    assert proxy_client.modes == []
    assert (result.success_count, result.failed_count, result.total_articles) == (1, 0, 2)
    assert ready == [(wanted.id, 2)]
    assert [event.source_id for event in recorded_events if event.type is EventType.SOURCE_REFRESHED] == [wanted.id]


def test_proxy_source_sync_is_retried_and_failure_counted(orchestrator, proxy_client, make_source, store) -> None:
    source = make_source(mode=SourceMode.PROXY)
    proxy_client.outcomes[source.url] = [NetworkError("Sync failed: HTTP 502", status_code=502)]
    errors: list[str] = []

    result = orchestrator.refresh_sources([source.id], on_error=lambda exc, name: errors.append(name))

    assert proxy_client.source_calls == [source.url] * 3
    assert result.errors == [(source.name, "Sync failed: HTTP 502")]
    assert errors == [source.name]
    assert store.get_source(source.id).error_count == 1


def test_refresh_all_pulls_proxy_sources_once_from_server(
    orchestrator, proxy_client, fetcher, make_source, rss_builder
) -> None:
    make_source(mode=SourceMode.PROXY)
    make_source(mode=SourceMode.PROXY)
    direct = make_source()
    fetcher.script(direct.url, rss_builder(_items(1)))
    proxy_client.result.record_success(4)

    result = orchestrator.refresh_all()

    assert proxy_client.modes == ["refresh"]
    assert proxy_client.source_calls == []
    assert (result.success_count, result.total_articles) == (2, 5)


def test_server_pull_failure_marks_proxy_sources(orchestrator, proxy_client, make_source, store) -> None:
    source = make_source(mode=SourceMode.PROXY)
    proxy_client.result.record_failure("Server", "Sync failed: HTTP 502")
    errors: list[str] = []

    result = orchestrator.refresh_all(on_error=lambda exc, name: errors.append(name))

    assert result.errors == [("Server", "Sync failed: HTTP 502")]
    assert errors == ["Server"]
    assert store.get_source(source.id).error_count == 1


def test_pull_from_server_is_a_batch_with_events(orchestrator, proxy_client, make_source, recorded_events) -> None:
    source = make_source(mode=SourceMode.PROXY)
    proxy_client.pulled = [(source, [Article(source_id=source.id, title="Pulled", url="https://example.com/pulled")])]
    proxy_client.result.record_success(1)

    result = orchestrator.pull_from_server(mode="sync")

    assert result.total_articles == 1
    assert proxy_client.modes == ["sync"]
    types = _types(recorded_events)
    assert types[0] is EventType.BATCH_SYNC_START
    assert types[-1] is EventType.BATCH_SYNC_END
    refreshed = [event for event in recorded_events if event.type is EventType.ALL_SOURCES_REFRESHED]
    assert [event.source_ids for event in refreshed] == [(source.id,)]
    assert not orchestrator.is_batch_syncing

    with pytest.raises(ValueError):
        orchestrator.pull_from_server(mode="full")
    assert proxy_client.modes == ["sync"]


def test_inactive_sources_are_neither_fetched_nor_failed(orchestrator, fetcher, make_source, store, rss_builder) -> None:
    paused = make_source(is_active=False)
    active = make_source()
    fetcher.script(paused.url, NetworkError("should not be called"))
    fetcher.script(active.url, rss_builder(_items(1)))

    result = orchestrator.refresh_sources([paused.id, active.id])

    assert paused.url not in fetcher.calls
    assert (result.success_count, result.failed_count, result.total_articles) == (1, 0, 1)
    assert store.get_source(paused.id).error_count == 0


def test_batch_flag_is_visible_to_callbacks(orchestrator, fetcher, make_source, rss_builder) -> None:
    source = make_source()
    fetcher.script(source.url, rss_builder(_items(1)))
    seen: list[bool] = []
    orchestrator.refresh_source(source.id, on_progress=lambda *_: seen.append(orchestrator.is_batch_syncing))
    assert seen == [True]
    assert not orchestrator.is_batch_syncing


def test_callback_errors_do_not_abort_the_batch(orchestrator, fetcher, make_source, rss_builder) -> None:
    source = make_source()
    fetcher.script(source.url, rss_builder(_items(1)))

    def explode(*_args) -> None:
        raise RuntimeError("ui gone")

    result = orchestrator.refresh_source(source.id, on_progress=explode, on_articles_ready=explode)
    assert result.total_articles == 1
