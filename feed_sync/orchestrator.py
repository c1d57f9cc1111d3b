"""Refresh orchestrator wiring fetch, parse, diff, extraction, filtering and persistence."""

from __future__ import annotations

from concurrent.futures import Future, as_completed
from dataclasses import dataclass, field
from threading import Lock
from typing import Callable, Iterable

import structlog

from .config import ConfigRepository, GlobalConfig
from .domain import Article, BatchResult, ContentType, FetchTaskResult, Source, SourceMode
from .engine import (
    BasicItem,
    ContentExtractor,
    Fetcher,
    FilterEngine,
    ImagePipeline,
    RetryPolicy,
    ThreadPoolManager,
    collect_basic_items,
    find_new_item_boundary,
    parse_feed,
    run_with_retry,
)
from .engine.content import fix_relative_image_urls
from .engine.text import clean_text_content, count_words, generate_summary, reading_time
from .errors import FeedSyncError, SourceNotFoundError, is_retryable
from .events import EventBus, get_event_bus
from .infra import SQLiteManager, SQLiteStore
from .logging_conf import configure_logging, source_logger
from .sync import ProxySyncClient
from .sync.proxy_client import SERVER_ERROR_SOURCE, SYNC_MODES

ProgressCallback = Callable[[int, int, str], None]
ErrorCallback = Callable[[BaseException, str], None]
ArticlesReadyCallback = Callable[[Source, list[Article]], None]


@dataclass(slots=True)
class _TaskOutcome:
    result: FetchTaskResult
    exception: BaseException | None = None
    ready: list[tuple[Source, list[Article]]] = field(default_factory=list)


class Orchestrator:
    """Central coordinator running refresh batches over a bounded worker pool."""

    def __init__(
        self,
        config_repository: ConfigRepository,
        store: SQLiteStore,
        thread_pool: ThreadPoolManager,
        fetcher: Fetcher | None = None,
        proxy_client: ProxySyncClient | None = None,
        bus: EventBus | None = None,
        retry_policy: RetryPolicy | None = None,
        filter_engine: FilterEngine | None = None,
        content_extractor: ContentExtractor | None = None,
        image_pipeline: ImagePipeline | None = None,
    ) -> None:
        self.config_repository = config_repository
        self.global_config: GlobalConfig = config_repository.load_global_config()
        self.store = store
        self.thread_pool = thread_pool
        self.bus = bus or get_event_bus()
        self.logger = configure_logging().bind(component="orchestrator")
        self.fetcher = fetcher or Fetcher(self.global_config, logger=self.logger)
        self.proxy_client = proxy_client or ProxySyncClient(
            self.global_config.proxy_server,
            store,
            token=config_repository.proxy_token(),
            logger=self.logger,
        )
        self.retry_policy = retry_policy or RetryPolicy.from_config(self.global_config.retry)
        self.filter_engine = filter_engine or FilterEngine(store, logger=self.logger)
        self.content_extractor = content_extractor or ContentExtractor(
            self.fetcher, self.global_config.short_excerpt_threshold, logger=self.logger
        )
        self.image_pipeline = image_pipeline or ImagePipeline(
            self.fetcher, self.global_config.images, logger=self.logger
        )
        self._active_batches = 0
        self._batch_lock = Lock()

    @classmethod
    def from_repository(
        cls,
        config_repository: ConfigRepository,
        storage: SQLiteManager | None = None,
        bus: EventBus | None = None,
    ) -> "Orchestrator":
        global_config = config_repository.load_global_config()
        bus = bus or get_event_bus()
        store = SQLiteStore(storage or SQLiteManager(), config_repository.database_path(), bus)
        return cls(
            config_repository=config_repository,
            store=store,
            thread_pool=ThreadPoolManager(global_config.max_concurrent),
            bus=bus,
        )

    def close(self) -> None:
        self.fetcher.close()
        self.proxy_client.close()
        self.thread_pool.shutdown()

    # ------------------------------------------------------------------
    # Batch bookkeeping
    # ------------------------------------------------------------------
    @property
    def is_batch_syncing(self) -> bool:
        """Advisory flag for callers wanting to skip redundant triggers; never blocks."""

        with self._batch_lock:
            return self._active_batches > 0

    def _enter_batch(self) -> None:
        with self._batch_lock:
            self._active_batches += 1

    def _leave_batch(self) -> None:
        with self._batch_lock:
            self._active_batches = max(0, self._active_batches - 1)

    # ------------------------------------------------------------------
    # Public entry points
    # ------------------------------------------------------------------
    def refresh_all(
        self,
        *,
        max_concurrent: int | None = None,
        on_progress: ProgressCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_articles_ready: ArticlesReadyCallback | None = None,
    ) -> BatchResult:
        """Refresh every active source; proxy sources share one server-wide pull."""

        source_ids = [source.id for source in self.store.list_sources(active_only=True)]
        return self._run_batch(
            source_ids,
            server_pull=True,
            max_concurrent=max_concurrent,
            on_progress=on_progress,
            on_error=on_error,
            on_articles_ready=on_articles_ready,
        )

    def refresh_source(self, source_id: int, **callbacks) -> BatchResult:
        return self.refresh_sources([source_id], **callbacks)

    def refresh_sources(
        self,
        source_ids: Iterable[int],
        *,
        max_concurrent: int | None = None,
        on_progress: ProgressCallback | None = None,
        on_error: ErrorCallback | None = None,
        on_articles_ready: ArticlesReadyCallback | None = None,
    ) -> BatchResult:
        """Refresh the given sources, one task each. Inactive sources are skipped."""

        return self._run_batch(
            source_ids,
            server_pull=False,
            max_concurrent=max_concurrent,
            on_progress=on_progress,
            on_error=on_error,
            on_articles_ready=on_articles_ready,
        )

    def pull_from_server(
        self, mode: str = "sync", on_articles_ready: ArticlesReadyCallback | None = None
    ) -> BatchResult:
        """Pull every pending item from the aggregation server as one batch."""

        if mode not in SYNC_MODES:
            raise ValueError(f"未知的同步模式: {mode}（可选 {', '.join(SYNC_MODES)}）")
        refreshed: list[int] = []

        def _ready(source: Source, articles: list[Article]) -> None:
            if articles and source.id is not None:
                refreshed.append(source.id)
            if on_articles_ready is not None:
                self._notify(on_articles_ready, source, articles)

        self._enter_batch()
        self.bus.batch_sync_start()
        try:
            result = self.proxy_client.sync_from_server(mode=mode, on_articles_ready=_ready)
            if result.total_articles > 0:
                self.bus.all_sources_refreshed(refreshed)
            self.logger.info("server_pull_finished", mode=mode, **result.as_dict())
            return result
        finally:
            self._leave_batch()
            self.bus.batch_sync_end()

    def _run_batch(
        self,
        source_ids: Iterable[int],
        *,
        server_pull: bool,
        max_concurrent: int | None,
        on_progress: ProgressCallback | None,
        on_error: ErrorCallback | None,
        on_articles_ready: ArticlesReadyCallback | None,
    ) -> BatchResult:
        result = BatchResult()
        self._enter_batch()
        self.bus.batch_sync_start()
        try:
            sources = self._load_sources(source_ids, result, on_error)
            direct = [source for source in sources if source.mode is SourceMode.DIRECT]
            proxied = [source for source in sources if source.mode is SourceMode.PROXY]
            workers = max_concurrent or self.global_config.max_concurrent
            executor = self.thread_pool.get(workers)
            futures: dict[Future[_TaskOutcome], str] = {}
            for source in direct:
                futures[executor.submit(self._run_direct_task, source)] = source.name
            if server_pull and proxied:
                futures[executor.submit(self._run_server_pull_task, proxied)] = SERVER_ERROR_SOURCE
            else:
                for source in proxied:
                    futures[executor.submit(self._run_proxy_source_task, source)] = source.name
            total = len(futures)
            self.logger.info(
                "batch_started", direct=len(direct), proxy=len(proxied), server_pull=server_pull, workers=workers
            )

            refreshed: list[int] = []
            completed = 0
            for future in as_completed(futures):
                name = futures[future]
                outcome = future.result()
                completed += 1
                result.record(outcome.result)
                if outcome.result.success:
                    for source, articles in outcome.ready:
                        if articles and source.id is not None:
                            refreshed.append(source.id)
                            if on_articles_ready is not None:
                                self._notify(on_articles_ready, source, articles)
                elif on_error is not None and outcome.exception is not None:
                    self._notify(on_error, outcome.exception, name)
                if on_progress is not None:
                    self._notify(on_progress, completed, total, name)

            if result.total_articles > 0:
                if len(sources) == 1 and sources[0].id is not None:
                    self.bus.source_refreshed(sources[0].id)
                else:
                    self.bus.all_sources_refreshed(refreshed)
            self.logger.info("batch_finished", **result.as_dict())
            return result
        finally:
            self._leave_batch()
            self.bus.batch_sync_end()

    # ------------------------------------------------------------------
    def _load_sources(
        self, source_ids: Iterable[int], result: BatchResult, on_error: ErrorCallback | None
    ) -> list[Source]:
        sources: list[Source] = []
        for source_id in source_ids:
            try:
                source = self.store.get_source(source_id)
            except SourceNotFoundError as exc:
                result.record_failure(f"#{source_id}", str(exc))
                if on_error is not None:
                    self._notify(on_error, exc, f"#{source_id}")
                continue
            if not source.is_active:
                self.logger.info("inactive_source_skipped", source_id=source_id)
                continue
            sources.append(source)
        return sources

    def _notify(self, callback: Callable[..., None], *args: object) -> None:
        try:
            callback(*args)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("batch_callback_failed", callback=getattr(callback, "__name__", repr(callback)), error=str(exc))

    def _failed_outcome(self, source: Source, exc: Exception, log: structlog.BoundLogger) -> _TaskOutcome:
        attempts = self.retry_policy.max_attempts if is_retryable(exc) else 1
        log.error("source_refresh_failed", attempts=attempts, error=str(exc))
        if source.id is not None:
            self.store.record_fetch_failure(source.id)
        return _TaskOutcome(
            FetchTaskResult(source.id, source.name, False, error=str(exc), attempts=attempts),
            exception=exc,
        )

    def _run_direct_task(self, source: Source) -> _TaskOutcome:
        log = source_logger(source.name)
        try:
            articles, attempts = run_with_retry(
                lambda: self._refresh_direct(source, log),
                self.retry_policy,
                logger=log,
                label=source.name,
            )
        except Exception as exc:  # noqa: BLE001
            return self._failed_outcome(source, exc, log)
        if source.id is not None:
            self.store.record_fetch_success(source.id)
            self.store.update_source_stats(source.id)
        log.info("source_refreshed", new_articles=len(articles), attempts=attempts)
        return _TaskOutcome(
            FetchTaskResult(
                source.id,
                source.name,
                True,
                new_article_count=len(articles),
                attempts=attempts,
                articles=articles,
            ),
            ready=[(source, articles)],
        )

    def _run_proxy_source_task(self, source: Source) -> _TaskOutcome:
        log = source_logger(source.name)

        def _attempt() -> list[tuple[Source, list[Article]]]:
            ready: list[tuple[Source, list[Article]]] = []
            self.proxy_client.sync_source(
                source, on_articles_ready=lambda owner, articles: ready.append((owner, articles))
            )
            return ready

        try:
            ready, attempts = run_with_retry(_attempt, self.retry_policy, logger=log, label=source.name)
        except Exception as exc:  # noqa: BLE001
            return self._failed_outcome(source, exc, log)
        articles = [article for _, batch in ready for article in batch]
        if source.id is not None:
            self.store.record_fetch_success(source.id)
            self.store.update_source_stats(source.id)
        log.info("source_refreshed", new_articles=len(articles), attempts=attempts, via="proxy")
        return _TaskOutcome(
            FetchTaskResult(
                source.id,
                source.name,
                True,
                new_article_count=len(articles),
                attempts=attempts,
                articles=articles,
            ),
            ready=ready,
        )

    def _run_server_pull_task(self, sources: list[Source]) -> _TaskOutcome:
        ready: list[tuple[Source, list[Article]]] = []
        batch = self.proxy_client.sync_from_server(
            mode="refresh", on_articles_ready=lambda source, articles: ready.append((source, articles))
        )
        if batch.failed_count:
            message = batch.errors[0][1] if batch.errors else "Unknown error"
            for source in sources:
                if source.id is not None:
                    self.store.record_fetch_failure(source.id)
            return _TaskOutcome(
                FetchTaskResult(None, SERVER_ERROR_SOURCE, False, error=message),
                exception=FeedSyncError(message),
            )
        for source in sources:
            if source.id is not None:
                self.store.record_fetch_success(source.id)
        return _TaskOutcome(
            FetchTaskResult(None, SERVER_ERROR_SOURCE, True, new_article_count=batch.total_articles),
            ready=ready,
        )

    # ------------------------------------------------------------------
    # Direct pipeline
    # ------------------------------------------------------------------
    def _refresh_direct(self, source: Source, log: structlog.BoundLogger) -> list[Article]:
        response = self.fetcher.fetch_feed(source.url)
        feed = parse_feed(response.content or response.text)
        basic_items = collect_basic_items(feed.items, source.max_articles)
        recent = self.store.recent_article_refs(source.id, limit=self.global_config.boundary_window)
        boundary = find_new_item_boundary(
            basic_items, recent, tolerance=self.global_config.boundary_time_tolerance
        )
        log.info("boundary_detected", parsed=len(basic_items), new_items=boundary, stored=len(recent))
        if boundary == 0:
            return []

        candidates = [self._build_article(source, basic, log) for basic in basic_items[:boundary]]
        accepted = self.filter_engine.apply(candidates, source.id)
        saved: list[Article] = []
        for article in accepted:
            if self.store.article_exists(article.url, article.guid):
                continue
            stored = self.store.insert_article(article)
            if stored is not None:
                saved.append(stored)
        log.info("articles_persisted", candidates=len(candidates), accepted=len(accepted), saved=len(saved))
        return saved

    def _build_article(self, source: Source, basic: BasicItem, log: structlog.BoundLogger) -> Article:
        item = basic.item
        raw = fix_relative_image_urls(item.excerpt, basic.link)
        # image extraction reads the fixed excerpt too
        if item.content:
            item.content = raw
        else:
            item.description = raw
        content = self.content_extractor.extract(raw, basic.link, source.content_type)
        words = count_words(content)
        article = Article(
            source_id=source.id,
            source_name=source.name,
            title=clean_text_content(item.title),
            url=basic.link,
            guid=basic.link,
            content=content,
            summary=generate_summary(content),
            author=clean_text_content(item.author),
            published_at=basic.published_at,
            word_count=words,
            reading_time=reading_time(words),
            tags=list(item.categories),
        )
        if source.content_type is ContentType.IMAGE_TEXT:
            try:
                candidate = self.image_pipeline.select_image(item, raw)
            except Exception as exc:  # noqa: BLE001
                log.warning("image_extraction_failed", url=basic.link, error=str(exc))
                candidate = None
            if candidate is not None:
                article.image_url = candidate.url
                article.image_caption = candidate.caption
                article.image_credit = candidate.credit
        return article


__all__ = ["Orchestrator"]
