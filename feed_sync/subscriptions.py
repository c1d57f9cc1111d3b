"""Subscribe and unsubscribe sources, validating feeds before they are stored."""

from __future__ import annotations

import structlog

from .domain import ContentType, Source, SourceMode
from .engine import Fetcher
from .engine import rsshub
from .errors import DuplicateSourceError, FeedFormatError
from .events import EventBus, get_event_bus
from .infra.store import SQLiteStore, normalise_source_url
from .sync import ProxySyncClient


class SubscriptionService:
    def __init__(
        self,
        store: SQLiteStore,
        fetcher: Fetcher,
        proxy_client: ProxySyncClient | None = None,
        bus: EventBus | None = None,
        default_max_articles: int = 20,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.store = store
        self.fetcher = fetcher
        self.proxy_client = proxy_client
        self.bus = bus or get_event_bus()
        self.default_max_articles = default_max_articles
        self.logger = logger or structlog.get_logger("feed_sync.subscriptions")

    def add_source(
        self,
        url: str,
        title: str | None = None,
        *,
        mode: SourceMode = SourceMode.DIRECT,
        content_type: ContentType = ContentType.IMAGE_TEXT,
        max_articles: int | None = None,
    ) -> Source:
        """Validate and persist a new subscription.

        Direct sources are fetched once so a broken URL is rejected up front and
        the feed title can be used when none is given. Proxy sources are
        registered with the aggregation server instead.
        """

        url = normalise_source_url(url)
        if rsshub.is_rsshub_url(url) and not rsshub.validate_path(url):
            raise FeedFormatError(f"无效的 RSSHub 路径: {url}")
        if self.store.find_source_by_url(url) is not None:
            raise DuplicateSourceError(f"Source already subscribed: {url}")

        description = ""
        server_source_id = None
        if mode is SourceMode.DIRECT:
            feed = self.fetcher.validate_feed(url)
            title = title or feed.title
            description = feed.description
        else:
            if self.proxy_client is None:
                raise FeedFormatError("代理模式需要先配置代理服务器")
            server_source_id = self.proxy_client.subscribe(url, title)
        if not title and rsshub.is_rsshub_url(url):
            title = rsshub.parse(url).description

        source = self.store.add_source(
            Source(
                id=None,
                url=url,
                title=title or url,
                description=description,
                mode=mode,
                content_type=content_type,
                max_articles=max_articles if max_articles is not None else self.default_max_articles,
                server_source_id=server_source_id,
            )
        )
        self.logger.info("source_added", source_id=source.id, url=url, mode=mode.value)
        self.bus.source_updated(source.id, reason="added")
        return source

    def remove_source(self, source_id: int) -> int:
        """Soft-delete a source; proxy sources are unsubscribed on the server best-effort."""

        source = self.store.get_source(source_id)
        if source.mode is SourceMode.PROXY and self.proxy_client is not None and source.server_source_id is not None:
            try:
                self.proxy_client.unsubscribe(source.server_source_id)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("proxy_unsubscribe_failed", source_id=source_id, error=str(exc))
        removed = self.store.delete_source(source_id)
        self.logger.info("source_removed", source_id=source_id, articles_removed=removed)
        return removed


__all__ = ["SubscriptionService"]
