"""REST client for the aggregation server used by proxy-mode sources."""

from __future__ import annotations

from typing import Any, Callable
from urllib.parse import quote

import httpx
import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..config import ProxyServerConfig
from ..domain import Article, BatchResult, ContentType, Source, SourceMode, SyncAckBatch
from ..engine.text import count_words, generate_summary, parse_published_date, reading_time
from ..errors import NetworkError, ProxyProtocolError
from ..infra.store import SQLiteStore

AUTO_IMPORTED_TITLE = "Auto Imported"
SERVER_ERROR_SOURCE = "Server"
SYNC_MODES = ("sync", "refresh")

ArticlesReady = Callable[[Source, list[Article]], None]


class ServerItem(BaseModel):
    """One pre-rendered item as delivered by ``GET /api/sync``."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    id: int = Field(alias="ID")
    source_id: int | None = Field(default=None, alias="SourceID")
    guid: str = Field(alias="GUID")
    title: str = Field(default="", alias="Title")
    link: str = Field(default="", alias="Link")
    xml_content: str = Field(default="", alias="XMLContent")
    image_paths: str = Field(default="", alias="ImagePaths")
    published_at: str = Field(default="", alias="PublishedAt")
    created_at: str = Field(default="", alias="CreatedAt")
    summary: str = Field(default="", alias="Summary")
    word_count: int = Field(default=0, alias="WordCount")
    reading_time: int = Field(default=0, alias="ReadingTime")
    cover_image: str = Field(default="", alias="CoverImage")
    author: str = Field(default="", alias="Author")
    clean_content: str = Field(default="", alias="CleanContent")
    content: str = Field(default="", alias="Content")
    content_hash: str = Field(default="", alias="ContentHash")
    image_caption: str = Field(default="", alias="ImageCaption")
    image_credit: str = Field(default="", alias="ImageCredit")
    image_primary_color: str = Field(default="", alias="ImagePrimaryColor")
    source_title: str = Field(default="", alias="SourceTitle")
    source_url: str = Field(default="", alias="SourceURL")

    @field_validator(
        "title",
        "link",
        "xml_content",
        "image_paths",
        "published_at",
        "created_at",
        "summary",
        "cover_image",
        "author",
        "clean_content",
        "content",
        "content_hash",
        "image_caption",
        "image_credit",
        "image_primary_color",
        "source_title",
        "source_url",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("word_count", "reading_time", mode="before")
    @classmethod
    def _none_to_zero(cls, value: Any) -> Any:
        return 0 if value in (None, "") else value

    @property
    def body(self) -> str:
        return self.clean_content or self.content or self.xml_content

    @property
    def article_url(self) -> str:
        return self.link or self.guid


class SyncResponse(BaseModel):
    success: bool
    items: list[ServerItem]
    count: int | None = None


class AckResponse(BaseModel):
    success: bool = False
    acknowledged: int = 0
    cleaned: int = 0


class SubscribeResponse(BaseModel):
    success: bool
    source_id: int | None = None
    is_new_source: bool = False
    message: str = ""


class ProxySyncClient:
    """Pull items from the aggregation server, persist them, acknowledge them."""

    def __init__(
        self,
        config: ProxyServerConfig,
        store: SQLiteStore,
        token: str | None = None,
        client: httpx.Client | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config
        self.store = store
        self.token = token or config.token
        self._client = client or httpx.Client(follow_redirects=True, timeout=config.timeout)
        self.logger = logger or structlog.get_logger("feed_sync.proxy")

    @property
    def is_configured(self) -> bool:
        return bool(self.config.base_url and self.token)

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    # HTTP plumbing
    # ------------------------------------------------------------------
    def _url(self, path: str) -> str:
        if not self.config.base_url:
            raise ProxyProtocolError("未配置代理服务器地址 (proxy_server.base_url)")
        return f"{self.config.base_url}{path}"

    def _headers(self) -> dict[str, str]:
        if not self.token:
            raise ProxyProtocolError("未配置代理服务器令牌 (FEED_SYNC_PROXY_TOKEN)")
        return {"Authorization": f"Bearer {self.token}"}

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = self._url(path)
        try:
            response = self._client.request(method, url, headers=self._headers(), timeout=self.config.timeout, **kwargs)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"代理服务器请求超时: {url}", url=url) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"代理服务器请求失败: {exc}", url=url) from exc
        if not response.is_success:
            raise NetworkError(
                f"Sync failed: HTTP {response.status_code}", url=url, status_code=response.status_code
            )
        try:
            return response.json()
        except ValueError as exc:
            raise ProxyProtocolError(f"代理服务器返回了无效的 JSON: {url}") from exc

    # ------------------------------------------------------------------
    # Sync
    # ------------------------------------------------------------------
    def fetch_items(self, *, mode: str, limit: int, source_url: str | None = None) -> list[ServerItem]:
        compress = "true" if self.config.image_compression else "false"
        path = f"/api/sync?format=json&image_compression={compress}&mode={mode}"
        if source_url:
            path += f"&source_url={quote(source_url, safe='')}"
        path += f"&limit={limit}"
        payload = self._request("GET", path)
        try:
            parsed = SyncResponse.model_validate(payload)
        except ValidationError as exc:
            raise ProxyProtocolError("Invalid sync response") from exc
        if not parsed.success:
            raise ProxyProtocolError("Invalid sync response")
        return parsed.items

    def sync_from_server(self, mode: str = "sync", on_articles_ready: ArticlesReady | None = None) -> BatchResult:
        """Pull every pending item. Any failure becomes a single ``Server`` error."""

        result = BatchResult()
        try:
            items = self.fetch_items(mode=mode, limit=self.config.sync_limit)
            self.logger.info("proxy_sync_received", mode=mode, items=len(items))
            saved = self._consume(items, on_articles_ready)
        except Exception as exc:  # noqa: BLE001
            self.logger.error("proxy_sync_failed", mode=mode, error=str(exc))
            result.record_failure(SERVER_ERROR_SOURCE, str(exc))
            return result
        result.record_success(saved)
        return result

    def sync_source(self, source: Source, mode: str = "refresh", on_articles_ready: ArticlesReady | None = None) -> int:
        """Pull items of one source; errors propagate to the caller."""

        items = self.fetch_items(mode=mode, limit=self.config.source_sync_limit, source_url=source.url)
        return self._consume(items, on_articles_ready)

    def _consume(self, items: list[ServerItem], on_articles_ready: ArticlesReady | None) -> int:
        if not items:
            return 0
        saved: dict[int, list[Article]] = {}
        sources: dict[int, Source] = {}
        for item in items:
            try:
                source = self._resolve_source(item)
                article = self._save_item(item, source)
            except Exception as exc:  # noqa: BLE001
                self.logger.warning("proxy_item_save_failed", item_id=item.id, error=str(exc))
                continue
            if article is None or source.id is None:
                continue
            sources[source.id] = source
            saved.setdefault(source.id, []).append(article)
        self.acknowledge(SyncAckBatch(item_ids=[item.id for item in items]))
        for source_id, articles in saved.items():
            self.store.record_fetch_success(source_id)
            self.store.update_source_stats(source_id)
            if on_articles_ready is not None:
                on_articles_ready(sources[source_id], articles)
        total = sum(len(articles) for articles in saved.values())
        self.logger.info("proxy_items_saved", received=len(items), saved=total)
        return total

    def _resolve_source(self, item: ServerItem) -> Source:
        if item.source_url:
            existing = self.store.find_source_by_url(item.source_url)
            if existing is not None:
                return existing
            return self.store.add_source(
                Source(
                    id=None,
                    url=item.source_url,
                    title=item.source_title or AUTO_IMPORTED_TITLE,
                    mode=SourceMode.PROXY,
                )
            )
        raise ProxyProtocolError(f"Item {item.id} has no SourceURL")

    def _save_item(self, item: ServerItem, source: Source) -> Article | None:
        if self.store.article_exists(item.guid, item.guid):
            return None
        body = item.body
        words = item.word_count or count_words(body)
        article = Article(
            source_id=source.id,
            source_name=source.title or item.source_title or AUTO_IMPORTED_TITLE,
            title=item.title,
            url=item.article_url,
            guid=item.guid,
            content=body,
            summary=item.summary or generate_summary(body),
            author=item.author,
            image_url=item.cover_image or None,
            image_caption=item.image_caption or None,
            image_credit=item.image_credit or None,
            published_at=parse_published_date(item.published_at or item.created_at),
            word_count=words,
            reading_time=item.reading_time or reading_time(words),
        )
        if source.content_type is ContentType.TEXT:
            article.image_url = None
        return self.store.insert_article(article)

    # ------------------------------------------------------------------
    # Ack / subscriptions
    # ------------------------------------------------------------------
    def acknowledge(self, batch: SyncAckBatch) -> AckResponse | None:
        """Best-effort: a failed ack is logged and never undoes local inserts."""

        if not batch.item_ids:
            return None
        try:
            payload = self._request("POST", "/api/ack", json=batch.as_payload())
            ack = AckResponse.model_validate(payload)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("proxy_ack_failed", items=len(batch.item_ids), error=str(exc))
            return None
        self.logger.info("proxy_ack_sent", acknowledged=ack.acknowledged, cleaned=ack.cleaned)
        return ack

    def subscribe(self, url: str, title: str | None = None) -> int | None:
        payload = self._request("POST", "/api/subscribe", json={"url": url, "title": title or ""})
        try:
            parsed = SubscribeResponse.model_validate(payload)
        except ValidationError as exc:
            raise ProxyProtocolError("Invalid subscribe response") from exc
        if not parsed.success:
            raise ProxyProtocolError(parsed.message or "订阅失败")
        self.logger.info("proxy_subscribed", url=url, server_source_id=parsed.source_id, new=parsed.is_new_source)
        return parsed.source_id

    def unsubscribe(self, server_source_id: int) -> None:
        payload = self._request("DELETE", f"/api/subscribe/{server_source_id}")
        if isinstance(payload, dict) and payload.get("success") is False:
            raise ProxyProtocolError(str(payload.get("message") or "取消订阅失败"))


__all__ = [
    "AckResponse",
    "ProxySyncClient",
    "SERVER_ERROR_SOURCE",
    "SYNC_MODES",
    "ServerItem",
    "SubscribeResponse",
    "SyncResponse",
]
