"""HTTP fetching for feeds, article pages and image probes."""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Dict
from urllib.parse import quote, urlparse

import httpx
import structlog

from ..config import GlobalConfig
from ..errors import FeedFormatError, NetworkError
from .feed_parser import Feed, ensure_feed_body, parse_feed
from .rsshub import RSSHubResolver

FEED_ACCEPT = "application/rss+xml, application/xml, text/xml, */*"
PAGE_ACCEPT = "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"


@dataclass(slots=True)
class FetchResponse:
    """Standardised response wrapper."""

    url: str
    status_code: int
    text: str
    headers: Dict[str, str]
    content: bytes = field(repr=False, default=b"")
    relayed: bool = False


class Fetcher:
    """Issue feed/page/HEAD requests with browser-like headers over one httpx client."""

    def __init__(
        self,
        global_config: GlobalConfig,
        resolver: RSSHubResolver | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.global_config = global_config
        self.network = global_config.network
        self.logger = logger or structlog.get_logger("feed_sync.fetcher")
        self._client = httpx.Client(follow_redirects=True, timeout=self.network.feed_timeout)
        self.resolver = resolver or RSSHubResolver(global_config.rsshub, client=self._client, logger=self.logger)

    def close(self) -> None:
        self._client.close()

    # ------------------------------------------------------------------
    def needs_relay(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        return any(
            host == domain or host.endswith(f".{domain}") for domain in self.network.cors_relay_domains
        )

    def feed_headers(self, url: str) -> dict[str, str]:
        return {
            "User-Agent": self.network.desktop_user_agent,
            "Accept": FEED_ACCEPT,
            "Accept-Language": self.network.accept_language,
            "Cache-Control": "no-cache",
            "Referer": url,
        }

    def fetch_feed(self, url: str) -> FetchResponse:
        """GET a feed body. Transport problems raise NetworkError, bad bodies FeedFormatError."""

        try:
            actual_url = self.resolver.resolve(url)
        except ValueError as exc:
            raise FeedFormatError(str(exc)) from exc
        headers = self.feed_headers(actual_url)
        target = actual_url
        relayed = self.needs_relay(actual_url)
        if relayed:
            target = f"{self.network.cors_relay_url}{quote(actual_url, safe='')}"
            headers.pop("User-Agent", None)
        response = self._send("GET", target, headers=headers, timeout=self.network.feed_timeout)
        ensure_feed_body(response.text)
        self.logger.debug("feed_fetched", url=actual_url, status=response.status_code, relayed=relayed)
        return FetchResponse(
            url=str(response.url),
            status_code=response.status_code,
            text=response.text,
            headers=dict(response.headers),
            content=response.content,
            relayed=relayed,
        )

    def validate_feed(self, url: str) -> Feed:
        """Fetch and parse ``url`` once; used before subscribing to a direct source."""

        response = self.fetch_feed(url)
        return parse_feed(response.content or response.text)

    def fetch_page(self, url: str) -> str | None:
        """Fetch an article page with a mobile UA. Failures are logged and return None."""

        headers = {"User-Agent": self.network.mobile_user_agent, "Accept": PAGE_ACCEPT}
        try:
            response = self._send("GET", url, headers=headers, timeout=self.network.page_timeout)
        except NetworkError as exc:
            self.logger.warning("page_fetch_failed", url=url, status=exc.status_code, error=str(exc))
            return None
        return response.text

    def head(self, url: str, timeout: float | None = None, headers: dict[str, str] | None = None) -> httpx.Response:
        """HEAD request; non-2xx responses are returned, transport errors raise NetworkError."""

        return self._send(
            "HEAD",
            url,
            headers=headers or {"User-Agent": self.network.image_user_agent},
            timeout=timeout or self.network.image_timeout,
            raise_for_status=False,
        )

    # ------------------------------------------------------------------
    def _send(
        self,
        method: str,
        url: str,
        *,
        headers: dict[str, str],
        timeout: float,
        raise_for_status: bool = True,
    ) -> httpx.Response:
        try:
            response = self._client.request(method, url, headers=headers, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise NetworkError(f"请求超时: {url}", url=url) from exc
        except httpx.HTTPError as exc:
            raise NetworkError(f"网络请求失败: {exc}", url=url) from exc
        if raise_for_status and not response.is_success:
            raise NetworkError(
                f"HTTP {response.status_code}: {response.reason_phrase}",
                url=url,
                status_code=response.status_code,
            )
        return response


__all__ = ["FEED_ACCEPT", "FetchResponse", "Fetcher"]
