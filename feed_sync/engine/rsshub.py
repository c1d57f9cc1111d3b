"""Resolve ``rsshub://`` pseudo URLs to a reachable RSSHub instance."""

from __future__ import annotations

import re
from dataclasses import dataclass
from threading import Lock

import httpx
import structlog

from ..config import RSSHubConfig

SCHEME = "rsshub://"
DEFAULT_INSTANCE = "https://rsshub.app"
_VALID_PATH = re.compile(r"^[a-zA-Z0-9/._%?&=+-]+$")

# 常见平台的友好描述
PLATFORM_DESCRIPTIONS = {
    "techcrunch": "TechCrunch 科技新闻",
    "github": "GitHub 仓库动态",
    "twitter": "Twitter 用户动态",
    "weibo": "微博用户动态",
    "bilibili": "B站UP主动态",
    "zhihu": "知乎专栏/用户动态",
    "juejin": "掘金用户文章",
    "v2ex": "V2EX 论坛",
    "sspai": "少数派文章",
    "coolapk": "酷安应用市场",
    "cnbeta": "cnBeta 科技资讯",
}


@dataclass(slots=True, frozen=True)
class RSSHubRoute:
    platform: str
    route: str
    description: str


def is_rsshub_url(url: str) -> bool:
    return url.strip().lower().startswith(SCHEME)


def _path_of(url: str) -> str:
    return url.strip()[len(SCHEME):]


def validate_path(url: str) -> bool:
    if not is_rsshub_url(url):
        return False
    path = _path_of(url)
    if not path or path == "/":
        return False
    return bool(_VALID_PATH.match(path))


def convert(url: str, instance: str = DEFAULT_INSTANCE) -> str:
    if not is_rsshub_url(url):
        raise ValueError(f"URL must start with {SCHEME}: {url}")
    path = _path_of(url)
    if not path.startswith("/"):
        path = f"/{path}"
    return f"{instance.rstrip('/')}{path}"


def parse(url: str) -> RSSHubRoute:
    if not is_rsshub_url(url):
        raise ValueError(f"URL must start with {SCHEME}: {url}")
    segments = _path_of(url).split("/")
    platform = segments[0] or "unknown"
    route = "/".join(segments[1:])
    description = PLATFORM_DESCRIPTIONS.get(platform, f"{platform} RSS源")
    return RSSHubRoute(platform=platform, route=route, description=description)


class RSSHubResolver:
    """Pick the first answering instance once and rewrite pseudo URLs against it."""

    def __init__(
        self,
        config: RSSHubConfig | None = None,
        client: httpx.Client | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.config = config or RSSHubConfig()
        self._client = client or httpx.Client(follow_redirects=True, timeout=self.config.probe_timeout)
        self.logger = logger or structlog.get_logger("feed_sync.rsshub")
        self._selected: str | None = None
        self._lock = Lock()

    def probe(self, instance: str) -> bool:
        try:
            response = self._client.head(f"{instance}/", timeout=self.config.probe_timeout)
        except httpx.HTTPError as exc:
            self.logger.warning("rsshub_instance_unavailable", instance=instance, error=str(exc))
            return False
        return response.is_success

    def select_best_instance(self) -> str:
        with self._lock:
            if self._selected is not None:
                return self._selected
            for instance in self.config.instances:
                if self.probe(instance):
                    self._selected = instance
                    break
            else:
                self.logger.warning("rsshub_no_instance_available", fallback=DEFAULT_INSTANCE)
                self._selected = DEFAULT_INSTANCE
            return self._selected

    def resolve(self, url: str) -> str:
        """Return ``url`` unchanged unless it is an ``rsshub://`` URL."""

        if not is_rsshub_url(url):
            return url
        if not validate_path(url):
            raise ValueError(f"Invalid RSSHub path: {url}")
        return convert(url, self.select_best_instance())

    def close(self) -> None:
        self._client.close()


__all__ = [
    "DEFAULT_INSTANCE",
    "RSSHubResolver",
    "RSSHubRoute",
    "convert",
    "is_rsshub_url",
    "parse",
    "validate_path",
]
