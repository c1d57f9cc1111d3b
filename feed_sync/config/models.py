"""Pydantic models used across feed-sync configuration flow."""

from __future__ import annotations

from pathlib import Path
from typing import Any

from pydantic import BaseModel, Field, field_validator, model_validator

DESKTOP_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/124.0 Safari/537.36"
)
MOBILE_USER_AGENT = (
    "Mozilla/5.0 (iPhone; CPU iPhone OS 16_0 like Mac OS X) AppleWebKit/605.1.15 "
    "(KHTML, like Gecko) Version/16.0 Mobile/15E148 Safari/604.1"
)

DEFAULT_ANTI_HOTLINK_DOMAINS = [
    "cdnfile.sspai.com",
    "cdn.sspai.com",
    "sspai.com",
    "s3.ifanr.com",
    "images.ifanr.cn",
    "ifanr.com",
    "cnbetacdn.com",
    "static.cnbetacdn.com",
    "twimg.com",
    "pbs.twimg.com",
    "miro.medium.com",
]

DEFAULT_RSSHUB_INSTANCES = [
    "https://rsshub.app",
    "https://rsshub.rssforever.com",
    "https://rss.198909.xyz:37891",
    "https://rsshub.speedcloud.one",
    "https://rsshub.pseudoyu.com",
]


class NetworkConfig(BaseModel):
    """Outbound HTTP settings. Every call type carries its own timeout."""

    feed_timeout: float = 15.0
    page_timeout: float = 15.0
    image_timeout: float = 2.0
    desktop_user_agent: str = DESKTOP_USER_AGENT
    mobile_user_agent: str = MOBILE_USER_AGENT
    image_user_agent: str = "feed-sync/0.3 (+image-check)"
    accept_language: str = "zh-CN,zh;q=0.9,en;q=0.8"
    cors_relay_url: str = "https://api.allorigins.win/raw?url="
    cors_relay_domains: list[str] = Field(
        default_factory=lambda: ["feedly.com", "medium.com", "github.com"]
    )

    @field_validator("feed_timeout", "page_timeout", "image_timeout")
    @classmethod
    def _positive_timeout(cls, value: float) -> float:
        if value <= 0:
            raise ValueError("Timeouts must be greater than zero")
        return value


class RetryConfig(BaseModel):
    """Per-task retry policy: attempt n waits base_delay * 2**n before retrying."""

    max_attempts: int = 3
    base_delay: float = 1.0
    max_delay: float = 30.0

    @model_validator(mode="after")
    def _validate_bounds(self) -> "RetryConfig":
        if self.max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        if self.base_delay < 0:
            raise ValueError("base_delay must be non-negative")
        if self.max_delay < self.base_delay:
            raise ValueError("max_delay must be >= base_delay")
        return self


class ImageValidationConfig(BaseModel):
    min_file_size: int = 5000
    max_file_size: int = 10 * 1024 * 1024
    min_gif_size: int = 20000
    anti_hotlink_domains: list[str] = Field(
        default_factory=lambda: list(DEFAULT_ANTI_HOTLINK_DOMAINS)
    )

    @field_validator("anti_hotlink_domains", mode="before")
    @classmethod
    def _normalise_domains(cls, value: Any) -> list[str]:
        if value in (None, ""):
            return []
        if isinstance(value, str):
            value = [value]
        return [str(item).strip().lower().lstrip(".") for item in value if str(item).strip()]

    @model_validator(mode="after")
    def _validate_sizes(self) -> "ImageValidationConfig":
        if self.max_file_size <= self.min_file_size:
            raise ValueError("max_file_size must be greater than min_file_size")
        return self


class ProxyServerConfig(BaseModel):
    """Remote aggregation server used by proxy-mode sources."""

    enabled: bool = False
    base_url: str | None = None
    token: str | None = None
    image_compression: bool = True
    sync_limit: int = 100
    source_sync_limit: int = 50
    timeout: float = 15.0

    @field_validator("base_url", mode="before")
    @classmethod
    def _strip_slash(cls, value: Any) -> str | None:
        if value in (None, ""):
            return None
        return str(value).rstrip("/")

    @model_validator(mode="after")
    def _validate_enabled(self) -> "ProxyServerConfig":
        if self.enabled and not self.base_url:
            raise ValueError("proxy_server.base_url is required when the proxy server is enabled")
        return self


class RSSHubConfig(BaseModel):
    instances: list[str] = Field(default_factory=lambda: list(DEFAULT_RSSHUB_INSTANCES))
    probe_timeout: float = 5.0

    @field_validator("instances", mode="before")
    @classmethod
    def _strip_instances(cls, value: Any) -> list[str]:
        if not value:
            return list(DEFAULT_RSSHUB_INSTANCES)
        return [str(item).rstrip("/") for item in value]


class GlobalConfig(BaseModel):
    """Global controls shared across sources."""

    max_concurrent: int = 3
    default_max_articles: int = 20
    short_excerpt_threshold: int = 200
    boundary_window: int = 20
    boundary_time_tolerance: float = 60.0
    refresh_interval_minutes: int | None = None
    enable_progress_bar: bool = True
    database_path: Path = Field(default=Path("data/feed_sync.db"))
    network: NetworkConfig = Field(default_factory=NetworkConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    images: ImageValidationConfig = Field(default_factory=ImageValidationConfig)
    proxy_server: ProxyServerConfig = Field(default_factory=ProxyServerConfig)
    rsshub: RSSHubConfig = Field(default_factory=RSSHubConfig)

    @field_validator("database_path", mode="before")
    @classmethod
    def _coerce_path(cls, value: Any) -> Path:
        return Path(value)

    @model_validator(mode="after")
    def _validate_limits(self) -> "GlobalConfig":
        if self.max_concurrent < 1:
            raise ValueError("max_concurrent must be >= 1")
        if self.boundary_window < 1:
            raise ValueError("boundary_window must be >= 1")
        if self.refresh_interval_minutes is not None and self.refresh_interval_minutes <= 0:
            raise ValueError("refresh_interval_minutes must be positive or null")
        return self

    def resolved_database_path(self, base_dir: Path) -> Path:
        """Return the article database path relative to the project root."""

        if not self.database_path.is_absolute():
            return (base_dir / self.database_path).resolve()
        return self.database_path


__all__ = [
    "DEFAULT_ANTI_HOTLINK_DOMAINS",
    "DEFAULT_RSSHUB_INSTANCES",
    "DESKTOP_USER_AGENT",
    "GlobalConfig",
    "ImageValidationConfig",
    "MOBILE_USER_AGENT",
    "NetworkConfig",
    "ProxyServerConfig",
    "RSSHubConfig",
    "RetryConfig",
]
