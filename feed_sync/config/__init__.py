"""Configuration package exports."""

from .loader import ConfigLocator, ConfigRepository
from .models import (
    GlobalConfig,
    ImageValidationConfig,
    NetworkConfig,
    ProxyServerConfig,
    RetryConfig,
    RSSHubConfig,
)

__all__ = [
    "ConfigLocator",
    "ConfigRepository",
    "GlobalConfig",
    "ImageValidationConfig",
    "NetworkConfig",
    "ProxyServerConfig",
    "RSSHubConfig",
    "RetryConfig",
]
