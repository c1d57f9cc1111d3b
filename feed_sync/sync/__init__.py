"""Proxy-mode transport: the aggregation server sync client."""

from .proxy_client import ProxySyncClient, ServerItem

__all__ = ["ProxySyncClient", "ServerItem"]
