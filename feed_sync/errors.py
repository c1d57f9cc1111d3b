"""Exception hierarchy shared by the ingestion engine."""

from __future__ import annotations


class FeedSyncError(Exception):
    """Base class for every error raised by feed-sync."""


class NetworkError(FeedSyncError):
    """Timeout, transport failure or non-2xx response. Retried by the orchestrator."""

    retryable = True

    def __init__(self, message: str, *, url: str | None = None, status_code: int | None = None) -> None:
        super().__init__(message)
        self.url = url
        self.status_code = status_code


class FeedFormatError(FeedSyncError):
    """Body is empty, not XML, or a WAF/challenge page. Never retried."""

    retryable = False


class ExtractionError(FeedSyncError):
    """Content or image extraction failed; callers degrade to a fallback."""


class FilterRuleError(FeedSyncError):
    """A filter rule could not be evaluated (e.g. invalid regular expression)."""


class ProxyProtocolError(FeedSyncError):
    """The aggregation server returned an unusable sync/ack/subscribe response."""


class SourceNotFoundError(FeedSyncError, LookupError):
    """Requested source does not exist or has been deleted."""


class DuplicateSourceError(FeedSyncError):
    """A source with the same URL is already subscribed."""


def is_retryable(exc: BaseException) -> bool:
    return bool(getattr(exc, "retryable", False))


__all__ = [
    "DuplicateSourceError",
    "ExtractionError",
    "FeedFormatError",
    "FeedSyncError",
    "FilterRuleError",
    "NetworkError",
    "ProxyProtocolError",
    "SourceNotFoundError",
    "is_retryable",
]
