"""Engine components orchestrating fetch → parse → diff → extract → filter."""

from .content import ContentExtractor
from .diff import BasicItem, collect_basic_items, find_new_item_boundary
from .feed_parser import Feed, FeedItem, parse_feed
from .fetcher import FetchResponse, Fetcher
from .filters import FilterEngine
from .images import ImageCandidate, ImagePipeline, ImageValidation
from .retry import RetryPolicy, run_with_retry
from .rsshub import RSSHubResolver
from .thread_pool import ThreadPoolManager

__all__ = [
    "BasicItem",
    "ContentExtractor",
    "Feed",
    "FeedItem",
    "FetchResponse",
    "Fetcher",
    "FilterEngine",
    "ImageCandidate",
    "ImagePipeline",
    "ImageValidation",
    "RSSHubResolver",
    "RetryPolicy",
    "ThreadPoolManager",
    "collect_basic_items",
    "find_new_item_boundary",
    "parse_feed",
    "run_with_retry",
]
