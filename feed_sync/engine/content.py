"""Article body extraction and HTML sanitising."""

from __future__ import annotations

from urllib.parse import urljoin

import structlog
from readability import Document
from selectolax.parser import HTMLParser, Node

from ..domain import ContentType
from ..errors import ExtractionError
from .fetcher import Fetcher

SHORT_EXCERPT_THRESHOLD = 200
LAZY_IMAGE_ATTRIBUTES = ("data-src", "data-original", "data-url", "data-actualsrc")
UNSAFE_TAGS = ["script", "style", "nav", "header", "footer", "iframe"]
MEDIA_TAGS = ["img", "figure", "video", "audio"]


def _is_root_relative(value: str | None) -> bool:
    return bool(value) and value.startswith("/") and not value.startswith("//")


def fix_relative_image_urls(html: str, article_url: str) -> str:
    """Resolve root-relative ``src``/``data-*`` attribute values against the article URL."""

    if not html or not article_url or not article_url.startswith(("http://", "https://")):
        return html
    tree = HTMLParser(html)
    changed = False
    for node in tree.css("*"):
        for name, value in list(node.attributes.items()):
            if name != "src" and not name.startswith("data-"):
                continue
            if _is_root_relative(value):
                node.attrs[name] = urljoin(article_url, value)
                changed = True
    if not changed or tree.body is None:
        return html
    return inner_html(tree.body).strip()


def inner_html(node: Node | None) -> str:
    if node is None:
        return ""
    return "".join(child.html or "" for child in node.iter(include_text=True))


def preserve_html_content(html: str, content_type: ContentType = ContentType.IMAGE_TEXT) -> str:
    """Strip unsafe blocks and inline handlers; text sources also lose their media."""

    if not html:
        return ""
    tree = HTMLParser(html)
    tags = list(UNSAFE_TAGS)
    if content_type is ContentType.TEXT:
        tags.extend(MEDIA_TAGS)
    tree.strip_tags(tags)
    for node in tree.css("*"):
        handlers = [name for name in node.attributes if name.lower().startswith("on")]
        for name in handlers:
            del node.attrs[name]
    return inner_html(tree.body).strip()


def resolve_lazy_images(html: str, page_url: str) -> str:
    """Promote lazy-load attributes into ``src`` and absolutise root-relative sources."""

    tree = HTMLParser(html)
    for img in tree.css("img"):
        attrs = img.attributes
        real_src = next((attrs.get(name) for name in LAZY_IMAGE_ATTRIBUTES if attrs.get(name)), None)
        if real_src:
            img.attrs["src"] = real_src
        src = img.attributes.get("src")
        if src and src.startswith("/"):
            img.attrs["src"] = urljoin(page_url, src)
    return tree.html or html


class ContentExtractor:
    """Turn a feed excerpt into the stored article body."""

    def __init__(
        self,
        fetcher: Fetcher,
        short_excerpt_threshold: int = SHORT_EXCERPT_THRESHOLD,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.short_excerpt_threshold = short_excerpt_threshold
        self.logger = logger or structlog.get_logger("feed_sync.content")

    def extract(self, raw_content: str, article_url: str, content_type: ContentType) -> str:
        content = raw_content or ""
        if len(content) < self.short_excerpt_threshold and article_url:
            try:
                full = self.fetch_full_content(article_url)
            except ExtractionError as exc:
                self.logger.warning("full_content_failed", url=article_url, error=str(exc))
                full = None
            if full:
                content = fix_relative_image_urls(full, article_url)
        try:
            return preserve_html_content(content, content_type)
        except Exception as exc:  # noqa: BLE001
            self.logger.warning("content_clean_failed", url=article_url, error=str(exc))
            return content

    def fetch_full_content(self, url: str) -> str | None:
        """Download the article page and keep its main content block.

        Returns ``None`` when the page cannot be downloaded; raises
        :class:`ExtractionError` when it was downloaded but readability fails.
        """

        html = self.fetcher.fetch_page(url)
        if not html:
            return None
        try:
            prepared = resolve_lazy_images(html, url)
            summary = Document(prepared, url=url).summary(html_partial=True)
        except Exception as exc:  # noqa: BLE001
            raise ExtractionError(f"无法提取正文: {url} ({exc})") from exc
        if not summary or not summary.strip():
            return None
        self.logger.debug("full_content_extracted", url=url, length=len(summary))
        return summary


__all__ = [
    "ContentExtractor",
    "LAZY_IMAGE_ATTRIBUTES",
    "fix_relative_image_urls",
    "inner_html",
    "preserve_html_content",
    "resolve_lazy_images",
]
