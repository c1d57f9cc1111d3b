"""Cover image extraction from feed items and HEAD-based validation."""

from __future__ import annotations

import re
from dataclasses import dataclass
from pathlib import PurePosixPath
from urllib.parse import parse_qs, unquote, urljoin, urlparse

import structlog
from selectolax.parser import HTMLParser, Node

from ..config import ImageValidationConfig
from ..errors import NetworkError
from .feed_parser import FeedItem
from .fetcher import Fetcher

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".webp", ".gif")
IMAGE_CDN_HOSTS = (
    "s.yimg.com",
    "techcrunch.com",
    "engadget.com",
    "cloudfront.net",
    "amazonaws.com",
    "gstatic.com",
    "googleapis.com",
    "o.aolcdn.com",
)
PLACEHOLDER_MARKERS = (
    "placeholder",
    "loading",
    "grey-placeholder",
    "gray-placeholder",
    "dummy",
    "blank",
    "default.png",
    "default.jpg",
    "spacer",
)
PLACEHOLDER_ALTS = {"loading", "image unavailable"}
TINY_DIMENSION = 50

_SIZE_IN_NAME = re.compile(r"(?<!\d)(\d{1,4})x(\d{1,4})(?!\d)")


@dataclass(slots=True)
class ImageCandidate:
    url: str
    caption: str | None = None
    credit: str | None = None
    alt: str | None = None
    origin: str = "html"


@dataclass(slots=True, frozen=True)
class ImageValidation:
    is_valid: bool
    reason: str


def is_placeholder(url: str, alt: str | None = None) -> bool:
    lowered = url.lower()
    if any(marker in lowered for marker in PLACEHOLDER_MARKERS):
        return True
    filename = PurePosixPath(urlparse(lowered).path).name
    for width, height in _SIZE_IN_NAME.findall(filename):
        if int(width) < TINY_DIMENSION and int(height) < TINY_DIMENSION:
            return True
    if alt and alt.strip().lower() in PLACEHOLDER_ALTS:
        return True
    return False


def is_valid_image_url(url: str) -> bool:
    parsed = urlparse(url)
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def looks_like_image_url(url: str, extra_hosts: tuple[str, ...] | list[str] = ()) -> bool:
    lowered = url.lower()
    if any(ext in lowered for ext in IMAGE_EXTENSIONS):
        return True
    return any(host in lowered for host in (*IMAGE_CDN_HOSTS, *extra_hosts))


def unwrap_aol_image(url: str) -> str:
    """``o.aolcdn.com/images/dims?...image_uri=<encoded>`` wraps the real image URL."""

    if "o.aolcdn.com/images/dims" not in url or "image_uri=" not in url:
        return url
    values = parse_qs(urlparse(url).query).get("image_uri")
    if not values:
        return url
    return unquote(values[0])


class ImagePipeline:
    """Choose one cover image per item and check it is worth displaying."""

    def __init__(
        self,
        fetcher: Fetcher,
        config: ImageValidationConfig | None = None,
        logger: structlog.BoundLogger | None = None,
    ) -> None:
        self.fetcher = fetcher
        self.config = config or ImageValidationConfig()
        self.logger = logger or structlog.get_logger("feed_sync.images")

    # ------------------------------------------------------------------
    # Extraction
    # ------------------------------------------------------------------
    def extract_best_image(self, item: FeedItem, content: str | None = None) -> ImageCandidate | None:
        for finder in (self._from_media_content, self._from_thumbnail, self._from_enclosure):
            candidate = finder(item)
            if candidate is not None:
                return candidate
        html = content if content is not None else item.excerpt
        return self._from_html(html, item.resolved_link)

    def _from_media_content(self, item: FeedItem) -> ImageCandidate | None:
        contents = item.media.contents
        if not contents:
            return None
        chosen = next((c for c in contents if (c.medium or "").lower() == "image"), contents[0])
        return ImageCandidate(
            url=unwrap_aol_image(chosen.url),
            caption=chosen.description or chosen.title,
            credit=chosen.credit,
            origin="media_content",
        )

    def _from_thumbnail(self, item: FeedItem) -> ImageCandidate | None:
        thumbnail = item.media.thumbnail
        if thumbnail is None:
            return None
        first = item.media.contents[0] if item.media.contents else None
        caption = first.description if first else item.media.description
        credit = first.credit if first else item.media.credit
        return ImageCandidate(
            url=unwrap_aol_image(thumbnail.url), caption=caption, credit=credit, origin="media_thumbnail"
        )

    def _from_enclosure(self, item: FeedItem) -> ImageCandidate | None:
        for enclosure in item.enclosures:
            if enclosure.type.lower().startswith("image/"):
                return ImageCandidate(url=enclosure.url, origin="enclosure")
        return None

    def _from_html(self, html: str, base_url: str) -> ImageCandidate | None:
        if not html or "<img" not in html.lower():
            return None
        tree = HTMLParser(html)
        for figure in tree.css("figure"):
            img = figure.css_first("img")
            if img is None:
                continue
            url = self._usable_src(img, base_url)
            if url is None:
                continue
            caption_node = figure.css_first("figcaption")
            caption = caption_node.text(separator=" ", strip=True) if caption_node else ""
            alt = img.attributes.get("alt") or None
            return ImageCandidate(url=url, caption=caption or alt, alt=alt, origin="figure")
        for img in tree.css("img"):
            url = self._usable_src(img, base_url)
            if url is None:
                continue
            alt = img.attributes.get("alt") or None
            return ImageCandidate(url=url, caption=alt, alt=alt, origin="img")
        return None

    def _usable_src(self, img: Node, base_url: str) -> str | None:
        src = (img.attributes.get("src") or "").strip()
        if not src.startswith(("http", "/")):
            return None
        if is_placeholder(src, img.attributes.get("alt")):
            return None
        if src.startswith("/"):
            if not base_url:
                return None
            src = urljoin(base_url, src)
        if not looks_like_image_url(src, self.config.anti_hotlink_domains):
            return None
        return src

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------
    def is_anti_hotlink(self, url: str) -> bool:
        host = (urlparse(url).hostname or "").lower()
        return any(host == domain or host.endswith(f".{domain}") for domain in self.config.anti_hotlink_domains)

    def validate(self, url: str) -> ImageValidation:
        if not is_valid_image_url(url):
            return ImageValidation(False, "unsupported_url")
        if is_placeholder(url):
            return ImageValidation(False, "placeholder")
        if self.is_anti_hotlink(url):
            return ImageValidation(True, "anti_hotlink")
        try:
            response = self.fetcher.head(url)
        except NetworkError as exc:
            self.logger.info("image_head_failed", url=url, error=str(exc))
            return ImageValidation(False, "network_error")
        if not response.is_success:
            return ImageValidation(False, f"http_{response.status_code}")
        content_type = response.headers.get("content-type", "").lower()
        if not content_type.startswith("image/"):
            return ImageValidation(False, "not_image")
        length = response.headers.get("content-length")
        if length is not None and length.strip().isdigit():
            size = int(length)
            minimum = self.config.min_gif_size if "gif" in content_type else self.config.min_file_size
            if size < minimum:
                return ImageValidation(False, "too_small")
            if size > self.config.max_file_size:
                return ImageValidation(False, "too_large")
        return ImageValidation(True, "ok")

    def select_image(self, item: FeedItem, content: str | None = None) -> ImageCandidate | None:
        """Best candidate, validated once. A rejected candidate means no image."""

        candidate = self.extract_best_image(item, content)
        if candidate is None:
            return None
        verdict = self.validate(candidate.url)
        if not verdict.is_valid:
            self.logger.debug("image_rejected", url=candidate.url, reason=verdict.reason)
            return None
        return candidate


__all__ = [
    "IMAGE_CDN_HOSTS",
    "ImageCandidate",
    "ImagePipeline",
    "ImageValidation",
    "is_placeholder",
    "is_valid_image_url",
    "looks_like_image_url",
    "unwrap_aol_image",
]
