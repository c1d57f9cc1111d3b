from __future__ import annotations

import httpx
import pytest

from feed_sync.config import ImageValidationConfig
from feed_sync.engine.feed_parser import Enclosure, FeedItem, MediaContent, MediaMetadata, MediaThumbnail
from feed_sync.engine.images import ImagePipeline, is_placeholder, unwrap_aol_image
from feed_sync.errors import NetworkError


class StubFetcher:
    def __init__(self, responses: dict[str, httpx.Response | Exception] | None = None) -> None:
        self.responses = responses or {}
        self.heads: list[str] = []

    def head(self, url: str, timeout=None, headers=None):  # noqa: ANN001
        self.heads.append(url)
        outcome = self.responses.get(url)
        if isinstance(outcome, Exception):
            raise outcome
        return outcome or httpx.Response(404)


def _image_response(content_type: str = "image/jpeg", length: int = 50_000) -> httpx.Response:
    return httpx.Response(200, headers={"content-type": content_type, "content-length": str(length)})


@pytest.mark.parametrize(
    ("url", "alt", "expected"),
    [
        ("https://example.com/grey-placeholder.png", None, True),
        ("https://example.com/pixel-1x1.gif", None, True),
        ("https://example.com/photo-800x600.jpg", None, False),
        ("https://example.com/photo.jpg", "Loading", True),
        ("https://example.com/photo.jpg", "A cat", False),
    ],
)
def test_is_placeholder(url: str, alt: str | None, expected: bool) -> None:
    assert is_placeholder(url, alt) is expected


def test_unwrap_aol_image() -> None:
    wrapped = "https://o.aolcdn.com/images/dims?resize=1200&image_uri=https%3A%2F%2Fs.yimg.com%2Freal.jpg"
    assert unwrap_aol_image(wrapped) == "https://s.yimg.com/real.jpg"
    assert unwrap_aol_image("https://example.com/a.jpg") == "https://example.com/a.jpg"


def test_extraction_priority_media_then_thumbnail_then_enclosure_then_html() -> None:
    pipeline = ImagePipeline(StubFetcher())
    html = '<p><img src="https://example.com/inline.jpg" alt="inline"></p>'
    item = FeedItem(
        title="t",
        links=["https://example.com/a"],
        description=html,
        enclosures=[Enclosure(url="https://example.com/enc.jpg", type="image/jpeg")],
        media=MediaMetadata(
            contents=[MediaContent(url="https://example.com/media.jpg", medium="image", description="cap", credit="cred")],
            thumbnail=MediaThumbnail(url="https://example.com/thumb.jpg"),
        ),
    )
    first = pipeline.extract_best_image(item)
    assert (first.url, first.caption, first.credit, first.origin) == (
        "https://example.com/media.jpg",
        "cap",
        "cred",
        "media_content",
    )

    item.media.contents = []
    assert pipeline.extract_best_image(item).origin == "media_thumbnail"
    item.media.thumbnail = None
    assert pipeline.extract_best_image(item).url == "https://example.com/enc.jpg"
    item.enclosures = []
    inline = pipeline.extract_best_image(item)
    assert (inline.url, inline.caption, inline.origin) == ("https://example.com/inline.jpg", "inline", "img")
    assert inline.alt == "inline"


def test_html_extraction_prefers_figure_and_skips_placeholders() -> None:
    pipeline = ImagePipeline(StubFetcher())
    html = (
        '<img src="https://example.com/loading.gif">'
        '<img src="/relative/plain.png">'
        '<figure><img src="https://example.com/hero.webp" alt="alt text">'
        "<figcaption>Hero caption</figcaption></figure>"
    )
    item = FeedItem(title="t", links=["https://example.com/post"], description=html)
    candidate = pipeline.extract_best_image(item)
    assert candidate.url == "https://example.com/hero.webp"
    assert candidate.caption == "Hero caption"
    assert candidate.alt == "alt text"
    assert candidate.origin == "figure"

    item.description = '<img src="/relative/plain.png">'
    assert pipeline.extract_best_image(item).url == "https://example.com/relative/plain.png"
    item.description = '<img src="https://example.com/no-extension">'
    assert pipeline.extract_best_image(item) is None


def test_validate_reasons() -> None:
    responses = {
        "https://img.example.com/ok.jpg": _image_response(),
        "https://img.example.com/small.jpg": _image_response(length=4999),
        "https://img.example.com/anim.gif": _image_response("image/gif", 10_000),
        "https://img.example.com/huge.jpg": _image_response(length=20 * 1024 * 1024),
        "https://img.example.com/page.jpg": _image_response("text/html"),
        "https://img.example.com/down.jpg": NetworkError("timeout"),
        "https://img.example.com/nolength.png": httpx.Response(200, headers={"content-type": "image/png"}),
    }
    fetcher = StubFetcher(responses)
    pipeline = ImagePipeline(fetcher, ImageValidationConfig(anti_hotlink_domains=["sspai.com"]))

    def reason(url: str) -> tuple[bool, str]:
        verdict = pipeline.validate(url)
        return verdict.is_valid, verdict.reason

    assert reason("https://img.example.com/ok.jpg") == (True, "ok")
    assert reason("https://img.example.com/small.jpg") == (False, "too_small")
    assert reason("https://img.example.com/anim.gif") == (False, "too_small")
    assert reason("https://img.example.com/huge.jpg") == (False, "too_large")
    assert reason("https://img.example.com/page.jpg") == (False, "not_image")
    assert reason("https://img.example.com/down.jpg") == (False, "network_error")
    assert reason("https://img.example.com/missing.jpg") == (False, "http_404")
    assert reason("https://img.example.com/nolength.png") == (True, "ok")
    assert reason("data:image/png;base64,AAAA") == (False, "unsupported_url")
    assert reason("https://cdn.sspai.com/cover.jpg") == (True, "anti_hotlink")
    assert "https://cdn.sspai.com/cover.jpg" not in fetcher.heads


def test_select_image_drops_rejected_candidate() -> None:
    fetcher = StubFetcher({"https://example.com/media.jpg": _image_response(length=100)})
    pipeline = ImagePipeline(fetcher)
    item = FeedItem(
        title="t",
        links=["https://example.com/a"],
        media=MediaMetadata(contents=[MediaContent(url="https://example.com/media.jpg")]),
    )
    assert pipeline.select_image(item) is None
    fetcher.responses["https://example.com/media.jpg"] = _image_response()
    assert pipeline.select_image(item).url == "https://example.com/media.jpg"
