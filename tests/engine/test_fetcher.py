from __future__ import annotations

import httpx
import pytest
import respx

from feed_sync.config import GlobalConfig
from feed_sync.engine.fetcher import Fetcher
from feed_sync.errors import FeedFormatError, NetworkError

RSS = '<?xml version="1.0"?><rss version="2.0"><channel><title>T</title></channel></rss>'


@pytest.fixture
def fetcher() -> Fetcher:
    config = GlobalConfig(network={"cors_relay_domains": ["medium.com"]})
    instance = Fetcher(config)
    yield instance
    instance.close()


def test_fetch_feed_sends_browser_headers(fetcher: Fetcher, monkeypatch: pytest.MonkeyPatch) -> None:
    captured: dict = {}

    def fake_request(method, url, headers=None, timeout=None):  # noqa: ANN001
        captured.update({"method": method, "url": url, "headers": headers, "timeout": timeout})
        return httpx.Response(200, request=httpx.Request(method, url), text=RSS)

    monkeypatch.setattr(fetcher._client, "request", fake_request)
    response = fetcher.fetch_feed("https://example.com/feed")

    assert response.status_code == 200
    assert response.text == RSS
    assert not response.relayed
    assert captured["method"] == "GET"
    assert captured["timeout"] == fetcher.network.feed_timeout
    assert captured["headers"]["User-Agent"] == fetcher.network.desktop_user_agent
    assert captured["headers"]["Referer"] == "https://example.com/feed"
    assert "application/rss+xml" in captured["headers"]["Accept"]


@respx.mock
def test_relay_domains_go_through_cors_relay(fetcher: Fetcher) -> None:
    route = respx.get(url__startswith="https://api.allorigins.win/raw").mock(
        return_value=httpx.Response(200, text=RSS)
    )
    response = fetcher.fetch_feed("https://medium.com/feed/@someone")
    assert response.relayed
    request = route.calls.last.request
    assert "medium.com%2Ffeed%2F%40someone" in str(request.url)
    assert "User-Agent" not in request.headers or request.headers["User-Agent"].startswith("python-httpx")


@respx.mock
def test_http_errors_become_network_errors(fetcher: Fetcher) -> None:
    respx.get("https://example.com/missing").mock(return_value=httpx.Response(404))
    respx.get("https://example.com/slow").mock(side_effect=httpx.ReadTimeout("slow"))
    with pytest.raises(NetworkError) as excinfo:
        fetcher.fetch_feed("https://example.com/missing")
    assert excinfo.value.status_code == 404
    with pytest.raises(NetworkError):
        fetcher.fetch_feed("https://example.com/slow")


@respx.mock
def test_html_body_is_a_format_error(fetcher: Fetcher) -> None:
    respx.get("https://example.com/page").mock(
        return_value=httpx.Response(200, text="<!DOCTYPE html><html></html>")
    )
    with pytest.raises(FeedFormatError):
        fetcher.fetch_feed("https://example.com/page")


@respx.mock
def test_fetch_page_returns_none_on_failure(fetcher: Fetcher) -> None:
    respx.get("https://example.com/ok").mock(return_value=httpx.Response(200, text="<html>ok</html>"))
    respx.get("https://example.com/gone").mock(return_value=httpx.Response(500))
    assert fetcher.fetch_page("https://example.com/ok") == "<html>ok</html>"
    assert fetcher.fetch_page("https://example.com/gone") is None
    sent = respx.calls[0].request
    assert sent.headers["User-Agent"] == fetcher.network.mobile_user_agent


@respx.mock
def test_head_does_not_raise_on_status(fetcher: Fetcher) -> None:
    respx.head("https://img.example.com/a.jpg").mock(return_value=httpx.Response(403))
    assert fetcher.head("https://img.example.com/a.jpg").status_code == 403
