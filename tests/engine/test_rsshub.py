from __future__ import annotations

import httpx
import pytest
import respx

from feed_sync.config import RSSHubConfig
from feed_sync.engine import rsshub
from feed_sync.engine.rsshub import DEFAULT_INSTANCE, RSSHubResolver


def test_path_helpers() -> None:
    assert rsshub.is_rsshub_url("RSSHub://github/trending")
    assert not rsshub.is_rsshub_url("https://rsshub.app/github")
    assert rsshub.validate_path("rsshub://github/issue/owner/repo")
    assert not rsshub.validate_path("rsshub://")
    assert not rsshub.validate_path("rsshub://bad path/<x>")
    assert rsshub.convert("rsshub://github/trending", "https://mirror.example") == "https://mirror.example/github/trending"


def test_parse_describes_known_platforms() -> None:
    route = rsshub.parse("rsshub://sspai/index")
    assert route.platform == "sspai"
    assert route.route == "index"
    assert route.description == "少数派文章"
    assert rsshub.parse("rsshub://unknownsite/x").description == "unknownsite RSS源"


@respx.mock
def test_resolver_picks_first_reachable_instance_once() -> None:
    down = respx.head("https://down.example/").mock(side_effect=httpx.ConnectError("refused"))
    up = respx.head("https://up.example/").mock(return_value=httpx.Response(200))
    resolver = RSSHubResolver(RSSHubConfig(instances=["https://down.example", "https://up.example"]))

    assert resolver.resolve("rsshub://github/trending") == "https://up.example/github/trending"
    assert resolver.resolve("rsshub://v2ex/topics/latest") == "https://up.example/v2ex/topics/latest"
    assert down.call_count == 1
    assert up.call_count == 1
    assert resolver.resolve("https://plain.example/feed") == "https://plain.example/feed"
    resolver.close()


@respx.mock
def test_resolver_falls_back_to_default_instance() -> None:
    respx.head("https://down.example/").mock(return_value=httpx.Response(503))
    resolver = RSSHubResolver(RSSHubConfig(instances=["https://down.example"]))
    assert resolver.select_best_instance() == DEFAULT_INSTANCE
    with pytest.raises(ValueError):
        resolver.resolve("rsshub://")
    resolver.close()
