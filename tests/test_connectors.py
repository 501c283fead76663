from __future__ import annotations

from datetime import datetime, timedelta, timezone
from email.utils import format_datetime
from typing import List, Optional

import httpx
import pytest

from config import FeedSettings
from core import MarketMover
from sources import connectors


def _rss(entries) -> str:
    items = "".join(
        f"<item><title>{title}</title><link>{link}</link>"
        f"<description><![CDATA[{summary}]]></description>"
        f"<pubDate>{format_datetime(published)}</pubDate></item>"
        for title, link, summary, published in entries
    )
    return f'<?xml version="1.0"?><rss version="2.0"><channel><title>t</title>{items}</channel></rss>'


def _recent(hours: float = 1.0) -> datetime:
    return datetime.now(timezone.utc) - timedelta(hours=hours)


def _settings(**overrides) -> FeedSettings:
    fields = {"sources": ["decrypt"], "max_attempts": 2, "per_symbol_limit": 3}
    fields.update(overrides)
    return FeedSettings(**fields)


class _Sleeps:
    def __init__(self) -> None:
        self.calls: List[float] = []

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)


def test_parse_feed_applies_hour_window() -> None:
    now = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)
    text = _rss(
        [
            ("Fresh story", "https://a.test/1", "<p>body</p>", now - timedelta(hours=2)),
            ("Old story", "https://a.test/2", "old", now - timedelta(hours=30)),
        ]
    )

    items = connectors.parse_feed(text, "decrypt", hours=12, now=now)

    assert [item.title for item in items] == ["Fresh story"]
    assert items[0].source == "decrypt"
    assert items[0].url == "https://a.test/1"
    assert items[0].published_at == now - timedelta(hours=2)


def test_candidate_urls_start_with_overrides() -> None:
    urls = connectors.candidate_feed_urls("decrypt")
    assert urls[0] == "https://decrypt.co/feed"
    assert len(urls) == len(set(urls))
    assert "https://www.newsbtc.com/feed" in connectors.candidate_feed_urls("newsbtc")


@pytest.mark.asyncio
async def test_fetch_feed_retries_after_rate_limit(monkeypatch) -> None:
    calls = []
    text = _rss([("Story", "https://a.test/1", "s", _recent())])

    async def _fake_get_text(url: str, *, headers=None, timeout: float = 3.0) -> str:
        calls.append(url)
        if len(calls) == 1:
            raise connectors._RateLimited(url)
        return text

    monkeypatch.setattr(connectors, "_http_get_text", _fake_get_text)
    sleeps = _Sleeps()

    items = await connectors.fetch_feed("https://a.test/feed", "decrypt", settings=_settings(), sleep=sleeps)

    assert len(items) == 1
    assert len(calls) == 2
    assert sleeps.calls == [pytest.approx(0.8)]


@pytest.mark.asyncio
async def test_fetch_feed_gives_up_after_timeouts(monkeypatch) -> None:
    async def _fake_get_text(url: str, *, headers=None, timeout: float = 3.0) -> str:
        raise httpx.ReadTimeout("slow feed")

    monkeypatch.setattr(connectors, "_http_get_text", _fake_get_text)
    sleeps = _Sleeps()

    items = await connectors.fetch_feed("https://a.test/feed", "decrypt", settings=_settings(), sleep=sleeps)

    assert items == []
    assert sleeps.calls == [pytest.approx(0.6)]


@pytest.mark.asyncio
async def test_fetch_feed_does_not_retry_other_errors(monkeypatch) -> None:
    calls = []

    async def _fake_get_text(url: str, *, headers=None, timeout: float = 3.0) -> str:
        calls.append(url)
        raise httpx.HTTPError("404 Not Found")

    monkeypatch.setattr(connectors, "_http_get_text", _fake_get_text)

    assert await connectors.fetch_feed("https://a.test/feed", "decrypt", settings=_settings(), sleep=_Sleeps()) == []
    assert len(calls) == 1


@pytest.mark.asyncio
async def test_fetch_site_uses_first_non_empty_candidate(monkeypatch) -> None:
    tried = []
    text = _rss([("Story", "https://decrypt.co/1", "s", _recent())])

    async def _fake_get_text(url: str, *, headers=None, timeout: float = 3.0) -> str:
        tried.append(url)
        if url == "https://decrypt.co/rss":
            return text
        return _rss([])

    monkeypatch.setattr(connectors, "_http_get_text", _fake_get_text)

    items = await connectors.fetch_site("decrypt", settings=_settings(), sleep=_Sleeps())

    assert [item.url for item in items] == ["https://decrypt.co/1"]
    assert tried == ["https://decrypt.co/feed", "https://decrypt.co/rss"]


@pytest.mark.asyncio
async def test_symbol_news_is_tagged_and_capped(monkeypatch) -> None:
    entries = [(f"PEPE story {idx}", f"https://n.test/{idx}", "s", _recent(idx * 0.1)) for idx in range(5)]

    async def _fake_get_text(url: str, *, headers=None, timeout: float = 3.0) -> str:
        assert "news.google.com" in url
        return _rss(entries)

    monkeypatch.setattr(connectors, "_http_get_text", _fake_get_text)

    items = await connectors.fetch_symbol_news(["PEPE"], settings=_settings(), sleep=_Sleeps())

    assert len(items) == 3
    assert {item.source for item in items} == {"binance-PEPE"}


class _StaticMovers:
    def __init__(self, movers: Optional[List[MarketMover]]) -> None:
        self.movers = movers
        self.calls = 0

    async def fetch_movers(self):
        self.calls += 1
        return self.movers


@pytest.mark.asyncio
async def test_aggregate_feeds_merges_sites_and_mover_searches(monkeypatch) -> None:
    site_text = _rss(
        [
            ("Site story", "https://decrypt.co/1", "s", _recent(2)),
            ("Site story dup", "https://decrypt.co/1", "s", _recent(2)),
        ]
    )
    search_text = _rss([("SOL rallies", "https://n.test/sol", "s", _recent(1))])

    async def _fake_get_text(url: str, *, headers=None, timeout: float = 3.0) -> str:
        if "news.google.com" in url:
            return search_text
        return site_text

    monkeypatch.setattr(connectors, "_http_get_text", _fake_get_text)
    movers = _StaticMovers([MarketMover(symbol="SOLUSDT", base="SOL", pct_change=20.0, quote_volume=9e6)])

    items = await connectors.aggregate_feeds(settings=_settings(), movers=movers, sleep=_Sleeps())

    assert [item.url for item in items] == ["https://n.test/sol", "https://decrypt.co/1"]
    assert items[0].source == "binance-SOL"
    assert movers.calls == 1


@pytest.mark.asyncio
async def test_aggregate_feeds_without_movers_skips_search(monkeypatch) -> None:
    async def _fake_get_text(url: str, *, headers=None, timeout: float = 3.0) -> str:
        assert "news.google.com" not in url
        return _rss([("Site story", "https://decrypt.co/1", "s", _recent())])

    monkeypatch.setattr(connectors, "_http_get_text", _fake_get_text)

    items = await connectors.aggregate_feeds(settings=_settings(), movers=_StaticMovers(None), sleep=_Sleeps())

    assert len(items) == 1
