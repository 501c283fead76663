"""RSS connectors for crypto news ingestion."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone
import logging
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence
from urllib.parse import quote_plus

import feedparser
import httpx
from tenacity import AsyncRetrying, RetryCallState, retry_if_exception, stop_after_attempt

from config import FeedSettings
from core import FeedItem
from sources.market import MoverSource, select_search_symbols
from utils.exceptions import FeedError


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]

_ACCEPT = "text/xml,application/rss+xml,application/xml;q=0.9,*/*;q=0.8"
_GOOGLE_NEWS_SEARCH = "https://news.google.com/rss/search?q={query}&hl=en-US&gl=US&ceid=US:en"

SITE_DOMAINS: Dict[str, str] = {
    "cointelegraph": "cointelegraph.com",
    "ambcrypto": "ambcrypto.com",
    "newsbtc": "www.newsbtc.com",
    "bitcoinmagazine": "bitcoinmagazine.com",
    "theblock": "www.theblock.co",
    "cryptonews": "cryptonews.com",
    "beincrypto": "beincrypto.com",
    "coingape": "www.coingape.com",
    "utoday": "u.today",
    "coinspeaker": "www.coinspeaker.com",
    "cryptopotato": "cryptopotato.com",
    "coinjournal": "coinjournal.net",
    "thedailyhodl": "thedailyhodl.com",
    "decrypt": "decrypt.co",
    "coinmarketcap": "coinmarketcap.com",
    "finbold": "www.finbold.com",
    "cryptobriefing": "www.cryptobriefing.com",
    "cryptoslate": "cryptoslate.com",
    "blockworks": "blockworks.co",
    "thedefiant": "thedefiant.io",
    "coindesk": "www.coindesk.com",
}

# Known-good endpoints tried before the generic candidates.
FEED_OVERRIDES: Dict[str, List[str]] = {
    "decrypt": ["https://decrypt.co/feed"],
    "coinmarketcap": ["https://coinmarketcap.com/headlines/rss/"],
    "finbold": ["https://finbold.com/category/cryptocurrency-news/feed/"],
    "coindesk": [
        "https://www.coindesk.com/arc/outboundfeeds/rss/",
        "https://news.google.com/rss/search?q=site:coindesk.com+crypto",
    ],
}


class _RateLimited(Exception):
    def __init__(self, url: str):
        super().__init__(f"429 for {url}")
        self.url = url


def candidate_feed_urls(site_key: str) -> List[str]:
    domain = SITE_DOMAINS.get(site_key, site_key)
    candidates = list(FEED_OVERRIDES.get(site_key, []))
    candidates.extend(
        [
            f"https://{domain}/rss",
            f"https://{domain}/feed",
            f"https://{domain}/feed/",
            f"https://{domain}/rss.xml",
            f"https://{domain}/feeds/latest",
            f"https://{domain}/feeds/posts/default?alt=rss",
        ]
    )
    return list(dict.fromkeys(candidates))


async def _http_get_text(url: str, *, headers: Optional[Dict[str, str]] = None, timeout: float = 3.0) -> str:
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=True) as client:
        response = await client.get(url, headers=headers)
        if response.status_code == 429:
            raise _RateLimited(url)
        response.raise_for_status()
        return str(response.text or "")


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, (_RateLimited, httpx.TimeoutException))


def _feed_backoff(retry_state: RetryCallState) -> float:
    """400ms*2^n after a 429, 300ms*2^n after a timeout."""
    attempt = retry_state.attempt_number
    exc = retry_state.outcome.exception() if retry_state.outcome else None
    base = 0.4 if isinstance(exc, _RateLimited) else 0.3
    return base * (2 ** attempt)


def _entry_published(entry: Any) -> Optional[datetime]:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if not parsed:
        return None
    try:
        return datetime(*parsed[:6], tzinfo=timezone.utc)
    except (TypeError, ValueError):
        return None


def parse_feed(
    text: str,
    source: str,
    *,
    hours: int = 12,
    now: Optional[datetime] = None,
    limit: Optional[int] = None,
) -> List[FeedItem]:
    """Parse RSS/Atom text; entries older than `hours` are dropped, undated ones kept."""
    parsed = feedparser.parse(text)
    if parsed.bozo and not parsed.entries and str(text or "").strip():
        raise FeedError(f"unparseable feed: {parsed.get('bozo_exception')}", source=source)
    cutoff = (now or datetime.now(timezone.utc)) - timedelta(hours=max(0, int(hours)))

    items: List[FeedItem] = []
    for entry in parsed.entries:
        url = str(entry.get("link") or entry.get("id") or "").strip()
        title = str(entry.get("title") or "").strip() or "(no title)"
        published = _entry_published(entry)
        if published is not None and published < cutoff:
            continue
        summary = entry.get("summary") or entry.get("description") or ""
        if not summary and entry.get("content"):
            summary = entry["content"][0].get("value", "")
        items.append(
            FeedItem(
                id=str(entry.get("id") or url or ""),
                title=title,
                summary=summary,
                source=source,
                published_at=published,
                url=url,
            )
        )
        if limit is not None and len(items) >= limit:
            break
    return items


async def fetch_feed(
    url: str,
    source: str,
    *,
    hours: int = 12,
    settings: Optional[FeedSettings] = None,
    sleep: Sleep = asyncio.sleep,
) -> List[FeedItem]:
    """Fetch one feed URL with retry on 429/timeouts; other failures yield []."""
    cfg = settings or FeedSettings()
    headers = {"User-Agent": cfg.user_agent, "Accept": _ACCEPT}
    retrying = AsyncRetrying(
        stop=stop_after_attempt(max(1, cfg.max_attempts)),
        wait=_feed_backoff,
        retry=retry_if_exception(_is_retryable),
        sleep=sleep,
        reraise=True,
    )
    try:
        async for attempt in retrying:
            with attempt:
                logger.debug(
                    "rss_fetch url=%s attempt=%s/%s",
                    url,
                    attempt.retry_state.attempt_number,
                    cfg.max_attempts,
                )
                text = await _http_get_text(url, headers=headers, timeout=cfg.request_timeout)
    except (_RateLimited, httpx.HTTPError) as exc:
        logger.warning("rss_fetch_failed url=%s source=%s error=%s", url, source, exc)
        return []

    try:
        items = parse_feed(text, source, hours=hours)
    except FeedError as exc:
        logger.warning("rss_parse_failed url=%s source=%s error=%s", url, source, exc.message)
        return []
    logger.info("rss_fetch_ok url=%s source=%s items=%s", url, source, len(items))
    return items


async def fetch_site(
    site_key: str,
    *,
    hours: int = 12,
    settings: Optional[FeedSettings] = None,
    sleep: Sleep = asyncio.sleep,
) -> List[FeedItem]:
    """Try each candidate feed URL for a site and keep the first non-empty result."""
    for url in candidate_feed_urls(site_key):
        items = await fetch_feed(url, site_key, hours=hours, settings=settings, sleep=sleep)
        if items:
            return items
    logger.info("rss_site_empty site=%s", site_key)
    return []


async def fetch_symbol_news(
    symbols: Sequence[str],
    *,
    hours: int = 12,
    settings: Optional[FeedSettings] = None,
    sleep: Sleep = asyncio.sleep,
) -> List[FeedItem]:
    """News search per mover symbol, tagged `binance-<SYM>` and capped per symbol."""
    cfg = settings or FeedSettings()
    out: List[FeedItem] = []
    for symbol in symbols:
        query = quote_plus(f"{symbol} crypto OR {symbol} token OR {symbol} coin")
        url = _GOOGLE_NEWS_SEARCH.format(query=query)
        items = await fetch_feed(url, f"binance-{symbol}", hours=hours, settings=cfg, sleep=sleep)
        limited = items[: cfg.per_symbol_limit]
        logger.info("symbol_search symbol=%s parsed=%s kept=%s", symbol, len(items), len(limited))
        out.extend(limited)
    return out


def dedupe_and_sort(items: Sequence[FeedItem], limit: Optional[int] = None) -> List[FeedItem]:
    """Drop url-less and repeated urls, newest first."""
    seen = set()
    unique: List[FeedItem] = []
    for item in items:
        if not item.url or item.url in seen:
            continue
        seen.add(item.url)
        unique.append(item)
    unique.sort(key=lambda item: item.published_at.timestamp() if item.published_at else 0.0, reverse=True)
    return unique if limit is None else unique[:limit]


async def aggregate_feeds(
    *,
    settings: Optional[FeedSettings] = None,
    hours: Optional[int] = None,
    movers: Optional[MoverSource] = None,
    sleep: Sleep = asyncio.sleep,
) -> List[FeedItem]:
    cfg = settings or FeedSettings()
    window = int(hours or cfg.hours)

    results = await asyncio.gather(
        *[fetch_site(site, hours=window, settings=cfg, sleep=sleep) for site in cfg.sources]
    )
    collected: List[FeedItem] = [item for batch in results for item in batch]

    if cfg.mover_search and movers is not None:
        mover_list = await movers.fetch_movers()
        if mover_list is not None:
            symbols = select_search_symbols(
                mover_list,
                limit=cfg.mover_search_limit,
                min_quote_volume=cfg.mover_min_quote_volume,
                always=cfg.always_search,
            )
            collected.extend(await fetch_symbol_news(symbols, hours=window, settings=cfg, sleep=sleep))

    aggregated = dedupe_and_sort(collected, cfg.max_items)
    logger.info("aggregate_feeds sites=%s collected=%s kept=%s", len(cfg.sources), len(collected), len(aggregated))
    return aggregated
