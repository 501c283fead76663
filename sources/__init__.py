"""Source connectors for news ingestion."""

from .connectors import (
    aggregate_feeds,
    candidate_feed_urls,
    dedupe_and_sort,
    fetch_feed,
    fetch_site,
    fetch_symbol_news,
    parse_feed,
)
from .market import BinanceMoverSource, MoverSource, parse_tickers, select_search_symbols, strip_quote_suffix

__all__ = [
    "BinanceMoverSource",
    "MoverSource",
    "aggregate_feeds",
    "candidate_feed_urls",
    "dedupe_and_sort",
    "fetch_feed",
    "fetch_site",
    "fetch_symbol_news",
    "parse_feed",
    "parse_tickers",
    "select_search_symbols",
    "strip_quote_suffix",
]
