"""Market-mover feed used for keyword boosting and per-symbol news searches."""

from __future__ import annotations

import logging
from typing import Any, Iterable, List, Optional, Protocol, Sequence

import httpx

from config import MarketSettings, ScoringSettings
from core import MarketMover


logger = logging.getLogger(__name__)

DEFAULT_QUOTE_SUFFIXES = ("USDT", "BUSD", "USDC", "BTC", "ETH", "TUSD", "EUR", "GBP", "TRY", "BNB")
SEARCH_QUOTES = ("USDT", "BUSD")


class MoverSource(Protocol):
    async def fetch_movers(self) -> Optional[List[MarketMover]]:
        """Movers, or None when the feed is unavailable."""


def strip_quote_suffix(symbol: str, suffixes: Sequence[str] = DEFAULT_QUOTE_SUFFIXES) -> str:
    """BTCUSDT -> BTC; only the first matching suffix is removed."""
    value = str(symbol or "").strip().upper()
    for suffix in suffixes:
        if value.endswith(suffix):
            return value[: -len(suffix)]
    return value


def _to_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def parse_tickers(payload: Any, suffixes: Sequence[str] = DEFAULT_QUOTE_SUFFIXES) -> List[MarketMover]:
    movers: List[MarketMover] = []
    for row in list(payload or []):
        if not isinstance(row, dict):
            continue
        symbol = str(row.get("symbol") or "").strip().upper()
        if not symbol:
            continue
        movers.append(
            MarketMover(
                symbol=symbol,
                base=strip_quote_suffix(symbol, suffixes),
                pct_change=_to_float(row.get("priceChangePercent")),
                quote_volume=_to_float(row.get("quoteVolume")),
            )
        )
    return movers


def select_search_symbols(
    movers: Iterable[MarketMover],
    *,
    limit: int = 10,
    min_quote_volume: float = 5_000_000.0,
    always: Sequence[str] = (),
) -> List[str]:
    """Top gainers among liquid USDT/BUSD pairs, plus any always-searched symbols."""
    liquid = [
        mover
        for mover in movers
        if mover.symbol.endswith(SEARCH_QUOTES) and mover.quote_volume >= min_quote_volume
    ]
    liquid.sort(key=lambda mover: mover.pct_change, reverse=True)

    symbols: List[str] = []
    for mover in liquid[: max(0, int(limit))]:
        if len(mover.base) > 1 and mover.base not in symbols:
            symbols.append(mover.base)
    for symbol in always:
        value = str(symbol or "").strip().upper()
        if value and value not in symbols:
            symbols.append(value)
    return symbols


async def _http_get_json(url: str, *, timeout: float) -> Any:
    async with httpx.AsyncClient(timeout=httpx.Timeout(timeout), follow_redirects=True) as client:
        response = await client.get(url)
        response.raise_for_status()
        return response.json()


class BinanceMoverSource:
    """24h ticker feed; absence of data is a normal None, never an exception."""

    def __init__(
        self,
        settings: Optional[MarketSettings] = None,
        scoring: Optional[ScoringSettings] = None,
    ):
        self.settings = settings or MarketSettings()
        self.suffixes = tuple((scoring or ScoringSettings()).quote_suffixes)

    async def fetch_movers(self) -> Optional[List[MarketMover]]:
        if not self.settings.enabled:
            return None
        try:
            payload = await _http_get_json(self.settings.ticker_url, timeout=self.settings.request_timeout)
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("market_movers_unavailable url=%s error=%s", self.settings.ticker_url, exc)
            return None
        movers = parse_tickers(payload, self.suffixes)
        logger.info("market_movers_loaded count=%s", len(movers))
        return movers
