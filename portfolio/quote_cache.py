"""
quote_cache.py — TTL cache in front of the CoinGecko market overview.

CoinGecko's free tier rate-limits aggressively (HTTP 429) and is sometimes
just slow, so callers never talk to it directly:

  - a fresh entry (younger than the TTL, 30s) is served with no upstream call
  - otherwise exactly one upstream attempt is made, bounded by a timeout (10s)
  - on success the entry is replaced wholesale and returned
  - on any failure the static FALLBACK_QUOTES set is stored for one TTL
    window (tagged "fallback", never "upstream") and returned; the next
    request after that window tries upstream again

Entries are immutable and swapped by reference, so concurrent readers see
either the old entry or the new one, never half of each. Two requests that
both find an expired entry may both go upstream; that is tolerated.

Per key:
    EMPTY ──fetch──▶ FRESH | FALLBACK ──ttl──▶ STALE ──fetch──▶ FRESH | FALLBACK

Usage:
    cache = QuoteCache(CoinGeckoMarketSource())
    quotes = await cache.get()
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Protocol, Sequence, Tuple

import httpx
from loguru import logger


# ─── Constants ────────────────────────────────────────────────────────────────

COINGECKO_MARKETS_URL = "https://api.coingecko.com/api/v3/coins/markets"
CACHE_TTL_SECONDS = 30.0
UPSTREAM_TIMEOUT_SECONDS = 10.0
DEFAULT_TOP_N = 5
OVERVIEW_KEY = "overview"
USER_AGENT = "AgentVault/1.0.0"

SOURCE_UPSTREAM = "upstream"
SOURCE_FALLBACK = "fallback"

SYMBOL_ICONS: Dict[str, str] = {
    "BTC":   "₿",
    "ETH":   "Ξ",
    "USDC":  "$",
    "USDT":  "$",
    "SOL":   "◎",
    "ADA":   "₳",
    "DOT":   "●",
    "MATIC": "◆",
    "AVAX":  "▲",
    "LINK":  "\U0001f517",
}
DEFAULT_ICON = "●"


def icon_for(symbol: str) -> str:
    return SYMBOL_ICONS.get(symbol.upper(), DEFAULT_ICON)


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class MarketQuote:
    """Top-of-market quote for one asset, in USD."""
    symbol: str
    name: str
    price: float
    change_24h: float
    icon: str
    volume_24h: Optional[float] = None
    market_cap: Optional[float] = None
    rank: Optional[int] = None
    image: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "name": self.name,
            "price": self.price,
            "change_24h": self.change_24h,
            "volume_24h": self.volume_24h,
            "market_cap": self.market_cap,
            "rank": self.rank,
            "icon": self.icon,
            "image": self.image,
        }

    @classmethod
    def from_coingecko(cls, coin: Mapping[str, Any]) -> "MarketQuote":
        """Map one row of CoinGecko's /coins/markets response."""
        symbol = str(coin["symbol"]).upper()
        price = coin["current_price"]
        if price is None:
            raise ValueError(f"no price for {symbol}")
        rank = coin.get("market_cap_rank")
        return cls(
            symbol=symbol,
            name=str(coin.get("name") or symbol),
            price=float(price),
            change_24h=float(coin.get("price_change_percentage_24h") or 0.0),
            icon=icon_for(symbol),
            volume_24h=_optional_float(coin.get("total_volume")),
            market_cap=_optional_float(coin.get("market_cap")),
            rank=int(rank) if rank is not None else None,
            image=coin.get("image"),
        )


def _optional_float(value: Any) -> Optional[float]:
    return float(value) if value is not None else None


FALLBACK_QUOTES: Tuple[MarketQuote, ...] = (
    MarketQuote(
        symbol="BTC", name="Bitcoin", price=96_800.0, change_24h=0.5,
        icon=icon_for("BTC"), volume_24h=25_000_000_000, market_cap=1_900_000_000_000,
        rank=1, image="https://assets.coingecko.com/coins/images/1/small/bitcoin.png",
    ),
    MarketQuote(
        symbol="ETH", name="Ethereum", price=3_350.0, change_24h=1.2,
        icon=icon_for("ETH"), volume_24h=15_000_000_000, market_cap=400_000_000_000,
        rank=2, image="https://assets.coingecko.com/coins/images/279/small/ethereum.png",
    ),
    MarketQuote(
        symbol="USDT", name="Tether USDt", price=1.00, change_24h=0.01,
        icon=icon_for("USDT"), volume_24h=45_000_000_000, market_cap=140_000_000_000,
        rank=3, image="https://assets.coingecko.com/coins/images/325/small/Tether.png",
    ),
    MarketQuote(
        symbol="XRP", name="XRP", price=2.15, change_24h=-2.1,
        icon="◉", volume_24h=8_000_000_000, market_cap=125_000_000_000,
        rank=4, image="https://assets.coingecko.com/coins/images/44/small/xrp-symbol-white-128.png",
    ),
    MarketQuote(
        symbol="BNB", name="BNB", price=695.0, change_24h=0.8,
        icon="◆", volume_24h=2_500_000_000, market_cap=100_000_000_000,
        rank=5, image="https://assets.coingecko.com/coins/images/825/small/bnb-icon2_2x.png",
    ),
)


@dataclass(frozen=True)
class CacheEntry:
    """Immutable cached payload. Replaced, never edited."""
    key: str
    payload: Tuple[MarketQuote, ...]
    fetched_at: float
    ttl: float
    source: str = SOURCE_UPSTREAM

    def is_fresh(self, now: float) -> bool:
        return (now - self.fetched_at) < self.ttl


class CacheState(str, Enum):
    EMPTY = "empty"
    FRESH = "fresh"
    FALLBACK = "fallback"
    STALE = "stale"


@dataclass
class CacheStats:
    hits: int = 0
    misses: int = 0
    upstream_calls: int = 0
    fallbacks: int = 0
    rate_limited: int = 0

    def to_dict(self) -> Dict[str, int]:
        return {
            "hits": self.hits,
            "misses": self.misses,
            "upstream_calls": self.upstream_calls,
            "fallbacks": self.fallbacks,
            "rate_limited": self.rate_limited,
        }


# ─── Exceptions ───────────────────────────────────────────────────────────────


class UpstreamUnavailable(Exception):
    """The quote source failed, timed out, or rate-limited us."""

    def __init__(self, message: str, rate_limited: bool = False) -> None:
        super().__init__(message)
        self.rate_limited = rate_limited


# ─── Upstream Source ──────────────────────────────────────────────────────────


class QuoteSource(Protocol):
    async def fetch(self) -> Sequence[MarketQuote]: ...


class CoinGeckoMarketSource:
    """
    Fetch the top-N coins by market cap from CoinGecko /coins/markets.

    Every failure mode is reported as UpstreamUnavailable.
    """

    def __init__(
        self,
        url: str = COINGECKO_MARKETS_URL,
        top_n: int = DEFAULT_TOP_N,
        http_timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        api_key: Optional[str] = None,
    ) -> None:
        self.url = url
        self.top_n = top_n
        self.http_timeout = http_timeout
        self.api_key = api_key

    def _headers(self) -> Dict[str, str]:
        headers = {"Accept": "application/json", "User-Agent": USER_AGENT}
        if self.api_key:
            headers["x-cg-demo-api-key"] = self.api_key
        return headers

    async def fetch(self) -> List[MarketQuote]:
        params = {
            "vs_currency": "usd",
            "order": "market_cap_desc",
            "per_page": 10,
            "page": 1,
            "sparkline": "false",
            "price_change_percentage": "24h",
        }
        try:
            async with httpx.AsyncClient(timeout=self.http_timeout) as client:
                resp = await client.get(self.url, params=params, headers=self._headers())
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPStatusError as exc:
            status = exc.response.status_code
            raise UpstreamUnavailable(
                f"CoinGecko returned HTTP {status}", rate_limited=status == 429
            ) from exc
        except httpx.HTTPError as exc:
            raise UpstreamUnavailable(f"CoinGecko request failed: {exc!r}") from exc
        except ValueError as exc:
            raise UpstreamUnavailable(f"CoinGecko returned invalid JSON: {exc}") from exc

        if not isinstance(data, list) or not data:
            raise UpstreamUnavailable(f"CoinGecko returned no market rows: {data!r}")
        try:
            quotes = [MarketQuote.from_coingecko(coin) for coin in data[: self.top_n]]
        except (KeyError, TypeError, ValueError) as exc:
            raise UpstreamUnavailable(f"CoinGecko row malformed: {exc}") from exc

        logger.info(
            "Market overview fetched: {}", ", ".join(q.symbol for q in quotes)
        )
        return quotes


# ─── QuoteCache ───────────────────────────────────────────────────────────────


class QuoteCache:
    """
    Per-key TTL cache with a static fallback.

    Parameters
    ----------
    source   : object with `async fetch() -> Sequence[MarketQuote]`.
    ttl      : seconds an entry (upstream or fallback) is served as-is.
    timeout  : upper bound on one upstream attempt, on top of any client timeout.
    clock    : returns "now" in seconds; injectable for tests.
    fallback : quotes served when upstream fails.
    """

    def __init__(
        self,
        source: QuoteSource,
        ttl: float = CACHE_TTL_SECONDS,
        timeout: float = UPSTREAM_TIMEOUT_SECONDS,
        clock: Callable[[], float] = time.time,
        fallback: Sequence[MarketQuote] = FALLBACK_QUOTES,
    ) -> None:
        self._source = source
        self.ttl = ttl
        self.timeout = timeout
        self._clock = clock
        self._fallback = tuple(fallback)
        self._entries: Dict[str, CacheEntry] = {}
        self.stats = CacheStats()

    # ── Public API ──────────────────────────────────────────────────────────

    async def get(self, key: str = OVERVIEW_KEY) -> List[MarketQuote]:
        """Return quotes for key; never raises for upstream trouble."""
        entry = self._entries.get(key)
        if entry is not None and entry.is_fresh(self._clock()):
            self.stats.hits += 1
            logger.debug("Quote cache hit for {} ({})", key, entry.source)
            return list(entry.payload)

        self.stats.misses += 1
        entry = await self._refresh(key)
        return list(entry.payload)

    def peek(self, key: str = OVERVIEW_KEY) -> Optional[CacheEntry]:
        """Current entry for key regardless of age, without fetching."""
        return self._entries.get(key)

    def state(self, key: str = OVERVIEW_KEY) -> CacheState:
        entry = self._entries.get(key)
        if entry is None:
            return CacheState.EMPTY
        if not entry.is_fresh(self._clock()):
            return CacheState.STALE
        if entry.source == SOURCE_FALLBACK:
            return CacheState.FALLBACK
        return CacheState.FRESH

    def invalidate(self, key: Optional[str] = None) -> None:
        """Drop one entry (or all if key is None)."""
        if key is None:
            self._entries = {}
        else:
            self._entries.pop(key, None)

    # ── Refresh ──────────────────────────────────────────────────────────────

    async def _refresh(self, key: str) -> CacheEntry:
        self.stats.upstream_calls += 1
        try:
            quotes = await asyncio.wait_for(self._source.fetch(), timeout=self.timeout)
            entry = CacheEntry(
                key=key,
                payload=tuple(quotes),
                fetched_at=self._clock(),
                ttl=self.ttl,
                source=SOURCE_UPSTREAM,
            )
        except asyncio.TimeoutError:
            logger.warning("Quote upstream timed out after {}s, using fallback data", self.timeout)
            entry = self._fallback_entry(key)
        except UpstreamUnavailable as exc:
            if exc.rate_limited:
                self.stats.rate_limited += 1
                logger.warning("Quote upstream rate limited, using fallback data")
            else:
                logger.warning("Quote upstream error, using fallback data: {}", exc)
            entry = self._fallback_entry(key)
        except Exception as exc:
            logger.warning("Quote source failed unexpectedly, using fallback data: {}", exc)
            entry = self._fallback_entry(key)

        # Single reference swap; readers see old or new, never a mix
        self._entries[key] = entry
        return entry

    def _fallback_entry(self, key: str) -> CacheEntry:
        self.stats.fallbacks += 1
        return CacheEntry(
            key=key,
            payload=self._fallback,
            fetched_at=self._clock(),
            ttl=self.ttl,
            source=SOURCE_FALLBACK,
        )
