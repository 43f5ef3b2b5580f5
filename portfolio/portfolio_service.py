"""
portfolio_service.py — Caller-facing query surface.

Wires the three independent pipelines:

    get_valuation_history  range → LedgerReader → TimeBucketer → ValuationReconstructor
    get_analytics          range → LedgerReader → AnalyticsAggregator
    get_market_overview    QuoteCache → CoinGecko | fallback

The first two hold no state between calls and may run fully in parallel.
The QuoteCache is the only shared mutable piece.

Usage:
    service = PortfolioService.from_config(ServiceConfig.from_env())
    points  = service.get_valuation_history("user-1", "7d")
    summary = service.get_analytics("user-1", "30d")
    quotes  = await service.get_market_overview()
"""

from __future__ import annotations

from datetime import datetime
from typing import List, Optional

from loguru import logger

from ledger_reader import LedgerReader, LedgerStore, SQLiteLedgerStore
from portfolio_analytics import AnalyticsAggregator, AnalyticsSummary
from portfolio_valuation import DeltaStrategy, ValuationPoint, ValuationReconstructor, heuristic_delta
from quote_cache import CoinGeckoMarketSource, MarketQuote, QuoteCache
from service_config import ServiceConfig
from time_buckets import TimeBucketer, TimeRange, granularity_for


class PortfolioService:
    """Valuation history, analytics and market overview for one deployment."""

    def __init__(
        self,
        reader: LedgerReader,
        quote_cache: QuoteCache,
        delta: Optional[DeltaStrategy] = None,
    ) -> None:
        self.reader = reader
        self.quote_cache = quote_cache
        self.delta = delta or heuristic_delta()
        self.bucketer = TimeBucketer()
        self.reconstructor = ValuationReconstructor(self.delta)
        self.aggregator = AnalyticsAggregator(self.delta)

    @classmethod
    def from_config(
        cls,
        config: ServiceConfig,
        store: Optional[LedgerStore] = None,
    ) -> "PortfolioService":
        source = CoinGeckoMarketSource(
            url=config.coingecko_url,
            top_n=config.quote_top_n,
            http_timeout=config.quote_timeout,
            api_key=config.coingecko_api_key,
        )
        cache = QuoteCache(source, ttl=config.quote_cache_ttl, timeout=config.quote_timeout)
        return cls(
            reader=LedgerReader(store or SQLiteLedgerStore(config.ledger_db_path)),
            quote_cache=cache,
            delta=heuristic_delta(config.sell_delta_rate, config.buy_delta_rate),
        )

    # ── Queries ───────────────────────────────────────────────────────────────

    def get_valuation_history(
        self,
        user_id: str,
        range_token: str = "7d",
        now: Optional[datetime] = None,
    ) -> List[ValuationPoint]:
        time_range = TimeRange.parse(range_token)
        start, end = time_range.window(now)

        records = self.reader.fetch(user_id, start, end)
        balances = self.reader.current_balances(user_id)
        buckets = self.bucketer.group(records, granularity_for(time_range.days))

        points = self.reconstructor.reconstruct(buckets, balances, start, end, time_range.days)
        logger.info(
            "Valuation history user={} range={} records={} points={}",
            user_id, time_range.token, len(records), len(points),
        )
        return points

    def get_analytics(
        self,
        user_id: str,
        range_token: str = "30d",
        now: Optional[datetime] = None,
    ) -> AnalyticsSummary:
        time_range = TimeRange.parse(range_token)
        start, end = time_range.window(now)

        records = self.reader.fetch(user_id, start, end, include_unsettled=True)
        agents = self.reader.agents(user_id)
        balances = self.reader.current_balances(user_id)

        summary = self.aggregator.aggregate(records, agents, balances)
        logger.info(
            "Analytics user={} range={} trades={}",
            user_id, time_range.token, summary.total_trades,
        )
        return summary

    async def get_market_overview(self) -> List[MarketQuote]:
        return await self.quote_cache.get()
