"""
service_config.py — Runtime configuration for the portfolio analytics service.

Values come from the environment (a local .env file is loaded first when
present). Every setting has a default suitable for local runs.

Environment:
    LEDGER_DB_PATH          SQLite ledger path (":memory:")
    QUOTE_CACHE_TTL         seconds a market overview stays cached (30)
    QUOTE_TIMEOUT           upstream timeout in seconds (10)
    QUOTE_TOP_N             coins in the market overview (5)
    COINGECKO_MARKETS_URL   override the CoinGecko /coins/markets URL
    COINGECKO_API_KEY       optional demo API key
    SELL_DELTA_RATE         valuation impact of a sell, fraction of usd_value (0.05)
    BUY_DELTA_RATE          valuation impact of a buy, fraction of usd_value (0.01)
    LOG_LEVEL               loguru level (INFO)
    PORT                    HTTP port (8090)
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Optional

from dotenv import load_dotenv

from portfolio_valuation import DEFAULT_BUY_RATE, DEFAULT_SELL_RATE
from quote_cache import (
    CACHE_TTL_SECONDS,
    COINGECKO_MARKETS_URL,
    DEFAULT_TOP_N,
    UPSTREAM_TIMEOUT_SECONDS,
)

DEFAULT_PORT = 8090


@dataclass
class ServiceConfig:
    """Configuration for PortfolioService and the HTTP layer."""
    ledger_db_path: str = ":memory:"
    quote_cache_ttl: float = CACHE_TTL_SECONDS
    quote_timeout: float = UPSTREAM_TIMEOUT_SECONDS
    quote_top_n: int = DEFAULT_TOP_N
    coingecko_url: str = COINGECKO_MARKETS_URL
    coingecko_api_key: Optional[str] = None
    sell_delta_rate: float = DEFAULT_SELL_RATE
    buy_delta_rate: float = DEFAULT_BUY_RATE
    log_level: str = "INFO"
    port: int = DEFAULT_PORT

    def __post_init__(self) -> None:
        if self.quote_cache_ttl <= 0:
            raise ValueError(f"quote_cache_ttl must be positive, got {self.quote_cache_ttl}")
        if self.quote_timeout <= 0:
            raise ValueError(f"quote_timeout must be positive, got {self.quote_timeout}")
        if self.quote_top_n < 1:
            raise ValueError(f"quote_top_n must be >= 1, got {self.quote_top_n}")

    @classmethod
    def from_env(cls, dotenv: bool = True) -> "ServiceConfig":
        if dotenv:
            load_dotenv()
        return cls(
            ledger_db_path=os.getenv("LEDGER_DB_PATH", ":memory:"),
            quote_cache_ttl=float(os.getenv("QUOTE_CACHE_TTL", str(CACHE_TTL_SECONDS))),
            quote_timeout=float(os.getenv("QUOTE_TIMEOUT", str(UPSTREAM_TIMEOUT_SECONDS))),
            quote_top_n=int(os.getenv("QUOTE_TOP_N", str(DEFAULT_TOP_N))),
            coingecko_url=os.getenv("COINGECKO_MARKETS_URL", COINGECKO_MARKETS_URL),
            coingecko_api_key=os.getenv("COINGECKO_API_KEY") or None,
            sell_delta_rate=float(os.getenv("SELL_DELTA_RATE", str(DEFAULT_SELL_RATE))),
            buy_delta_rate=float(os.getenv("BUY_DELTA_RATE", str(DEFAULT_BUY_RATE))),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            port=int(os.getenv("PORT", str(DEFAULT_PORT))),
        )
