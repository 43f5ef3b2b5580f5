"""
test_service_config.py — Tests for ServiceConfig defaults, env loading and validation.
"""

from __future__ import annotations

import os
import sys

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from quote_cache import COINGECKO_MARKETS_URL
from service_config import DEFAULT_PORT, ServiceConfig


class TestDefaults:
    def test_defaults(self):
        cfg = ServiceConfig()
        assert cfg.ledger_db_path == ":memory:"
        assert cfg.quote_cache_ttl == 30.0
        assert cfg.quote_timeout == 10.0
        assert cfg.quote_top_n == 5
        assert cfg.coingecko_url == COINGECKO_MARKETS_URL
        assert cfg.coingecko_api_key is None
        assert cfg.sell_delta_rate == 0.05
        assert cfg.buy_delta_rate == 0.01
        assert cfg.port == DEFAULT_PORT


class TestValidation:
    def test_ttl_must_be_positive(self):
        with pytest.raises(ValueError):
            ServiceConfig(quote_cache_ttl=0)

    def test_timeout_must_be_positive(self):
        with pytest.raises(ValueError):
            ServiceConfig(quote_timeout=-1)

    def test_top_n_at_least_one(self):
        with pytest.raises(ValueError):
            ServiceConfig(quote_top_n=0)


class TestFromEnv:
    def test_reads_environment(self, monkeypatch):
        monkeypatch.setenv("LEDGER_DB_PATH", "/tmp/ledger.db")
        monkeypatch.setenv("QUOTE_CACHE_TTL", "12.5")
        monkeypatch.setenv("QUOTE_TOP_N", "3")
        monkeypatch.setenv("COINGECKO_API_KEY", "demo-key")
        monkeypatch.setenv("SELL_DELTA_RATE", "0.07")
        monkeypatch.setenv("PORT", "9000")
        cfg = ServiceConfig.from_env(dotenv=False)
        assert cfg.ledger_db_path == "/tmp/ledger.db"
        assert cfg.quote_cache_ttl == 12.5
        assert cfg.quote_top_n == 3
        assert cfg.coingecko_api_key == "demo-key"
        assert cfg.sell_delta_rate == 0.07
        assert cfg.port == 9000

    def test_empty_api_key_is_none(self, monkeypatch):
        monkeypatch.setenv("COINGECKO_API_KEY", "")
        assert ServiceConfig.from_env(dotenv=False).coingecko_api_key is None

    def test_bad_number_raises(self, monkeypatch):
        monkeypatch.setenv("QUOTE_TIMEOUT", "soon")
        with pytest.raises(ValueError):
            ServiceConfig.from_env(dotenv=False)
