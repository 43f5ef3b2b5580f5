"""
test_portfolio_api.py — HTTP tests for portfolio_api via httpx ASGITransport.
"""

from __future__ import annotations

import asyncio
import os
import sys
import time
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger_reader import LedgerReader, SQLiteLedgerStore
from portfolio_api import app, get_service, set_service
from portfolio_service import PortfolioService
from quote_cache import QuoteCache, UpstreamUnavailable


# ─── Fixtures ─────────────────────────────────────────────────────────────────


@pytest_asyncio.fixture
async def fresh_service():
    """Swap in a service backed by an in-memory ledger and a failing quote feed."""
    store = SQLiteLedgerStore()
    store.set_balance("user-1", "USDC", 5000.0, 5000.0)
    store.add_trade(
        "user-1", kind="sell", usd_value=1000.0,
        executed_at=datetime.now(timezone.utc) - timedelta(hours=3),
    )
    source = MagicMock()
    source.fetch = AsyncMock(side_effect=UpstreamUnavailable("HTTP 429", rate_limited=True))
    service = PortfolioService(LedgerReader(store), QuoteCache(source))

    original = get_service()
    set_service(service)
    yield service
    set_service(original)
    store.close()


class SlowLedgerStore(SQLiteLedgerStore):
    """Ledger whose trade reads block the calling thread."""

    delay = 0.5

    def list_trades(self, user_id, since):
        time.sleep(self.delay)
        return super().list_trades(user_id, since)


@pytest_asyncio.fixture
async def slow_service():
    store = SlowLedgerStore()
    store.set_balance("user-1", "USDC", 5000.0, 5000.0)
    source = MagicMock()
    source.fetch = AsyncMock(side_effect=UpstreamUnavailable("HTTP 429", rate_limited=True))
    service = PortfolioService(LedgerReader(store), QuoteCache(source))

    original = get_service()
    set_service(service)
    yield service
    set_service(original)
    store.close()


async def _get(path: str):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        return await client.get(path)


# ─── Routes ───────────────────────────────────────────────────────────────────


class TestHistoryEndpoint:
    @pytest.mark.asyncio
    async def test_history_ok(self, fresh_service):
        resp = await _get("/portfolio/user-1/history?range=7d")
        assert resp.status_code == 200
        body = resp.json()
        assert body["success"] is True
        assert len(body["data"]) == 1
        assert body["data"][0]["value"] == 5050.0

    @pytest.mark.asyncio
    async def test_history_default_range(self, fresh_service):
        resp = await _get("/portfolio/user-1/history")
        assert resp.status_code == 200

    @pytest.mark.asyncio
    async def test_history_bad_range_422(self, fresh_service):
        resp = await _get("/portfolio/user-1/history?range=2w")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_history_unknown_user_404(self, fresh_service):
        resp = await _get("/portfolio/ghost/history?range=7d")
        assert resp.status_code == 404


class TestAnalyticsEndpoint:
    @pytest.mark.asyncio
    async def test_analytics_ok(self, fresh_service):
        resp = await _get("/analytics/user-1?range=30d")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert data["total_trades"] == 1
        assert data["win_rate"] == 100.0
        assert data["performance_metrics"]["sharpe_ratio"] is None

    @pytest.mark.asyncio
    async def test_analytics_bad_range(self, fresh_service):
        resp = await _get("/analytics/user-1?range=10y")
        assert resp.status_code == 422

    @pytest.mark.asyncio
    async def test_analytics_unknown_user(self, fresh_service):
        resp = await _get("/analytics/ghost")
        assert resp.status_code == 404


class TestMarketEndpoint:
    @pytest.mark.asyncio
    async def test_overview_fallback(self, fresh_service):
        resp = await _get("/market/overview")
        assert resp.status_code == 200
        data = resp.json()["data"]
        assert len(data) == 5
        assert data[0]["symbol"] == "BTC"
        assert data[0]["price"] == 96_800.0

    @pytest.mark.asyncio
    async def test_health(self, fresh_service):
        await _get("/market/overview")
        resp = await _get("/health")
        body = resp.json()
        assert body["status"] == "ok"
        assert body["quote_cache"]["state"] == "fallback"
        assert body["quote_cache"]["rate_limited"] == 1


class TestConcurrency:
    @pytest.mark.asyncio
    async def test_slow_ledger_does_not_block_market_overview(self, slow_service):
        started = time.perf_counter()
        finished = {}

        async def timed(name, path):
            resp = await _get(path)
            finished[name] = time.perf_counter() - started
            return resp

        history, overview = await asyncio.gather(
            timed("history", "/portfolio/user-1/history?range=7d"),
            timed("overview", "/market/overview"),
        )
        assert history.status_code == 200
        assert overview.status_code == 200
        assert finished["history"] >= SlowLedgerStore.delay
        assert finished["overview"] < SlowLedgerStore.delay
