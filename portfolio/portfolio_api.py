"""
portfolio_api.py — FastAPI server over PortfolioService.

Endpoints:
    GET /portfolio/{user_id}/history?range=7d   — valuation curve
    GET /analytics/{user_id}?range=30d          — aggregate analytics
    GET /market/overview                        — top coins (cached, with fallback)
    GET /health                                 — liveness + quote cache stats

Ledger routes are plain functions so FastAPI runs their blocking reads in its
threadpool; the event loop stays free for the quote route.

Usage:
    uvicorn portfolio_api:app --port 8090
"""

from __future__ import annotations

from typing import Any, Dict

from fastapi import FastAPI, HTTPException, Query
from fastapi.responses import JSONResponse
from loguru import logger

from ledger_reader import LedgerNotFound
from portfolio_service import PortfolioService
from service_config import ServiceConfig
from time_buckets import InputError


# ─── App & Global Service ─────────────────────────────────────────────────────

app = FastAPI(
    title="Portfolio Analytics API",
    description="Valuation history, trading analytics and market overview",
    version="1.0.0",
)

# Singleton service shared across requests
_service: PortfolioService = PortfolioService.from_config(ServiceConfig.from_env())


def get_service() -> PortfolioService:
    """Return the global service instance."""
    return _service


def set_service(service: PortfolioService) -> None:
    """Override the global service (used in tests)."""
    global _service
    _service = service


# ─── Routes ───────────────────────────────────────────────────────────────────


@app.get("/portfolio/{user_id}/history", response_model=Dict[str, Any])
def valuation_history(
    user_id: str,
    range_token: str = Query("7d", alias="range"),
) -> Dict[str, Any]:
    """Return the valuation curve for the requested range."""
    try:
        points = get_service().get_valuation_history(user_id, range_token)
    except InputError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except LedgerNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"success": True, "data": [p.to_dict() for p in points]}


@app.get("/analytics/{user_id}", response_model=Dict[str, Any])
def analytics(
    user_id: str,
    range_token: str = Query("30d", alias="range"),
) -> Dict[str, Any]:
    """Return aggregate trading analytics for the requested range."""
    try:
        summary = get_service().get_analytics(user_id, range_token)
    except InputError as exc:
        raise HTTPException(status_code=422, detail=str(exc))
    except LedgerNotFound as exc:
        raise HTTPException(status_code=404, detail=str(exc))
    return {"success": True, "data": summary.to_dict()}


@app.get("/market/overview", response_model=Dict[str, Any])
async def market_overview() -> Dict[str, Any]:
    """Return the top coins; falls back to static data when CoinGecko is down."""
    quotes = await get_service().get_market_overview()
    return {"success": True, "data": [q.to_dict() for q in quotes]}


@app.get("/health")
async def health() -> Dict[str, Any]:
    """Simple health check."""
    cache = get_service().quote_cache
    return {
        "status": "ok",
        "quote_cache": {"state": cache.state().value, **cache.stats.to_dict()},
    }


# ─── Error Handlers ───────────────────────────────────────────────────────────


@app.exception_handler(Exception)
async def generic_error_handler(request: Any, exc: Exception) -> JSONResponse:
    logger.error("Unhandled error on {}: {}", getattr(request, "url", "?"), exc)
    return JSONResponse(
        status_code=500,
        content={"success": False, "detail": f"Internal error: {exc}"},
    )
