"""
portfolio_valuation.py — Rebuilds a portfolio valuation curve from the trade ledger.

The curve is anchored on today's total USD balance and walked forward
through the time buckets, adding the valuation impact of every settled
trade. That is an approximation, not a point-in-time valuation: the impact
of a trade comes from a pluggable DeltaStrategy so a real P&L engine can be
swapped in without touching bucketing or ordering.

Reference strategy (heuristic_delta):
    sell → +5% of usd_value
    buy  → -1% of usd_value

Usage:
    reconstructor = ValuationReconstructor(delta=heuristic_delta())
    points = reconstructor.reconstruct(buckets, balances, start, end, range_days=7)
"""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Sequence

from loguru import logger

from ledger_reader import BalanceSnapshot, LedgerRecord
from time_buckets import Bucket, synthetic_point_count


# ─── Constants ────────────────────────────────────────────────────────────────

DEFAULT_SELL_RATE = 0.05
DEFAULT_BUY_RATE = 0.01

DeltaStrategy = Callable[[LedgerRecord], float]


# ─── Helpers ──────────────────────────────────────────────────────────────────


def safe_ratio(numerator: float, denominator: float) -> float:
    """numerator / denominator, or 0.0 when that would be zero-division or non-finite."""
    if not denominator:
        return 0.0
    result = numerator / denominator
    return result if math.isfinite(result) else 0.0


def heuristic_delta(
    sell_rate: float = DEFAULT_SELL_RATE,
    buy_rate: float = DEFAULT_BUY_RATE,
) -> DeltaStrategy:
    """Build the flat-rate valuation impact function."""

    def delta(record: LedgerRecord) -> float:
        if record.kind == "sell":
            return record.usd_value * sell_rate
        return -record.usd_value * buy_rate

    return delta


def total_balance_usd(balances: Sequence[BalanceSnapshot]) -> float:
    return sum(b.balance_usd for b in balances)


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class ValuationPoint:
    """One point of the valuation curve."""
    timestamp: datetime
    value: float
    change_percent: float

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp.isoformat(),
            "value": self.value,
            "change_percent": self.change_percent,
        }


# ─── Reconstructor ────────────────────────────────────────────────────────────


class ValuationReconstructor:
    """
    Walks buckets oldest → newest and emits one ValuationPoint per bucket.

    Stateless between calls: the same buckets and balances always give the
    same curve.
    """

    def __init__(self, delta: Optional[DeltaStrategy] = None) -> None:
        self.delta = delta or heuristic_delta()

    def reconstruct(
        self,
        buckets: Sequence[Bucket],
        balances: Sequence[BalanceSnapshot],
        range_start: datetime,
        range_end: datetime,
        range_days: int,
    ) -> List[ValuationPoint]:
        anchor = total_balance_usd(balances)
        if not buckets:
            return self.flat_curve(anchor, range_start, range_end, range_days)

        points: List[ValuationPoint] = []
        cumulative = anchor
        last_value = anchor
        for bucket in sorted(buckets, key=lambda b: b.key):
            net_change = sum(self.delta(r) for r in bucket.records)
            cumulative += net_change
            if cumulative < 0:
                logger.debug(
                    "Valuation clamped at 0 for bucket {} (raw {:.2f})",
                    bucket.key.isoformat(), cumulative,
                )
                cumulative = 0.0
            change_pct = safe_ratio(cumulative - last_value, last_value) * 100 if last_value > 0 else 0.0
            points.append(
                ValuationPoint(
                    timestamp=bucket.key,
                    value=round(cumulative, 2),
                    change_percent=round(change_pct, 2),
                )
            )
            last_value = cumulative
        return points

    @staticmethod
    def flat_curve(
        value: float,
        range_start: datetime,
        range_end: datetime,
        range_days: int,
    ) -> List[ValuationPoint]:
        """Evenly spaced points holding `value` when there is nothing to walk."""
        count = synthetic_point_count(range_days)
        step = (range_end - range_start) / count
        flat = round(max(value, 0.0), 2)
        return [
            ValuationPoint(timestamp=range_start + step * i, value=flat, change_percent=0.0)
            for i in range(count)
        ]
