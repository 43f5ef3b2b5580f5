"""
portfolio_analytics.py — Aggregate trading statistics over a ledger window.

Independent of the valuation curve. Inputs are the ledger records of the
window (every status, so failures count against the win rate), the user's
agents, and current balances for the risk split.

Computed:
  - total trades, win rate, total volume, active agents
  - average return of settled sells
  - per-strategy (agent) breakdown and the best strategy
  - risk distribution of current holdings
  - per-day trading activity
  - performance metrics from a daily return series (None when the series is
    too short to say anything)

Every ratio goes through safe_ratio, so nothing here produces NaN or inf.
"""

from __future__ import annotations

import math
from collections import OrderedDict
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional, Sequence

from loguru import logger

from ledger_reader import AgentInfo, BalanceSnapshot, LedgerRecord
from portfolio_valuation import DeltaStrategy, heuristic_delta, safe_ratio, total_balance_usd


# ─── Constants ────────────────────────────────────────────────────────────────

NO_STRATEGY = "N/A"
PERIODS_PER_YEAR = 252
RISK_FREE_RATE = 0.02
MIN_RETURNS_FOR_METRICS = 2

LOW_RISK_MAX = 0.05
MEDIUM_RISK_MAX = 0.15


# ─── Data Classes ─────────────────────────────────────────────────────────────


@dataclass
class PerformanceMetrics:
    """Return-series statistics. None means "not enough data", never a guess."""
    sharpe_ratio: Optional[float] = None
    max_drawdown: Optional[float] = None     # percent
    # Both need a benchmark series, which the ledger does not carry
    alpha: Optional[float] = None
    beta: Optional[float] = None
    volatility: Optional[float] = None       # annualised, percent
    calmar_ratio: Optional[float] = None

    def to_dict(self) -> Dict[str, Optional[float]]:
        return asdict(self)


@dataclass
class StrategyPerformance:
    name: str
    trades: int = 0
    successful: int = 0
    volume: float = 0.0

    @property
    def return_pct(self) -> float:
        return safe_ratio(self.successful, self.trades) * 100

    @property
    def win_rate(self) -> float:
        return self.return_pct

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "return": round(self.return_pct, 2),
            "trades": self.trades,
            "successful": self.successful,
            "win_rate": round(self.win_rate, 2),
            "volume": round(self.volume, 2),
        }


@dataclass
class RiskBucket:
    level: str
    percentage: int

    def to_dict(self) -> Dict[str, Any]:
        return {"level": self.level, "percentage": self.percentage}


@dataclass
class TradingActivity:
    date: str
    trades: int = 0
    volume: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {"date": self.date, "trades": self.trades, "volume": round(self.volume, 2)}


@dataclass
class AnalyticsSummary:
    """Pure projection of a ledger window; never persisted."""
    total_trades: int
    win_rate: float
    avg_return: float
    best_strategy: str
    total_volume: float
    active_agents: int
    performance_metrics: PerformanceMetrics = field(default_factory=PerformanceMetrics)
    strategy_performance: List[StrategyPerformance] = field(default_factory=list)
    risk_distribution: List[RiskBucket] = field(default_factory=list)
    trading_activity: List[TradingActivity] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_trades": self.total_trades,
            "win_rate": self.win_rate,
            "avg_return": self.avg_return,
            "best_strategy": self.best_strategy,
            "total_volume": self.total_volume,
            "active_agents": self.active_agents,
            "performance_metrics": self.performance_metrics.to_dict(),
            "strategy_performance": [s.to_dict() for s in self.strategy_performance],
            "risk_distribution": [r.to_dict() for r in self.risk_distribution],
            "trading_activity": [a.to_dict() for a in self.trading_activity],
        }


# ─── Return-series Metrics ────────────────────────────────────────────────────


def daily_returns(
    records: Sequence[LedgerRecord],
    starting_value: float,
    delta: DeltaStrategy,
) -> List[float]:
    """
    Daily fractional returns of the settled records, oldest day first.

    Each day's profit is the summed delta of its records, divided by the
    running portfolio value before that day.
    """
    by_day: Dict[str, float] = {}
    for r in records:
        if not r.is_settled:
            continue
        day = r.executed_at.date().isoformat()
        by_day[day] = by_day.get(day, 0.0) + delta(r)

    returns: List[float] = []
    running = starting_value
    for day in sorted(by_day):
        if running <= 0:
            break
        profit = by_day[day]
        returns.append(profit / running)
        running += profit
    return returns


def compute_performance_metrics(
    returns: Sequence[float],
    starting_value: float,
) -> PerformanceMetrics:
    if len(returns) < MIN_RETURNS_FOR_METRICS:
        return PerformanceMetrics()

    n = len(returns)
    mean_r = sum(returns) / n
    variance = sum((r - mean_r) ** 2 for r in returns) / n
    volatility = math.sqrt(variance) * math.sqrt(PERIODS_PER_YEAR)
    annual_return = mean_r * PERIODS_PER_YEAR

    # Max drawdown over the compounded value path
    peak = running = starting_value
    max_dd = 0.0
    for r in returns:
        running *= 1 + r
        peak = max(peak, running)
        max_dd = max(max_dd, safe_ratio(peak - running, peak))

    return PerformanceMetrics(
        sharpe_ratio=round(safe_ratio(annual_return - RISK_FREE_RATE, volatility), 2),
        max_drawdown=round(max_dd * 100, 2),
        alpha=None,
        beta=None,
        volatility=round(volatility * 100, 2),
        calmar_ratio=round(safe_ratio(annual_return, max_dd), 2),
    )


# ─── Aggregator ───────────────────────────────────────────────────────────────


class AnalyticsAggregator:
    """Builds an AnalyticsSummary from one ledger window."""

    def __init__(self, delta: Optional[DeltaStrategy] = None) -> None:
        self.delta = delta or heuristic_delta()

    def aggregate(
        self,
        records: Sequence[LedgerRecord],
        agents: Sequence[AgentInfo],
        balances: Sequence[BalanceSnapshot] = (),
    ) -> AnalyticsSummary:
        total_trades = len(records)
        successful = sum(1 for r in records if r.is_settled)
        total_volume = sum(r.usd_value for r in records)
        strategies = self.strategy_breakdown(records, agents)
        starting_value = total_balance_usd(balances)

        summary = AnalyticsSummary(
            total_trades=total_trades,
            win_rate=round(safe_ratio(successful, total_trades) * 100, 2),
            avg_return=round(self.average_sell_return(records), 2),
            best_strategy=self.best_strategy(strategies),
            total_volume=round(total_volume, 2),
            active_agents=sum(1 for a in agents if a.is_active),
            performance_metrics=compute_performance_metrics(
                daily_returns(records, starting_value, self.delta), starting_value
            ),
            strategy_performance=strategies,
            risk_distribution=self.risk_distribution(balances),
            trading_activity=self.trading_activity(records),
        )
        logger.debug(
            "Analytics: {} trades, win_rate={}%, best={}",
            summary.total_trades, summary.win_rate, summary.best_strategy,
        )
        return summary

    # ── Pieces ────────────────────────────────────────────────────────────────

    def average_sell_return(self, records: Sequence[LedgerRecord]) -> float:
        """
        Mean per-trade return (percent) over settled sells with a positive value.

        This is the delta strategy's estimate, not a measured P&L: under a
        flat-rate strategy it is simply sell_rate * 100 (5.0 by default).
        """
        sells = [r for r in records if r.is_settled and r.kind == "sell" and r.usd_value > 0]
        if not sells:
            return 0.0
        return sum(safe_ratio(self.delta(r), r.usd_value) * 100 for r in sells) / len(sells)

    @staticmethod
    def strategy_breakdown(
        records: Sequence[LedgerRecord],
        agents: Sequence[AgentInfo],
    ) -> List[StrategyPerformance]:
        """Group by agent name in order of first appearance; unattributed trades are skipped."""
        names_by_id = {a.id: a.name for a in agents}
        groups: "OrderedDict[str, StrategyPerformance]" = OrderedDict()
        for r in records:
            name = r.agent_name or names_by_id.get(r.agent_id or "")
            if not name:
                continue
            group = groups.get(name)
            if group is None:
                group = groups[name] = StrategyPerformance(name=name)
            group.trades += 1
            group.volume += r.usd_value
            if r.is_settled:
                group.successful += 1
        return list(groups.values())

    @staticmethod
    def best_strategy(strategies: Sequence[StrategyPerformance]) -> str:
        best: Optional[StrategyPerformance] = None
        for s in strategies:
            # strict > keeps the first one on ties
            if best is None or s.return_pct > best.return_pct:
                best = s
        return best.name if best else NO_STRATEGY

    @staticmethod
    def risk_distribution(balances: Sequence[BalanceSnapshot]) -> List[RiskBucket]:
        total = total_balance_usd(balances)
        low = medium = high = 0.0
        for b in balances:
            weight = safe_ratio(b.balance_usd, total)
            pl_ratio = abs(safe_ratio(b.profit_loss, b.balance_usd)) if b.balance_usd > 0 else 0.0
            if pl_ratio < LOW_RISK_MAX:
                low += weight
            elif pl_ratio < MEDIUM_RISK_MAX:
                medium += weight
            else:
                high += weight
        return [
            RiskBucket("Low Risk", round(low * 100)),
            RiskBucket("Medium Risk", round(medium * 100)),
            RiskBucket("High Risk", round(high * 100)),
        ]

    @staticmethod
    def trading_activity(records: Sequence[LedgerRecord]) -> List[TradingActivity]:
        by_day: Dict[str, TradingActivity] = {}
        for r in records:
            day = r.executed_at.date().isoformat()
            activity = by_day.get(day)
            if activity is None:
                activity = by_day[day] = TradingActivity(date=day)
            activity.trades += 1
            activity.volume += r.usd_value
        return [by_day[d] for d in sorted(by_day)]
