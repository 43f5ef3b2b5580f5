"""
time_buckets.py — Range parsing and time bucketing for ledger records.

Granularity depends on how far back the caller looks:
  - ranges of 7 days or less  → hourly buckets (top of the hour, UTC)
  - anything longer           → daily buckets (midnight UTC)

Buckets always come out sorted by key. The valuation walk relies on that.

Usage:
    tr = TimeRange.parse("7d")
    start, end = tr.window(now)
    buckets = TimeBucketer().group(records, granularity_for(tr.days))
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Dict, Iterable, List, Optional, Tuple

from ledger_reader import LedgerRecord


# ─── Constants ────────────────────────────────────────────────────────────────

RANGE_DAYS: Dict[str, int] = {
    "1d": 1,
    "7d": 7,
    "30d": 30,
    "90d": 90,
    "1y": 365,
}

HOURLY_MAX_DAYS = 7


# ─── Exceptions ───────────────────────────────────────────────────────────────


class InputError(ValueError):
    """Raised for caller input that is rejected before any ledger access."""


# ─── Range ────────────────────────────────────────────────────────────────────


@dataclass(frozen=True)
class TimeRange:
    """A named look-back window such as "7d" or "1y"."""
    token: str
    days: int

    @classmethod
    def parse(cls, token: Optional[str]) -> "TimeRange":
        if not isinstance(token, str) or token.strip().lower() not in RANGE_DAYS:
            raise InputError(
                f"range must be one of {list(RANGE_DAYS)}, got {token!r}"
            )
        key = token.strip().lower()
        return cls(token=key, days=RANGE_DAYS[key])

    def window(self, now: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        """Return (start, end) in UTC, end being `now`."""
        end = now or datetime.now(timezone.utc)
        if end.tzinfo is None:
            end = end.replace(tzinfo=timezone.utc)
        return end - timedelta(days=self.days), end


# ─── Granularity ──────────────────────────────────────────────────────────────


class Granularity(str, Enum):
    HOUR = "hour"
    DAY = "day"


def granularity_for(range_days: int) -> Granularity:
    return Granularity.HOUR if range_days <= HOURLY_MAX_DAYS else Granularity.DAY


def bucket_key(timestamp: datetime, granularity: Granularity) -> datetime:
    """Truncate a timestamp to its bucket boundary in UTC."""
    if timestamp.tzinfo is None:
        ts = timestamp.replace(tzinfo=timezone.utc)
    else:
        ts = timestamp.astimezone(timezone.utc)
    if granularity is Granularity.HOUR:
        return ts.replace(minute=0, second=0, microsecond=0)
    return ts.replace(hour=0, minute=0, second=0, microsecond=0)


def synthetic_point_count(range_days: int) -> int:
    """Number of flat points drawn when a range has no records at all."""
    if range_days <= 7:
        return 24
    if range_days <= 30:
        return 30
    if range_days <= 90:
        return 90
    return 365


# ─── Buckets ──────────────────────────────────────────────────────────────────


@dataclass
class Bucket:
    """Records sharing one hour or one day. Built per request, then dropped."""
    key: datetime
    granularity: Granularity
    records: List[LedgerRecord] = field(default_factory=list)

    def __len__(self) -> int:
        return len(self.records)


class TimeBucketer:
    """Groups ledger records into chronologically ordered buckets."""

    def group(
        self,
        records: Iterable[LedgerRecord],
        granularity: Granularity,
    ) -> List[Bucket]:
        by_key: Dict[datetime, Bucket] = {}
        for record in records:
            key = bucket_key(record.executed_at, granularity)
            bucket = by_key.get(key)
            if bucket is None:
                bucket = by_key[key] = Bucket(key=key, granularity=granularity)
            bucket.records.append(record)
        return [by_key[k] for k in sorted(by_key)]
