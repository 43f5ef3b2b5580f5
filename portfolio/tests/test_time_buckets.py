"""
test_time_buckets.py — Tests for range parsing, granularity and bucketing.
"""

from __future__ import annotations

import os
import sys
from datetime import datetime, timedelta, timezone

import pytest

sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from ledger_reader import LedgerRecord
from time_buckets import (
    RANGE_DAYS,
    Bucket,
    Granularity,
    InputError,
    TimeBucketer,
    TimeRange,
    bucket_key,
    granularity_for,
    synthetic_point_count,
)


# ─── Helpers ──────────────────────────────────────────────────────────────────

NOW = datetime(2026, 1, 10, 12, 0, tzinfo=timezone.utc)


def rec(ts: datetime, rid: str = "t", usd: float = 100.0) -> LedgerRecord:
    return LedgerRecord(
        id=rid, user_id="u", kind="sell", from_asset="ETH", to_asset="USDC",
        amount=1.0, usd_value=usd, executed_at=ts, status="success",
    )


# ─── TimeRange ────────────────────────────────────────────────────────────────


class TestTimeRange:
    @pytest.mark.parametrize("token,days", list(RANGE_DAYS.items()))
    def test_known_tokens(self, token, days):
        assert TimeRange.parse(token).days == days

    def test_case_and_whitespace(self):
        assert TimeRange.parse(" 1Y ").token == "1y"

    @pytest.mark.parametrize("token", ["2w", "", "7", "30days", None, 7])
    def test_rejects_unknown(self, token):
        with pytest.raises(InputError):
            TimeRange.parse(token)

    def test_input_error_is_value_error(self):
        assert issubclass(InputError, ValueError)

    def test_window(self):
        start, end = TimeRange.parse("7d").window(NOW)
        assert end == NOW
        assert end - start == timedelta(days=7)

    def test_window_naive_now_treated_as_utc(self):
        start, end = TimeRange.parse("1d").window(datetime(2026, 1, 10, 12, 0))
        assert end.tzinfo is not None

    def test_window_defaults_to_current_time(self):
        before = datetime.now(timezone.utc)
        _, end = TimeRange.parse("1d").window()
        assert end >= before


# ─── Granularity ──────────────────────────────────────────────────────────────


class TestGranularity:
    @pytest.mark.parametrize("days", [1, 7])
    def test_hourly_up_to_seven_days(self, days):
        assert granularity_for(days) is Granularity.HOUR

    @pytest.mark.parametrize("days", [8, 30, 90, 365])
    def test_daily_beyond_seven_days(self, days):
        assert granularity_for(days) is Granularity.DAY


class TestBucketKey:
    def test_hour_truncation(self):
        ts = datetime(2026, 1, 5, 10, 47, 13, 999, tzinfo=timezone.utc)
        assert bucket_key(ts, Granularity.HOUR) == datetime(2026, 1, 5, 10, tzinfo=timezone.utc)

    def test_day_truncation(self):
        ts = datetime(2026, 1, 5, 23, 59, 59, tzinfo=timezone.utc)
        assert bucket_key(ts, Granularity.DAY) == datetime(2026, 1, 5, tzinfo=timezone.utc)

    def test_day_boundary_uses_utc(self):
        # 01:30 at +03:00 is 22:30 UTC the previous day
        ts = datetime(2026, 1, 5, 1, 30, tzinfo=timezone(timedelta(hours=3)))
        assert bucket_key(ts, Granularity.DAY) == datetime(2026, 1, 4, tzinfo=timezone.utc)

    def test_naive_is_utc(self):
        assert bucket_key(datetime(2026, 1, 5, 10, 30), Granularity.HOUR).tzinfo is not None


class TestSyntheticPointCount:
    @pytest.mark.parametrize("days,count", [(1, 24), (7, 24), (30, 30), (90, 90), (365, 365)])
    def test_counts(self, days, count):
        assert synthetic_point_count(days) == count


# ─── TimeBucketer ─────────────────────────────────────────────────────────────


class TestTimeBucketer:
    def test_empty(self):
        assert TimeBucketer().group([], Granularity.HOUR) == []

    def test_groups_same_hour(self):
        base = datetime(2026, 1, 5, 10, tzinfo=timezone.utc)
        records = [rec(base + timedelta(minutes=m), rid=str(m)) for m in (5, 20, 55)]
        buckets = TimeBucketer().group(records, Granularity.HOUR)
        assert len(buckets) == 1
        assert buckets[0].key == base
        assert len(buckets[0]) == 3

    def test_sorted_by_key_even_if_input_unsorted(self):
        records = [
            rec(datetime(2026, 1, 7, 9, tzinfo=timezone.utc), "c"),
            rec(datetime(2026, 1, 5, 9, tzinfo=timezone.utc), "a"),
            rec(datetime(2026, 1, 6, 9, tzinfo=timezone.utc), "b"),
        ]
        buckets = TimeBucketer().group(records, Granularity.DAY)
        keys = [b.key for b in buckets]
        assert keys == sorted(keys)
        assert [b.records[0].id for b in buckets] == ["a", "b", "c"]

    def test_preserves_order_within_bucket(self):
        day = datetime(2026, 1, 5, tzinfo=timezone.utc)
        records = [
            rec(day + timedelta(hours=9), "first"),
            rec(day + timedelta(hours=3), "second"),
            rec(day + timedelta(hours=20), "third"),
        ]
        (bucket,) = TimeBucketer().group(records, Granularity.DAY)
        assert [r.id for r in bucket.records] == ["first", "second", "third"]

    def test_bucket_carries_granularity(self):
        buckets = TimeBucketer().group([rec(NOW)], Granularity.DAY)
        assert isinstance(buckets[0], Bucket)
        assert buckets[0].granularity is Granularity.DAY

    def test_hourly_splits_hours(self):
        base = datetime(2026, 1, 5, 10, tzinfo=timezone.utc)
        records = [rec(base), rec(base + timedelta(hours=1)), rec(base + timedelta(hours=1, minutes=30))]
        buckets = TimeBucketer().group(records, Granularity.HOUR)
        assert [len(b) for b in buckets] == [1, 2]
