"""Tests for billing period computation.

Covers:
- Periods anchored to the subscription day-of-month
- Month-length clamping and year rollover
- Naive datetimes treated as UTC
"""

from datetime import datetime, timezone

from turbomerch.services.billing_clock import BillingClock, FixedClock


def utc(*args) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestPeriodFor:
    def test_after_anchor_day(self):
        start, end = BillingClock().period_for(utc(2025, 11, 10), utc(2026, 3, 15, 12))
        assert start == utc(2026, 3, 10)
        assert end == utc(2026, 4, 10)

    def test_before_anchor_day(self):
        start, end = BillingClock().period_for(utc(2025, 11, 10), utc(2026, 3, 5))
        assert start == utc(2026, 2, 10)
        assert end == utc(2026, 3, 10)

    def test_on_period_boundary(self):
        start, end = BillingClock().period_for(utc(2025, 11, 10), utc(2026, 4, 10))
        assert start == utc(2026, 4, 10)
        assert end == utc(2026, 5, 10)

    def test_anchor_clamped_to_short_month(self):
        anchor = utc(2025, 1, 31)
        start, end = BillingClock().period_for(anchor, utc(2026, 2, 20))
        assert start == utc(2026, 1, 31)
        assert end == utc(2026, 2, 28)

        start, end = BillingClock().period_for(anchor, utc(2026, 2, 28, 8))
        assert start == utc(2026, 2, 28)
        assert end == utc(2026, 3, 31)

    def test_year_rollover(self):
        start, end = BillingClock().period_for(utc(2026, 6, 15), utc(2026, 12, 20))
        assert start == utc(2026, 12, 15)
        assert end == utc(2027, 1, 15)

    def test_naive_moment_is_utc(self):
        start, _ = BillingClock().period_for(utc(2026, 1, 10), datetime(2026, 3, 15))
        assert start == utc(2026, 3, 10)


class TestClocks:
    def test_now_is_aware(self):
        assert BillingClock().now().tzinfo is not None

    def test_naive_now_source_is_coerced(self):
        clock = BillingClock(now=lambda: datetime(2026, 3, 15))
        assert clock.now() == utc(2026, 3, 15)

    def test_fixed_clock_advances(self):
        clock = FixedClock(utc(2026, 3, 15))
        clock.advance_to(utc(2026, 4, 11))
        assert clock.now() == utc(2026, 4, 11)
        start, _ = clock.period_for(utc(2026, 1, 10))
        assert start == utc(2026, 4, 10)
