"""
Billing Period Clock
Supplies "now" and the monthly billing window anchored to the subscription date
"""

import calendar
from datetime import datetime, timezone
from typing import Callable, Optional, Tuple


def _anchor_in_month(year: int, month: int, day: int) -> datetime:
    """Anchor day in the given month, clamped to the month's length (Jan 31 -> Feb 28)"""
    last_day = calendar.monthrange(year, month)[1]
    return datetime(year, month, min(day, last_day), tzinfo=timezone.utc)


def _shift_month(year: int, month: int, delta: int) -> Tuple[int, int]:
    index = year * 12 + (month - 1) + delta
    return index // 12, index % 12 + 1


class BillingClock:
    """
    Computes the active billing period for a user.

    Periods run from the anchor's day-of-month (midnight UTC) to the same day
    one calendar month later. Pass `now` to pin the clock in tests.
    """

    def __init__(self, now: Optional[Callable[[], datetime]] = None):
        self._now = now or (lambda: datetime.now(timezone.utc))

    def now(self) -> datetime:
        current = self._now()
        if current.tzinfo is None:
            current = current.replace(tzinfo=timezone.utc)
        return current

    def period_for(self, anchor: datetime, at: Optional[datetime] = None) -> Tuple[datetime, datetime]:
        """
        Get (start, end) of the billing period containing `at`.

        Args:
            anchor: Subscription anchor date (only its day-of-month is used)
            at: Moment to locate, defaults to now()

        Returns:
            Half-open period [start, end)
        """
        at = at or self.now()
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        day = anchor.day

        year, month = at.year, at.month
        start = _anchor_in_month(year, month, day)
        if start > at:
            year, month = _shift_month(year, month, -1)
            start = _anchor_in_month(year, month, day)

        end_year, end_month = _shift_month(year, month, 1)
        end = _anchor_in_month(end_year, end_month, day)
        return start, end


class FixedClock(BillingClock):
    """Clock pinned to a settable moment"""

    def __init__(self, moment: datetime):
        self.moment = moment
        super().__init__(now=lambda: self.moment)

    def advance_to(self, moment: datetime) -> None:
        self.moment = moment
