"""
Tests for market_hours.py — IST session, weekends, holidays, next open.
"""

from __future__ import annotations

import sys, os
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from datetime import date, datetime, timedelta, timezone
from zoneinfo import ZoneInfo

import pytest

from market_hours import MarketHours, format_time_until

IST = ZoneInfo("Asia/Kolkata")


def ist(y, m, d, hh, mm, ss=0) -> datetime:
    return datetime(y, m, d, hh, mm, ss, tzinfo=IST)


@pytest.fixture
def hours():
    return MarketHours()


class TestIsOpen:

    def test_open_mid_session(self, hours):
        assert hours.is_open(ist(2025, 1, 15, 11, 30))

    def test_open_accepts_utc_instants(self, hours):
        assert hours.is_open(datetime(2025, 1, 15, 6, 0, tzinfo=timezone.utc))

    def test_naive_treated_as_utc(self, hours):
        assert hours.is_open(datetime(2025, 1, 15, 6, 0))

    @pytest.mark.parametrize("hh, mm, expected", [
        (9, 29, False),
        (9, 30, True),
        (15, 30, True),
        (15, 31, False),
    ])
    def test_session_boundaries(self, hours, hh, mm, expected):
        assert hours.is_open(ist(2025, 1, 15, hh, mm)) is expected

    def test_weekend_closed(self, hours):
        assert not hours.is_open(ist(2025, 1, 18, 11, 0))   # Saturday

    def test_holiday_closed(self, hours):
        assert not hours.is_open(ist(2025, 8, 15, 11, 0))   # Independence Day

    def test_crypto_always_open(self, hours):
        assert hours.is_open(ist(2025, 1, 18, 3, 0), asset_type="crypto")

    def test_extra_holidays(self):
        hours = MarketHours(extra_holidays=["2025-01-15"])
        assert not hours.is_open(ist(2025, 1, 15, 11, 30))


class TestStatus:

    def test_reasons(self, hours):
        assert hours.status(ist(2025, 1, 18, 11, 0)).reason == "Weekend - Market Closed"
        assert hours.status(ist(2025, 8, 15, 11, 0)).reason == "Indian National Holiday - Market Closed"
        assert hours.status(ist(2025, 1, 15, 8, 0)).reason == "Pre-Market Hours"
        assert hours.status(ist(2025, 1, 15, 16, 0)).reason == "Post-Market Hours"
        open_status = hours.status(ist(2025, 1, 15, 10, 0))
        assert open_status.is_open and open_status.reason == "Market is Open"
        assert open_status.next_open is None

    def test_stock_contests_blocked_on_non_trading_days(self, hours):
        assert not hours.status(ist(2025, 1, 18, 11, 0)).can_create_stock_contest
        assert hours.status(ist(2025, 1, 15, 16, 0)).can_create_stock_contest
        assert hours.status(ist(2025, 1, 18, 11, 0)).can_create_crypto_contest

    def test_to_dict(self, hours):
        data = hours.status(ist(2025, 1, 15, 8, 0)).to_dict()
        assert data["is_open"] is False
        assert data["next_open"] == ist(2025, 1, 15, 9, 30).isoformat()
        assert data["time_until_open"] == "1h 30m until market opens"

    def test_open_status_has_no_countdown(self, hours):
        assert hours.status(ist(2025, 1, 15, 10, 0)).time_until_open is None


class TestNextOpen:

    def test_pre_market_same_day(self, hours):
        assert hours.next_open(ist(2025, 1, 15, 8, 0)) == ist(2025, 1, 15, 9, 30)

    def test_post_market_next_day(self, hours):
        assert hours.next_open(ist(2025, 1, 15, 16, 0)) == ist(2025, 1, 16, 9, 30)

    def test_friday_evening_skips_weekend(self, hours):
        assert hours.next_open(ist(2025, 1, 17, 16, 0)) == ist(2025, 1, 20, 9, 30)

    def test_skips_holiday(self, hours):
        # Thursday 14 Aug evening → Friday 15 Aug holiday → Monday 18 Aug
        assert hours.next_open(ist(2025, 8, 14, 16, 0)) == ist(2025, 8, 18, 9, 30)

    def test_2026_holidays(self, hours):
        republic_day = hours.status(ist(2026, 1, 26, 11, 0))
        assert republic_day.reason == "Indian National Holiday - Market Closed"
        assert not republic_day.can_create_stock_contest
        assert not hours.is_open(ist(2026, 11, 10, 11, 0))
        # Friday 23 Jan evening → Monday 26 Jan holiday → Tuesday 27 Jan
        assert hours.next_open(ist(2026, 1, 23, 16, 0)) == ist(2026, 1, 27, 9, 30)

    def test_local_date(self, hours):
        # 20:00 UTC is already the next day in India
        assert hours.local_date(datetime(2025, 1, 15, 20, 0, tzinfo=timezone.utc)) == date(2025, 1, 16)


class TestFormatTimeUntil:

    def test_minutes(self):
        now = ist(2025, 1, 15, 9, 0)
        assert format_time_until(ist(2025, 1, 15, 9, 30), now) == "30m until market opens"

    def test_hours_and_days(self):
        now = ist(2025, 1, 17, 16, 0)
        assert format_time_until(now + timedelta(hours=2, minutes=5), now) == "2h 5m until market opens"
        assert format_time_until(ist(2025, 1, 20, 9, 30), now) == "2d 17h 30m until market opens"

    def test_past(self):
        now = ist(2025, 1, 15, 10, 0)
        assert format_time_until(now - timedelta(minutes=1), now) == "Market should be open now"
