"""
market_hours.py — Exchange calendar for the Fantasy Contest Engine.

Indian equities trade 09:30–15:30 Asia/Kolkata on weekdays that are not
exchange holidays. Crypto contests trade around the clock.

Every function takes the instant to evaluate; nothing here reads the system
clock except utc_now(), the default Clock used by the other modules.

Usage:
    hours = MarketHours()
    if hours.is_open(now):
        ...
    status = hours.status(now)
    print(status.reason, status.next_open)
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import Callable, FrozenSet, Iterable, Optional
from zoneinfo import ZoneInfo

from config import MARKET_CLOSE_HM, MARKET_OPEN_HM

Clock = Callable[[], datetime]


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


# ─── Holiday Calendar ─────────────────────────────────────────────────────────

INDIAN_HOLIDAYS_2024 = (
    "2024-01-26",  # Republic Day
    "2024-03-08",  # Holi
    "2024-03-29",  # Good Friday
    "2024-04-11",  # Eid ul-Fitr
    "2024-04-14",  # Ram Navami
    "2024-04-17",  # Mahavir Jayanti
    "2024-05-01",  # Maharashtra Day
    "2024-08-15",  # Independence Day
    "2024-08-19",  # Raksha Bandhan
    "2024-08-26",  # Janmashtami
    "2024-09-07",  # Ganesh Chaturthi
    "2024-10-02",  # Gandhi Jayanti
    "2024-10-12",  # Dussehra
    "2024-10-31",  # Diwali Laxmi Puja
    "2024-11-01",  # Diwali Padva
    "2024-11-15",  # Guru Nanak Jayanti
    "2024-12-25",  # Christmas
)

INDIAN_HOLIDAYS_2025 = (
    "2025-01-26",  # Republic Day
    "2025-03-14",  # Holi
    "2025-03-31",  # Eid ul-Fitr
    "2025-04-06",  # Ram Navami
    "2025-04-14",  # Mahavir Jayanti
    "2025-04-18",  # Good Friday
    "2025-05-01",  # Maharashtra Day
    "2025-08-15",  # Independence Day
    "2025-08-27",  # Janmashtami
    "2025-09-05",  # Ganesh Chaturthi
    "2025-10-02",  # Gandhi Jayanti
    "2025-10-22",  # Dussehra
    "2025-11-01",  # Diwali
    "2025-11-05",  # Guru Nanak Jayanti
    "2025-12-25",  # Christmas
)

INDIAN_HOLIDAYS_2026 = (
    "2026-01-26",  # Republic Day
    "2026-03-03",  # Holi
    "2026-03-26",  # Ram Navami
    "2026-03-31",  # Mahavir Jayanti
    "2026-04-03",  # Good Friday
    "2026-04-14",  # Ambedkar Jayanti
    "2026-05-01",  # Maharashtra Day
    "2026-05-28",  # Bakri Id
    "2026-06-26",  # Muharram
    "2026-09-14",  # Ganesh Chaturthi
    "2026-10-02",  # Gandhi Jayanti
    "2026-10-20",  # Dussehra
    "2026-11-10",  # Diwali Balipratipada
    "2026-11-24",  # Guru Nanak Jayanti
    "2026-12-25",  # Christmas
)

INDIAN_HOLIDAYS = INDIAN_HOLIDAYS_2024 + INDIAN_HOLIDAYS_2025 + INDIAN_HOLIDAYS_2026


@dataclass
class MarketStatus:
    """Snapshot of the exchange state at one instant."""
    is_open: bool
    reason: str
    next_open: Optional[datetime]
    can_create_stock_contest: bool
    can_create_crypto_contest: bool = True
    time_until_open: Optional[str] = None

    def to_dict(self) -> dict:
        return {
            "is_open": self.is_open,
            "reason": self.reason,
            "next_open": self.next_open.isoformat() if self.next_open else None,
            "can_create_stock_contest": self.can_create_stock_contest,
            "can_create_crypto_contest": self.can_create_crypto_contest,
            "time_until_open": self.time_until_open,
        }


# ─── Market Hours ─────────────────────────────────────────────────────────────

class MarketHours:
    """Trading calendar evaluated in the exchange's local timezone."""

    def __init__(
        self,
        tz_name: str = "Asia/Kolkata",
        holidays: Optional[Iterable[str]] = None,
        extra_holidays: Iterable[str] = (),
    ) -> None:
        self.tz = ZoneInfo(tz_name)
        base = holidays if holidays is not None else INDIAN_HOLIDAYS
        self.holidays: FrozenSet[date] = frozenset(
            date.fromisoformat(d) for d in (*base, *extra_holidays)
        )
        self._open_minute = MARKET_OPEN_HM[0] * 60 + MARKET_OPEN_HM[1]
        self._close_minute = MARKET_CLOSE_HM[0] * 60 + MARKET_CLOSE_HM[1]

    def local(self, now: datetime) -> datetime:
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.tz)

    def local_date(self, now: datetime) -> date:
        """Exchange calendar date for an instant (used for EOD freshness)."""
        return self.local(now).date()

    def is_weekend(self, day: date) -> bool:
        return day.weekday() >= 5

    def is_holiday(self, day: date) -> bool:
        return day in self.holidays

    def is_trading_day(self, day: date) -> bool:
        return not self.is_weekend(day) and not self.is_holiday(day)

    def is_open(self, now: datetime, asset_type: str = "stock") -> bool:
        if asset_type == "crypto":
            return True
        local = self.local(now)
        if not self.is_trading_day(local.date()):
            return False
        minute = local.hour * 60 + local.minute
        return self._open_minute <= minute <= self._close_minute

    def next_open(self, now: datetime) -> datetime:
        """Next session open strictly after the current session (or today's, pre-market)."""
        local = self.local(now)
        candidate = local.replace(
            hour=MARKET_OPEN_HM[0], minute=MARKET_OPEN_HM[1], second=0, microsecond=0
        )
        minute = local.hour * 60 + local.minute
        if minute >= self._open_minute or not self.is_trading_day(local.date()):
            candidate += timedelta(days=1)
        while not self.is_trading_day(candidate.date()):
            candidate += timedelta(days=1)
        return candidate

    def status(self, now: datetime) -> MarketStatus:
        local = self.local(now)
        day = local.date()
        if self.is_weekend(day):
            reason, trading_day = "Weekend - Market Closed", False
        elif self.is_holiday(day):
            reason, trading_day = "Indian National Holiday - Market Closed", False
        else:
            minute = local.hour * 60 + local.minute
            if minute < self._open_minute:
                reason, trading_day = "Pre-Market Hours", True
            elif minute > self._close_minute:
                reason, trading_day = "Post-Market Hours", True
            else:
                return MarketStatus(True, "Market is Open", None, True)
        next_open = self.next_open(now)
        return MarketStatus(False, reason, next_open, trading_day,
                            time_until_open=format_time_until(next_open, now))


def format_time_until(next_open: datetime, now: datetime) -> str:
    remaining = next_open - now
    if remaining.total_seconds() <= 0:
        return "Market should be open now"
    total_minutes = int(remaining.total_seconds() // 60)
    days, rem = divmod(total_minutes, 24 * 60)
    hours, minutes = divmod(rem, 60)
    if days > 0:
        return f"{days}d {hours}h {minutes}m until market opens"
    if hours > 0:
        return f"{hours}h {minutes}m until market opens"
    return f"{minutes}m until market opens"
