"""
contest_models.py — Contest and participant records.

A Contest carries four ordered instants that drive its phase:

    registration_deadline ≤ market_start_time ≤ market_end_time ≤ end_time

Construction rejects any other ordering. The recorded `phase` is what the
scheduler last observed; the authoritative phase for an instant is always
contest_scheduler.derive_phase(now, contest).
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from config import DEFAULT_ENTRY_FEE, DEFAULT_VIRTUAL_CASH
from sectors import CRYPTO_SECTOR, is_stock_sector, normalize_sector

ASSET_TYPES = ("stock", "crypto")
CONTEST_TYPES = ("daily", "weekly", "monthly")


class ContestPhase(str, Enum):
    REGISTRATION = "registration"
    PORTFOLIO_SELECTION = "portfolio_selection"
    LIVE = "live"
    COMPLETED = "completed"

    @property
    def order(self) -> int:
        return _PHASE_ORDER[self]


_PHASE_ORDER = {
    ContestPhase.REGISTRATION: 0,
    ContestPhase.PORTFOLIO_SELECTION: 1,
    ContestPhase.LIVE: 2,
    ContestPhase.COMPLETED: 3,
}


def _parse_dt(value: Any) -> datetime:
    if isinstance(value, datetime):
        dt = value
    else:
        dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is None:
        dt = dt.replace(tzinfo=timezone.utc)
    return dt


@dataclass
class Participant:
    """A user entered in a contest plus their latest valuation snapshot."""
    user_id: str
    display_name: str
    portfolio_id: str
    joined_at: datetime
    avatar: Optional[str] = None
    portfolio_value: float = 0.0
    profit: float = 0.0
    profit_pct: float = 0.0
    multiplier_bonus: float = 0.0
    rank: int = 0

    @property
    def total_return(self) -> float:
        return self.profit_pct + self.multiplier_bonus

    def update_valuation(self, value: float, profit: float, profit_pct: float, bonus: float) -> None:
        self.portfolio_value = value
        self.profit = profit
        self.profit_pct = profit_pct
        self.multiplier_bonus = bonus

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "display_name": self.display_name,
            "avatar": self.avatar,
            "portfolio_id": self.portfolio_id,
            "joined_at": self.joined_at.isoformat(),
            "portfolio_value": round(self.portfolio_value, 2),
            "profit": round(self.profit, 2),
            "profit_pct": round(self.profit_pct, 6),
            "multiplier_bonus": round(self.multiplier_bonus, 6),
            "total_return": round(self.total_return, 6),
            "rank": self.rank,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Participant":
        return cls(
            user_id=data["user_id"],
            display_name=data.get("display_name", data["user_id"]),
            portfolio_id=data["portfolio_id"],
            joined_at=_parse_dt(data["joined_at"]),
            avatar=data.get("avatar"),
            portfolio_value=float(data.get("portfolio_value", 0.0)),
            profit=float(data.get("profit", 0.0)),
            profit_pct=float(data.get("profit_pct", 0.0)),
            multiplier_bonus=float(data.get("multiplier_bonus", 0.0)),
            rank=int(data.get("rank", 0)),
        )


@dataclass
class Contest:
    contest_id: str
    title: str
    registration_deadline: datetime
    market_start_time: datetime
    market_end_time: datetime
    end_time: datetime
    entry_fee: float = DEFAULT_ENTRY_FEE
    prize_pool: float = 0.0
    virtual_cash: float = DEFAULT_VIRTUAL_CASH
    asset_type: str = "stock"
    description: str = ""
    contest_type: str = "daily"
    max_participants: Optional[int] = None
    sector_focus: Optional[str] = None
    phase: ContestPhase = ContestPhase.REGISTRATION
    participants: List[Participant] = field(default_factory=list)

    def __post_init__(self) -> None:
        self.registration_deadline = _parse_dt(self.registration_deadline)
        self.market_start_time = _parse_dt(self.market_start_time)
        self.market_end_time = _parse_dt(self.market_end_time)
        self.end_time = _parse_dt(self.end_time)
        if not (
            self.registration_deadline
            <= self.market_start_time
            <= self.market_end_time
            <= self.end_time
        ):
            raise ValueError(
                "Contest times must satisfy registration_deadline <= market_start_time "
                f"<= market_end_time <= end_time (contest {self.contest_id})"
            )
        if self.asset_type not in ASSET_TYPES:
            raise ValueError(f"asset_type must be one of {ASSET_TYPES}, got {self.asset_type!r}")
        if self.contest_type not in CONTEST_TYPES:
            raise ValueError(f"contest_type must be one of {CONTEST_TYPES}, got {self.contest_type!r}")
        if self.virtual_cash <= 0:
            raise ValueError("virtual_cash must be positive")
        if self.max_participants is not None and self.max_participants < 1:
            raise ValueError("max_participants must be at least 1")
        self.sector_focus = normalize_sector(self.sector_focus)
        if self.asset_type == "crypto" and is_stock_sector(self.sector_focus):
            raise ValueError(f"Crypto contests cannot focus on the {self.sector_focus} sector")
        if self.asset_type == "stock" and self.sector_focus == CRYPTO_SECTOR:
            raise ValueError("Stock contests cannot focus on the Cryptocurrency sector")
        self.phase = ContestPhase(self.phase)

    @property
    def is_full(self) -> bool:
        return self.max_participants is not None and len(self.participants) >= self.max_participants

    def participant(self, user_id: str) -> Optional[Participant]:
        for p in self.participants:
            if p.user_id == user_id:
                return p
        return None

    def to_dict(self, include_participants: bool = True) -> Dict[str, Any]:
        data = {
            "contest_id": self.contest_id,
            "title": self.title,
            "description": self.description,
            "contest_type": self.contest_type,
            "asset_type": self.asset_type,
            "sector_focus": self.sector_focus,
            "entry_fee": self.entry_fee,
            "prize_pool": self.prize_pool,
            "virtual_cash": self.virtual_cash,
            "max_participants": self.max_participants,
            "registration_deadline": self.registration_deadline.isoformat(),
            "market_start_time": self.market_start_time.isoformat(),
            "market_end_time": self.market_end_time.isoformat(),
            "end_time": self.end_time.isoformat(),
            "phase": self.phase.value,
            "participant_count": len(self.participants),
        }
        if include_participants:
            data["participants"] = [p.to_dict() for p in self.participants]
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Contest":
        return cls(
            contest_id=data["contest_id"],
            title=data["title"],
            registration_deadline=_parse_dt(data["registration_deadline"]),
            market_start_time=_parse_dt(data["market_start_time"]),
            market_end_time=_parse_dt(data["market_end_time"]),
            end_time=_parse_dt(data["end_time"]),
            entry_fee=float(data.get("entry_fee", DEFAULT_ENTRY_FEE)),
            prize_pool=float(data.get("prize_pool", 0.0)),
            virtual_cash=float(data.get("virtual_cash", DEFAULT_VIRTUAL_CASH)),
            asset_type=data.get("asset_type", "stock"),
            description=data.get("description", ""),
            contest_type=data.get("contest_type", "daily"),
            max_participants=data.get("max_participants"),
            sector_focus=data.get("sector_focus"),
            phase=ContestPhase(data.get("phase", ContestPhase.REGISTRATION.value)),
            participants=[Participant.from_dict(p) for p in data.get("participants", [])],
        )
