"""
portfolio_ledger.py — Per-participant portfolio for one contest.

Enforces the contest's investment rules on every mutation:
  - cash can never go negative
  - no symbol may exceed MAX_SINGLE_STOCK_PCT (30%) of the initial value
    at the order price, counting any holding it merges into
  - top-pick tiers 5X / 3X / 2X each go to at most one distinct held symbol
  - once locked, buys and top-pick changes are rejected

Rejections come back as a LedgerResult carrying a typed LedgerError; the
ledger never raises for rule violations and never partially applies one.

Usage:
    ledger = PortfolioLedger("p-1", contest_id="c-1", initial_value=1_000_000)
    result = ledger.buy("RELIANCE", 100, 2800.0)
    if not result:
        logger.warning(f"Buy rejected: {result.error.message}")
    ledger.set_top_picks(first="RELIANCE")
    ledger.apply_price_update("RELIANCE", 2856.0, 56.0, 2.0)
    print(ledger.snapshot())
"""

from __future__ import annotations

import math
import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

from loguru import logger

from config import DEFAULT_VIRTUAL_CASH, MAX_SINGLE_STOCK_PCT, MULTIPLIER_WEIGHTS
from errors import (
    ConcentrationLimitExceeded,
    InsufficientFunds,
    InvalidOrder,
    InvalidPick,
    LedgerError,
    Locked,
)
from market_hours import Clock, utc_now

# Float slack for money comparisons
EPSILON = 1e-6


# ─── Records ──────────────────────────────────────────────────────────────────

class MultiplierTier(str, Enum):
    FIVE_X = "5X"
    THREE_X = "3X"
    TWO_X = "2X"

    @property
    def weight(self) -> int:
        return MULTIPLIER_WEIGHTS[self.value]


# Top-pick slot → tier
PICK_SLOTS = (
    ("first", MultiplierTier.FIVE_X),
    ("second", MultiplierTier.THREE_X),
    ("third", MultiplierTier.TWO_X),
)


@dataclass
class Holding:
    """A position in one symbol."""
    symbol: str
    name: str
    quantity: float
    average_price: float
    current_price: float
    day_change: float = 0.0
    day_change_pct: float = 0.0
    multiplier: Optional[MultiplierTier] = None
    multiplier_bonus: float = 0.0

    @property
    def value(self) -> float:
        return self.quantity * self.current_price

    @property
    def invested(self) -> float:
        return self.quantity * self.average_price

    @property
    def profit(self) -> float:
        return self.value - self.invested

    @property
    def profit_pct(self) -> float:
        return self.profit / self.invested * 100.0 if self.invested > 0 else 0.0

    def weightage(self, initial_value: float) -> float:
        return self.value / initial_value * 100.0 if initial_value > 0 else 0.0

    def refresh_bonus(self) -> None:
        """bonus = day change % × tier weight / 100."""
        if self.multiplier is None:
            self.multiplier_bonus = 0.0
        else:
            self.multiplier_bonus = self.day_change_pct * (self.multiplier.weight / 100.0)

    def to_dict(self, initial_value: Optional[float] = None) -> Dict[str, Any]:
        data = {
            "symbol": self.symbol,
            "name": self.name,
            "quantity": self.quantity,
            "average_price": self.average_price,
            "current_price": self.current_price,
            "day_change": self.day_change,
            "day_change_pct": self.day_change_pct,
            "value": round(self.value, 2),
            "profit": round(self.profit, 2),
            "profit_pct": round(self.profit_pct, 4),
            "multiplier": self.multiplier.value if self.multiplier else None,
            "multiplier_bonus": round(self.multiplier_bonus, 6),
        }
        if initial_value is not None:
            data["weightage"] = round(self.weightage(initial_value), 4)
        return data

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Holding":
        tier = data.get("multiplier")
        return cls(
            symbol=data["symbol"],
            name=data.get("name") or data["symbol"],
            quantity=float(data["quantity"]),
            average_price=float(data["average_price"]),
            current_price=float(data["current_price"]),
            day_change=float(data.get("day_change", 0.0)),
            day_change_pct=float(data.get("day_change_pct", 0.0)),
            multiplier=MultiplierTier(tier) if tier else None,
            multiplier_bonus=float(data.get("multiplier_bonus", 0.0)),
        )


@dataclass
class LedgerResult:
    """Outcome of a ledger mutation. Truthy on success."""
    ok: bool
    error: Optional[LedgerError] = None

    @classmethod
    def success(cls) -> "LedgerResult":
        return cls(ok=True)

    @classmethod
    def failure(cls, error: LedgerError) -> "LedgerResult":
        return cls(ok=False, error=error)

    def __bool__(self) -> bool:
        return self.ok

    def to_dict(self) -> Dict[str, Any]:
        return {"ok": self.ok, "error": self.error.to_dict() if self.error else None}


@dataclass(frozen=True)
class LedgerSnapshot:
    """Valuation summary handed to the leaderboard."""
    value: float
    profit: float
    profit_pct: float
    multiplier_bonus: float

    def to_dict(self) -> Dict[str, float]:
        return {
            "value": round(self.value, 2),
            "profit": round(self.profit, 2),
            "profit_pct": round(self.profit_pct, 6),
            "multiplier_bonus": round(self.multiplier_bonus, 6),
        }


# ─── Portfolio Ledger ─────────────────────────────────────────────────────────

class PortfolioLedger:
    """
    Cash, holdings and top picks of one participant in one contest.

    All public methods take the ledger's re-entrant lock, so concurrent
    callers see each mutation as a single step.
    """

    def __init__(
        self,
        portfolio_id: str,
        contest_id: str,
        user_id: str = "",
        initial_value: float = DEFAULT_VIRTUAL_CASH,
        clock: Clock = utc_now,
        max_single_stock_pct: float = MAX_SINGLE_STOCK_PCT,
    ) -> None:
        if initial_value <= 0:
            raise ValueError(f"initial_value must be positive, got {initial_value}")
        self.portfolio_id = portfolio_id
        self.contest_id = contest_id
        self.user_id = user_id
        self.initial_value = float(initial_value)
        self.max_single_stock_pct = max_single_stock_pct
        self.clock = clock

        self.cash = float(initial_value)
        self.holdings: Dict[str, Holding] = {}
        self.is_locked = False
        self.total_value = float(initial_value)
        self.total_multiplier_bonus = 0.0
        self.updated_at: datetime = clock()
        self._lock = threading.RLock()

    # ── Queries ───────────────────────────────────────────────────────────

    @property
    def top_picks(self) -> Dict[str, Optional[str]]:
        with self._lock:
            by_tier = {h.multiplier: s for s, h in self.holdings.items() if h.multiplier}
            return {slot: by_tier.get(tier) for slot, tier in PICK_SLOTS}

    @property
    def invested(self) -> float:
        return sum(h.invested for h in self.holdings.values())

    def max_investment(self) -> float:
        return self.initial_value * self.max_single_stock_pct / 100.0

    def snapshot(self) -> LedgerSnapshot:
        with self._lock:
            profit = self.total_value - self.initial_value
            return LedgerSnapshot(
                value=self.total_value,
                profit=profit,
                profit_pct=profit / self.initial_value * 100.0,
                multiplier_bonus=self.total_multiplier_bonus,
            )

    def valuation(self) -> Dict[str, Any]:
        """Full read-only view for rendering; holdings by value, largest first."""
        with self._lock:
            snap = self.snapshot()
            holdings = sorted(self.holdings.values(), key=lambda h: h.value, reverse=True)
            return {
                "portfolio_id": self.portfolio_id,
                "contest_id": self.contest_id,
                "user_id": self.user_id,
                "cash": round(self.cash, 2),
                "initial_value": self.initial_value,
                "invested": round(self.invested, 2),
                "total_value": round(snap.value, 2),
                "profit": round(snap.profit, 2),
                "profit_pct": round(snap.profit_pct, 6),
                "multiplier_bonus": round(snap.multiplier_bonus, 6),
                "total_return": round(snap.profit_pct + snap.multiplier_bonus, 6),
                "is_locked": self.is_locked,
                "top_picks": self.top_picks,
                "holdings": [h.to_dict(self.initial_value) for h in holdings],
                "updated_at": self.updated_at.isoformat(),
            }

    # ── Mutations ─────────────────────────────────────────────────────────

    def buy(
        self,
        symbol: str,
        quantity: float,
        price: float,
        name: Optional[str] = None,
    ) -> LedgerResult:
        with self._lock:
            if self.is_locked:
                return self._reject(Locked("Portfolio is locked; trading is closed for this contest"))
            if quantity <= 0 or price <= 0 or not math.isfinite(quantity * price):
                return self._reject(InvalidOrder(
                    f"Quantity and price must be positive (got {quantity} @ {price})"
                ))

            cost = quantity * price
            if cost > self.cash + EPSILON:
                return self._reject(InsufficientFunds(
                    f"Insufficient cash: order costs ₹{cost:,.2f}, available ₹{self.cash:,.2f}"
                ))

            # The merged holding is revalued at the order price, so the cap
            # applies to the whole resulting position at that price.
            existing = self.holdings.get(symbol)
            current_value = existing.quantity * price if existing else 0.0
            limit = self.max_investment()
            if current_value + cost > limit + EPSILON:
                total = current_value + cost
                max_additional = max(0.0, math.floor(limit - current_value))
                return self._reject(ConcentrationLimitExceeded(
                    f"Cannot invest more than {self.max_single_stock_pct:g}% of the portfolio "
                    f"in {symbol}. Current investment: ₹{current_value:,.2f}, trying to add: "
                    f"₹{cost:,.2f}, total would be ₹{total:,.2f} "
                    f"({total / self.initial_value * 100:.2f}%). "
                    f"You can invest ₹{max_additional:,.0f} or less.",
                    current_value=current_value,
                    attempted=cost,
                    max_additional=max_additional,
                ))

            self.cash -= cost
            if existing:
                new_qty = existing.quantity + quantity
                existing.average_price = (
                    existing.average_price * existing.quantity + price * quantity
                ) / new_qty
                existing.quantity = new_qty
                existing.current_price = price
            else:
                self.holdings[symbol] = Holding(
                    symbol=symbol,
                    name=name or symbol,
                    quantity=quantity,
                    average_price=price,
                    current_price=price,
                )
            self._recompute()
            logger.debug("Portfolio {}: bought {} {} @ {:.2f} (cash left {:.2f})",
                         self.portfolio_id, quantity, symbol, price, self.cash)
            return LedgerResult.success()

    def set_top_picks(
        self,
        first: Optional[str] = None,
        second: Optional[str] = None,
        third: Optional[str] = None,
    ) -> LedgerResult:
        """Assign 5X / 3X / 2X to held symbols, replacing any previous picks."""
        with self._lock:
            if self.is_locked:
                return self._reject(Locked("Portfolio is locked; top picks can no longer change"))

            chosen = [(sym, tier) for sym, (_, tier) in zip((first, second, third), PICK_SLOTS) if sym]
            symbols = [sym for sym, _ in chosen]
            if len(set(symbols)) != len(symbols):
                return self._reject(InvalidPick("A symbol can carry only one multiplier"))
            for sym in symbols:
                if sym not in self.holdings:
                    return self._reject(InvalidPick(f"{sym} is not held in this portfolio"))

            for holding in self.holdings.values():
                holding.multiplier = None
            for sym, tier in chosen:
                self.holdings[sym].multiplier = tier
            for holding in self.holdings.values():
                holding.refresh_bonus()
            self._recompute()
            logger.debug("Portfolio {}: top picks {}", self.portfolio_id, self.top_picks)
            return LedgerResult.success()

    def apply_price_update(
        self,
        symbol: str,
        price: float,
        day_change: float,
        day_change_pct: float,
    ) -> bool:
        """Revalue a held symbol. Allowed while locked. Returns False if not held."""
        with self._lock:
            holding = self.holdings.get(symbol)
            if holding is None:
                return False
            if price <= 0:
                logger.warning("Portfolio {}: ignoring non-positive price {} for {}",
                               self.portfolio_id, price, symbol)
                return False
            holding.current_price = price
            holding.day_change = day_change
            holding.day_change_pct = day_change_pct
            holding.refresh_bonus()
            self._recompute()
            return True

    def lock(self) -> None:
        """Freeze trading. Idempotent; only reset_lock() undoes it."""
        with self._lock:
            if not self.is_locked:
                self.is_locked = True
                logger.debug("Portfolio {} locked", self.portfolio_id)

    def reset_lock(self) -> None:
        """Administrative unlock (contest reset)."""
        with self._lock:
            if self.is_locked:
                logger.warning("Portfolio {} lock reset", self.portfolio_id)
            self.is_locked = False

    # ── Internals ─────────────────────────────────────────────────────────

    def _reject(self, error: LedgerError) -> LedgerResult:
        logger.info("Portfolio {} rejected ({}): {}", self.portfolio_id, error.code, error.message)
        return LedgerResult.failure(error)

    def _recompute(self) -> None:
        self.total_value = self.cash + sum(h.value for h in self.holdings.values())
        self.total_multiplier_bonus = sum(h.multiplier_bonus for h in self.holdings.values())
        self.updated_at = self.clock()

    # ── Persistence ───────────────────────────────────────────────────────

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "portfolio_id": self.portfolio_id,
                "contest_id": self.contest_id,
                "user_id": self.user_id,
                "initial_value": self.initial_value,
                "max_single_stock_pct": self.max_single_stock_pct,
                "cash": self.cash,
                "is_locked": self.is_locked,
                "holdings": [h.to_dict() for h in self.holdings.values()],
                "updated_at": self.updated_at.isoformat(),
            }

    @classmethod
    def from_dict(cls, data: Dict[str, Any], clock: Clock = utc_now) -> "PortfolioLedger":
        ledger = cls(
            portfolio_id=data["portfolio_id"],
            contest_id=data["contest_id"],
            user_id=data.get("user_id", ""),
            initial_value=float(data["initial_value"]),
            clock=clock,
            max_single_stock_pct=float(data.get("max_single_stock_pct", MAX_SINGLE_STOCK_PCT)),
        )
        ledger.cash = float(data["cash"])
        ledger.is_locked = bool(data.get("is_locked", False))
        for raw in data.get("holdings", []):
            holding = Holding.from_dict(raw)
            holding.refresh_bonus()
            ledger.holdings[holding.symbol] = holding
        ledger._recompute()
        if data.get("updated_at"):
            ledger.updated_at = datetime.fromisoformat(data["updated_at"])
        return ledger
