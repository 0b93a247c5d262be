"""
market_models.py — Normalised market data records.

Whatever the upstream (broker REST API, simulator, EOD cache), the gateway
hands out these shapes:

    Instrument{token, symbol, name, last_price, exchange}
    Quote{symbol, last_price, day_change, day_change_pct, volume, ohlc,
          timestamp, source}
    MarketIndex{name, value, change, change_pct}
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class DataSource(str, Enum):
    """Provenance tag disclosed to the UI."""
    LIVE = "live"
    EOD = "eod"
    SIMULATED = "simulated"


@dataclass
class OHLC:
    open: float = 0.0
    high: float = 0.0
    low: float = 0.0
    close: float = 0.0

    def to_dict(self) -> Dict[str, float]:
        return {"open": self.open, "high": self.high, "low": self.low, "close": self.close}

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> "OHLC":
        data = data or {}
        return cls(
            open=float(data.get("open", 0.0)),
            high=float(data.get("high", 0.0)),
            low=float(data.get("low", 0.0)),
            close=float(data.get("close", 0.0)),
        )


@dataclass
class Instrument:
    """A tradable symbol in the contest universe."""
    token: int
    symbol: str
    name: str
    last_price: float
    exchange: str = "NSE"
    segment: str = "NSE"
    instrument_type: str = "EQ"
    tick_size: float = 0.05
    lot_size: int = 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "token": self.token,
            "symbol": self.symbol,
            "name": self.name,
            "last_price": self.last_price,
            "exchange": self.exchange,
            "segment": self.segment,
            "instrument_type": self.instrument_type,
            "tick_size": self.tick_size,
            "lot_size": self.lot_size,
        }


@dataclass
class Quote:
    """One price observation for a symbol."""
    symbol: str
    last_price: float
    day_change: float
    day_change_pct: float
    source: DataSource
    volume: int = 0
    ohlc: OHLC = field(default_factory=OHLC)
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    def __post_init__(self) -> None:
        if self.last_price <= 0:
            raise ValueError(f"Price must be positive, got {self.last_price} for {self.symbol}")
        self.source = DataSource(self.source)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "last_price": round(self.last_price, 4),
            "day_change": round(self.day_change, 4),
            "day_change_pct": round(self.day_change_pct, 4),
            "volume": self.volume,
            "ohlc": self.ohlc.to_dict(),
            "timestamp": self.timestamp.isoformat(),
            "source": self.source.value,
        }


@dataclass
class MarketIndex:
    name: str
    value: float
    change: float
    change_pct: float
    source: DataSource = DataSource.SIMULATED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "value": round(self.value, 2),
            "change": round(self.change, 2),
            "change_pct": round(self.change_pct, 4),
            "source": DataSource(self.source).value,
        }


def change_from_close(last_price: float, prev_close: float) -> tuple[float, float]:
    """Return (absolute change, percent change) of last_price vs prev_close."""
    if prev_close <= 0:
        return 0.0, 0.0
    change = last_price - prev_close
    return change, change / prev_close * 100.0
