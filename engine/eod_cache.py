"""
eod_cache.py — End-of-day closing price cache.

Holds one closing price per symbol plus the exchange calendar date the cache
was populated for. The gateway refreshes it at most once per calendar day;
quotes served while the market is closed come from here.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from typing import Any, Dict, Mapping, Optional

# Cache keys for the three tracked indices
INDEX_CACHE_KEYS: Dict[str, str] = {
    "NIFTY 50": "NIFTY50",
    "SENSEX": "SENSEX",
    "BANK NIFTY": "BANKNIFTY",
}

# Index closes used when no historical data is available
DEFAULT_INDEX_CLOSES: Dict[str, float] = {
    "NIFTY50": 22384.35,
    "SENSEX": 73678.62,
    "BANKNIFTY": 47892.65,
}


@dataclass
class EodCache:
    prices: Dict[str, float] = field(default_factory=dict)
    as_of: Optional[date] = None

    def is_fresh(self, today: date) -> bool:
        return self.as_of == today

    def get(self, symbol: str) -> Optional[float]:
        price = self.prices.get(symbol)
        return price if price and price > 0 else None

    def replace(self, prices: Mapping[str, float], as_of: date) -> None:
        """Swap in a full day's closes in one step."""
        self.prices = {s: float(p) for s, p in prices.items() if p and p > 0}
        self.as_of = as_of

    def symbols(self) -> list[str]:
        """Cached equity symbols (indices excluded)."""
        index_keys = set(INDEX_CACHE_KEYS.values())
        return [s for s in self.prices if s not in index_keys]

    def __len__(self) -> int:
        return len(self.prices)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "prices": dict(self.prices),
            "as_of": self.as_of.isoformat() if self.as_of else None,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "EodCache":
        as_of = data.get("as_of")
        return cls(
            prices={k: float(v) for k, v in (data.get("prices") or {}).items()},
            as_of=date.fromisoformat(as_of) if as_of else None,
        )
