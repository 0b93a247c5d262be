"""
sectors.py — Sector universes for sector-focused contests.

A contest's sector_focus restricts which symbols its participants may buy.
"All Sectors" and "Cryptocurrency" (and no focus at all) leave the asset
type's whole universe open.

Usage:
    sector = normalize_sector("banking")       # "Banking"
    allowed = sector_symbols(sector)           # frozenset of NSE symbols
    if not symbol_in_sector(sector, "INFY"):
        ...
"""

from __future__ import annotations

from typing import Dict, FrozenSet, List, Optional, Tuple

ALL_SECTORS = "All Sectors"
CRYPTO_SECTOR = "Cryptocurrency"

# NSE symbols per sector
SECTOR_STOCKS: Dict[str, Tuple[str, ...]] = {
    "IT Services": (
        "TCS", "INFY", "HCLTECH", "WIPRO", "TECHM", "LTIM", "MPHASIS", "PERSISTENT",
        "COFORGE", "TATAELXSI", "KPITTECH", "CYIENT", "LTTS", "ZENSAR", "HEXAWARE",
        "RATEGAIN", "ROUTE", "NEWGEN", "BIRLASOFT", "HAPPSTMNDS", "INTELLECT",
        "MASTEK", "SONATSOFTW",
    ),
    "Banking": (
        "HDFCBANK", "ICICIBANK", "KOTAKBANK", "AXISBANK", "INDUSINDBK", "SBIN", "PNB",
        "BANKBARODA", "CANBK", "UNIONBANK", "FEDERALBNK", "IDFCFIRSTB", "BANDHANBNK",
        "RBLBANK", "YESBANK",
    ),
    "Financial Services": (
        "BAJFINANCE", "BAJAJFINSV", "CHOLAFIN", "M&MFIN", "LICHSGFIN", "PAYTM", "POLICYBZR",
    ),
    "FMCG": (
        "HINDUNILVR", "NESTLEIND", "ITC", "BRITANNIA", "DABUR", "GODREJCP", "MARICO",
        "COLPAL", "EMAMILTD", "BAJAJCON", "GILLETTE", "VBLLTD", "JYOTHYLAB", "HONAUT",
        "RADICO", "TATACONSUM", "UBL", "PGHH", "RELAXO", "BATAINDIA",
    ),
    "Pharmaceuticals": ("LAURUS", "SEQUENT", "SUVEN", "STRIDES", "GLAND"),
    "Chemicals": ("CLEAN", "ROSSARI", "FINEORG", "GALAXYSURF", "CHEMCON"),
    "Consumer Electronics": ("DIXON", "AMBER", "VGUARD", "CROMPTON", "HAVELLS"),
    "Consumer Internet": ("ZOMATO", "NYKAA"),
}

# Lower-cased alias → canonical sector name
_ALIASES: Dict[str, str] = {name.lower(): name for name in (*SECTOR_STOCKS, ALL_SECTORS, CRYPTO_SECTOR)}
_ALIASES.update({"it": "IT Services", "all": ALL_SECTORS, "crypto": CRYPTO_SECTOR})


def normalize_sector(sector: Optional[str]) -> Optional[str]:
    """Canonical sector name, None for no focus. Raises ValueError if unknown."""
    if sector is None or not sector.strip():
        return None
    canonical = _ALIASES.get(sector.strip().lower())
    if canonical is None:
        raise ValueError(f"Unknown sector {sector!r}; expected one of {list_sectors()}")
    return canonical


def list_sectors() -> List[str]:
    return [ALL_SECTORS, *SECTOR_STOCKS, CRYPTO_SECTOR]


def is_stock_sector(sector: Optional[str]) -> bool:
    return sector in SECTOR_STOCKS


def sector_symbols(sector: Optional[str]) -> Optional[FrozenSet[str]]:
    """Symbols a sector allows, or None when the sector does not restrict trading."""
    canonical = normalize_sector(sector)
    if canonical not in SECTOR_STOCKS:
        return None
    return frozenset(SECTOR_STOCKS[canonical])


def symbol_in_sector(sector: Optional[str], symbol: str) -> bool:
    allowed = sector_symbols(sector)
    return allowed is None or symbol.upper() in allowed
