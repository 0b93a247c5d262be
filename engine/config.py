"""
config.py — Runtime configuration for the Fantasy Contest Engine.

Values come from the environment (optionally a .env file loaded with
python-dotenv). Contest rules that are part of the product, not the
deployment, live here as module constants.

Environment:
    BROKER_API_KEY / BROKER_API_SECRET / BROKER_USER_ID
        Credentials for the live broker feed. Any missing → simulated mode.
    BROKER_BASE_URL              default https://api.kite.trade
    USE_SIMULATED_DATA           "true" forces simulated mode
    MARKET_TIMEZONE              default Asia/Kolkata
    TICK_INTERVAL_SECONDS        default 5
    POLL_INTERVAL_SECONDS        default 60
    PHASE_CHECK_INTERVAL_SECONDS default 60
    EOD_CHECK_INTERVAL_SECONDS   default 3600
    SESSION_VALIDITY_HOURS       default 24
    HTTP_TIMEOUT_SECONDS         default 8
    STATE_DB_PATH                default :memory:
    LOG_LEVEL                    default INFO
    API_PORT                     default 8001
"""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from typing import Dict, Optional, Tuple

from dotenv import load_dotenv


# ─── Contest Rules ────────────────────────────────────────────────────────────

DEFAULT_VIRTUAL_CASH = 1_000_000.0      # ₹10,00,000
DEFAULT_ENTRY_FEE = 100.0
MAX_SINGLE_STOCK_PCT = 30.0             # % of initial value per symbol

# Top-pick tier → multiplier weight
MULTIPLIER_WEIGHTS: Dict[str, int] = {
    "5X": 5,
    "3X": 3,
    "2X": 2,
}

# Indian equity session (local exchange time)
MARKET_OPEN_HM = (9, 30)
MARKET_CLOSE_HM = (15, 30)
DEFAULT_EXCHANGE = "NSE"


def _env_bool(key: str, default: bool = False) -> bool:
    value = os.getenv(key)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _env_float(key: str, default: float) -> float:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_int(key: str, default: int) -> int:
    value = os.getenv(key)
    if value is None or value.strip() == "":
        return default
    try:
        return int(value)
    except ValueError:
        return default


# ─── Engine Configuration ─────────────────────────────────────────────────────

@dataclass
class BrokerCredentials:
    """API credentials for the live broker-style feed."""
    api_key: str = ""
    api_secret: str = ""
    user_id: str = ""
    base_url: str = "https://api.kite.trade"

    @property
    def is_complete(self) -> bool:
        return bool(self.api_key and self.api_secret and self.user_id)


@dataclass
class EngineConfig:
    """Deployment configuration, typically built with from_env()."""
    credentials: BrokerCredentials = field(default_factory=BrokerCredentials)
    use_simulated_data: bool = False
    market_timezone: str = "Asia/Kolkata"
    tick_interval_seconds: float = 5.0
    poll_interval_seconds: float = 60.0
    phase_check_interval_seconds: float = 60.0
    eod_check_interval_seconds: float = 3600.0
    session_validity_hours: float = 24.0
    http_timeout_seconds: float = 8.0
    state_db_path: str = ":memory:"
    log_level: str = "INFO"
    api_port: int = 8001
    extra_holidays: Tuple[str, ...] = ()

    @property
    def live_source_enabled(self) -> bool:
        """True when a real upstream is usable (credentials present, not forced off)."""
        return self.credentials.is_complete and not self.use_simulated_data

    @classmethod
    def from_env(cls, dotenv_path: Optional[str] = None) -> "EngineConfig":
        load_dotenv(dotenv_path)
        holidays = tuple(
            h.strip() for h in os.getenv("MARKET_EXTRA_HOLIDAYS", "").split(",") if h.strip()
        )
        return cls(
            credentials=BrokerCredentials(
                api_key=os.getenv("BROKER_API_KEY", ""),
                api_secret=os.getenv("BROKER_API_SECRET", ""),
                user_id=os.getenv("BROKER_USER_ID", ""),
                base_url=os.getenv("BROKER_BASE_URL", "https://api.kite.trade"),
            ),
            use_simulated_data=_env_bool("USE_SIMULATED_DATA"),
            market_timezone=os.getenv("MARKET_TIMEZONE", "Asia/Kolkata"),
            tick_interval_seconds=_env_float("TICK_INTERVAL_SECONDS", 5.0),
            poll_interval_seconds=_env_float("POLL_INTERVAL_SECONDS", 60.0),
            phase_check_interval_seconds=_env_float("PHASE_CHECK_INTERVAL_SECONDS", 60.0),
            eod_check_interval_seconds=_env_float("EOD_CHECK_INTERVAL_SECONDS", 3600.0),
            session_validity_hours=_env_float("SESSION_VALIDITY_HOURS", 24.0),
            http_timeout_seconds=_env_float("HTTP_TIMEOUT_SECONDS", 8.0),
            state_db_path=os.getenv("STATE_DB_PATH", ":memory:"),
            log_level=os.getenv("LOG_LEVEL", "INFO"),
            api_port=_env_int("API_PORT", 8001),
            extra_holidays=holidays,
        )
