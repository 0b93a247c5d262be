"""
errors.py — Error taxonomy for the Fantasy Contest Engine.

  SessionError       broker session could not be established (propagated)
  LedgerError        portfolio validation failures (returned in LedgerResult)
  DataSourceFailure  upstream fetch failures (absorbed by the gateway)
  ContestError       contest membership errors (raised by the engine)
  ContestNotFound    unknown contest / portfolio id
"""

from __future__ import annotations


class SessionError(RuntimeError):
    """Broker credentials missing or session establishment failed."""


class DataSourceFailure(RuntimeError):
    """A quote/instrument/index/historical fetch failed upstream."""


class ContestError(ValueError):
    """Join/lookup errors at the contest level."""


class ContestNotFound(ContestError):
    """Unknown contest or portfolio id."""


# ─── Ledger Errors ────────────────────────────────────────────────────────────

class LedgerError(Exception):
    """Base class for rejected portfolio mutations. State is never changed."""
    code = "ledger_error"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict:
        return {"code": self.code, "message": self.message}


class Locked(LedgerError):
    code = "locked"


class InsufficientFunds(LedgerError):
    code = "insufficient_funds"


class ConcentrationLimitExceeded(LedgerError):
    code = "concentration_limit_exceeded"

    def __init__(
        self,
        message: str,
        current_value: float = 0.0,
        attempted: float = 0.0,
        max_additional: float = 0.0,
    ) -> None:
        super().__init__(message)
        self.current_value = current_value
        self.attempted = attempted
        self.max_additional = max_additional

    def to_dict(self) -> dict:
        data = super().to_dict()
        data.update({
            "current_value": round(self.current_value, 2),
            "attempted": round(self.attempted, 2),
            "max_additional": round(self.max_additional, 2),
        })
        return data


class InvalidPick(LedgerError):
    code = "invalid_pick"


class InvalidOrder(LedgerError):
    code = "invalid_order"
