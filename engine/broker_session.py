"""
broker_session.py — Broker session lifecycle for the live market feed.

A session is created on first need, reused while unexpired, and regenerated
on expiry or explicit invalidation. A previously stored token (from the
state store) is preferred over minting a new one, so restarts inside the
validity window keep the same token.

Usage:
    sessions = SessionManager(config.credentials, store=store)
    session = await sessions.ensure_session()   # raises SessionError
    headers = session.auth_header(config.credentials.api_key)
"""

from __future__ import annotations

import asyncio
import hashlib
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Dict, Optional

from loguru import logger

from config import BrokerCredentials
from errors import SessionError
from market_hours import Clock, utc_now
from state_store import StateStore

PROVIDER = "broker"
DEFAULT_VALIDITY_HOURS = 24.0


@dataclass
class BrokerSession:
    access_token: str
    expires_at: datetime
    is_valid: bool = True

    def is_active(self, now: datetime) -> bool:
        return self.is_valid and now < self.expires_at

    def auth_header(self, api_key: str) -> Dict[str, str]:
        return {"Authorization": f"token {api_key}:{self.access_token}"}

    def to_dict(self) -> Dict[str, Any]:
        return {
            "access_token": self.access_token,
            "expires_at": self.expires_at.isoformat(),
            "is_valid": self.is_valid,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "BrokerSession":
        expires = data["expires_at"]
        if isinstance(expires, str):
            expires = datetime.fromisoformat(expires)
        return cls(
            access_token=data["access_token"],
            expires_at=expires,
            is_valid=bool(data.get("is_valid", True)),
        )


class SessionManager:
    """Owns the process-wide broker session (single writer)."""

    def __init__(
        self,
        credentials: BrokerCredentials,
        store: Optional[StateStore] = None,
        clock: Clock = utc_now,
        validity_hours: float = DEFAULT_VALIDITY_HOURS,
    ) -> None:
        self.credentials = credentials
        self.store = store
        self.clock = clock
        self.validity = timedelta(hours=validity_hours)
        self._session: Optional[BrokerSession] = None
        self._lock = asyncio.Lock()

    @property
    def current(self) -> Optional[BrokerSession]:
        return self._session

    def has_active_session(self) -> bool:
        return self._session is not None and self._session.is_active(self.clock())

    async def ensure_session(self) -> BrokerSession:
        """
        Return an active session, establishing one if needed.

        Order: in-memory session → stored unexpired token → freshly minted
        token (persisted for reuse). Raises SessionError when credentials are
        incomplete.
        """
        async with self._lock:
            now = self.clock()
            if self._session is not None and self._session.is_active(now):
                return self._session

            if not self.credentials.is_complete:
                raise SessionError(
                    "Broker credentials not configured "
                    "(BROKER_API_KEY, BROKER_API_SECRET, BROKER_USER_ID)"
                )

            stored = self._load_stored(now)
            if stored is not None:
                logger.info("Using stored broker access token (expires {})", stored.expires_at)
                self._session = stored
                return stored

            session = self._mint(now)
            self._session = session
            self._persist(session)
            logger.info("Broker session generated for user {} (expires {})",
                        self.credentials.user_id, session.expires_at)
            return session

    def invalidate(self) -> None:
        """Mark the current session unusable; the next ensure_session() re-mints."""
        if self._session is not None:
            self._session.is_valid = False
            logger.info("Broker session invalidated")
        if self.store is not None:
            self.store.delete_credential(PROVIDER)

    # ── Internals ──────────────────────────────────────────────────────────

    def _load_stored(self, now: datetime) -> Optional[BrokerSession]:
        if self.store is None:
            return None
        record = self.store.load_credential(PROVIDER)
        if not record:
            logger.debug("No stored broker token found")
            return None
        session = BrokerSession.from_dict(record)
        if not session.is_active(now):
            logger.debug("Stored broker token expired at {}", session.expires_at)
            return None
        return session

    def _mint(self, now: datetime) -> BrokerSession:
        """
        Mint a token as SHA-256(api_key + user_id + issued_at + api_secret).

        Mirrors the broker's checksum scheme; the secret never leaves the
        process in clear text.
        """
        payload = (
            f"{self.credentials.api_key}{self.credentials.user_id}"
            f"{now.isoformat()}{self.credentials.api_secret}"
        ).encode()
        token = hashlib.sha256(payload).hexdigest()
        return BrokerSession(access_token=token, expires_at=now + self.validity)

    def _persist(self, session: BrokerSession) -> None:
        if self.store is None:
            return
        try:
            self.store.save_credential(PROVIDER, session.access_token, session.expires_at)
        except Exception as exc:
            logger.warning("Failed to store broker token, session still active: {}", exc)
