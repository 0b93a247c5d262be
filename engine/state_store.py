"""
state_store.py — SQLite snapshot store for the Fantasy Contest Engine.

Contests, portfolios and the EOD cache are stored as plain JSON records
keyed by (kind, key). Broker access tokens get their own table so a
restarted process can reuse an unexpired token.

Schema:
    CREATE TABLE api_credentials (
        provider     TEXT PRIMARY KEY,
        access_token TEXT NOT NULL,
        expires_at   TEXT NOT NULL,
        updated_at   TEXT NOT NULL
    );
    CREATE TABLE snapshots (
        kind       TEXT NOT NULL,
        key        TEXT NOT NULL,
        payload    TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        PRIMARY KEY (kind, key)
    );

Usage:
    store = StateStore()                      # in-memory (tests)
    store = StateStore("/data/contests.db")   # persistent
    store.save_snapshot("portfolio", "p-1", ledger.to_dict())
    data = store.load_snapshot("portfolio", "p-1")
"""

from __future__ import annotations

import json
import sqlite3
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional


# ─── Constants ────────────────────────────────────────────────────────────────

SNAPSHOT_KINDS = frozenset({"contest", "portfolio", "eod_cache"})

_CREATE_CREDENTIALS = """
CREATE TABLE IF NOT EXISTS api_credentials (
    provider     TEXT PRIMARY KEY,
    access_token TEXT NOT NULL,
    expires_at   TEXT NOT NULL,
    updated_at   TEXT NOT NULL
)
"""

_CREATE_SNAPSHOTS = """
CREATE TABLE IF NOT EXISTS snapshots (
    kind       TEXT NOT NULL,
    key        TEXT NOT NULL,
    payload    TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    PRIMARY KEY (kind, key)
)
"""


class StateStoreError(Exception):
    """Raised on invalid snapshot kinds or unreadable payloads."""


# ─── StateStore ───────────────────────────────────────────────────────────────

class StateStore:
    """
    SQLite-backed key/value store for engine records.

    Parameters
    ----------
    db_path : str
        Path to the SQLite database file, or ":memory:" (default).
    """

    def __init__(self, db_path: str = ":memory:") -> None:
        self.db_path = db_path
        self._lock = threading.Lock()
        self._conn: sqlite3.Connection = sqlite3.connect(db_path, check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._init_schema()

    def _init_schema(self) -> None:
        with self._conn:
            self._conn.execute(_CREATE_CREDENTIALS)
            self._conn.execute(_CREATE_SNAPSHOTS)

    def close(self) -> None:
        self._conn.close()

    def __enter__(self) -> "StateStore":
        return self

    def __exit__(self, *_) -> None:
        self.close()

    # ── Credentials ────────────────────────────────────────────────────────

    def save_credential(self, provider: str, access_token: str, expires_at: datetime) -> None:
        now = datetime.now(timezone.utc).isoformat()
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO api_credentials (provider, access_token, expires_at, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(provider) DO UPDATE SET
                    access_token = excluded.access_token,
                    expires_at   = excluded.expires_at,
                    updated_at   = excluded.updated_at
                """,
                (provider, access_token, expires_at.isoformat(), now),
            )

    def load_credential(self, provider: str) -> Optional[Dict[str, Any]]:
        """Return {"access_token", "expires_at"} for provider, or None."""
        with self._lock:
            row = self._conn.execute(
                "SELECT access_token, expires_at FROM api_credentials WHERE provider = ?",
                (provider,),
            ).fetchone()
        if row is None:
            return None
        return {
            "access_token": row["access_token"],
            "expires_at": datetime.fromisoformat(row["expires_at"]),
        }

    def delete_credential(self, provider: str) -> None:
        with self._lock, self._conn:
            self._conn.execute("DELETE FROM api_credentials WHERE provider = ?", (provider,))

    # ── Snapshots ──────────────────────────────────────────────────────────

    @staticmethod
    def _check_kind(kind: str) -> None:
        if kind not in SNAPSHOT_KINDS:
            raise StateStoreError(f"kind must be one of {sorted(SNAPSHOT_KINDS)}, got {kind!r}")

    def save_snapshot(self, kind: str, key: str, payload: Dict[str, Any]) -> None:
        self._check_kind(kind)
        now = datetime.now(timezone.utc).isoformat()
        body = json.dumps(payload, sort_keys=True)
        with self._lock, self._conn:
            self._conn.execute(
                """
                INSERT INTO snapshots (kind, key, payload, updated_at)
                VALUES (?, ?, ?, ?)
                ON CONFLICT(kind, key) DO UPDATE SET
                    payload    = excluded.payload,
                    updated_at = excluded.updated_at
                """,
                (kind, key, body, now),
            )

    def load_snapshot(self, kind: str, key: str) -> Optional[Dict[str, Any]]:
        self._check_kind(kind)
        with self._lock:
            row = self._conn.execute(
                "SELECT payload FROM snapshots WHERE kind = ? AND key = ?",
                (kind, key),
            ).fetchone()
        if row is None:
            return None
        try:
            return json.loads(row["payload"])
        except json.JSONDecodeError as exc:
            raise StateStoreError(f"Corrupt {kind} snapshot {key!r}: {exc}") from exc

    def load_all(self, kind: str) -> List[Dict[str, Any]]:
        self._check_kind(kind)
        with self._lock:
            rows = self._conn.execute(
                "SELECT payload FROM snapshots WHERE kind = ? ORDER BY key", (kind,)
            ).fetchall()
        return [json.loads(r["payload"]) for r in rows]

    def count(self, kind: str) -> int:
        self._check_kind(kind)
        with self._lock:
            row = self._conn.execute(
                "SELECT COUNT(*) AS n FROM snapshots WHERE kind = ?", (kind,)
            ).fetchone()
        return int(row["n"])
