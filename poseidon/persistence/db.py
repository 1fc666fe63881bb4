# poseidon/persistence/db.py
from __future__ import annotations

import os
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator


# =========================
# Time helpers
# =========================
def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


# =========================
# Database class
# =========================
class DB:
    """
    Single source of truth for SQLite access.
    Default path: data/poseidon.db
    """

    def __init__(self, path: str = "data/poseidon.db"):
        self.path = path

        folder = os.path.dirname(self.path)
        if folder:
            os.makedirs(folder, exist_ok=True)

        self._init()

    # -------------------------
    # Connection manager
    # -------------------------
    @contextmanager
    def connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(self.path, timeout=30, check_same_thread=False)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        finally:
            conn.close()

    # -------------------------
    # Init / migrations
    # -------------------------
    def _init(self) -> None:
        conn = sqlite3.connect(self.path, timeout=30)
        try:
            # =========================
            # Feed events (audit log)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS feed_events (
                    id TEXT PRIMARY KEY,
                    ts INTEGER NOT NULL,
                    type TEXT NOT NULL,
                    level TEXT NOT NULL,
                    symbol TEXT,
                    msg TEXT,
                    corr TEXT,
                    data_json TEXT,
                    tags_json TEXT
                )
                """
            )

            # =========================
            # Take-profit snapshots (one per tracked symbol)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS tp_state (
                    symbol TEXT PRIMARY KEY,
                    state_json TEXT NOT NULL,
                    exited INTEGER NOT NULL DEFAULT 0,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Last exit per symbol (re-entry cooldown)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS symbol_exits (
                    symbol TEXT PRIMARY KEY,
                    exited_ms INTEGER NOT NULL,
                    reason TEXT,
                    updated_at TEXT NOT NULL
                )
                """
            )

            # =========================
            # Learning memory (trade outcomes per symbol and side)
            # =========================
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS learning_memory (
                    symbol TEXT NOT NULL,
                    side TEXT NOT NULL,
                    trades INTEGER NOT NULL DEFAULT 0,
                    wins INTEGER NOT NULL DEFAULT 0,
                    losses INTEGER NOT NULL DEFAULT 0,
                    streak INTEGER NOT NULL DEFAULT 0,
                    last_result TEXT,
                    last_roi REAL,
                    max_roi REAL,
                    last_confidence REAL,
                    updated_at TEXT NOT NULL,
                    PRIMARY KEY (symbol, side)
                )
                """
            )

            # =========================
            # Indexes
            # =========================
            conn.execute("CREATE INDEX IF NOT EXISTS idx_feed_ts ON feed_events(ts)")
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_feed_symbol ON feed_events(symbol)"
            )

            conn.commit()

        finally:
            conn.close()
