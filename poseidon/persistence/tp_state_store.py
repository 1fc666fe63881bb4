# poseidon/persistence/tp_state_store.py

from __future__ import annotations

import json
from typing import Dict, Optional

from poseidon.execution.tp_models import PositionTrackState
from poseidon.persistence.db import DB, utc_now_iso


class TpStateStore:
    """Key/value snapshots of PositionTrackState, keyed by symbol."""

    def __init__(self, db: DB):
        self.db = db

    # ---------- TP SNAPSHOTS ----------
    def save(self, st: PositionTrackState) -> None:
        """
        UPSERT the snapshot (safe across restarts).
        """
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO tp_state(symbol, state_json, exited, updated_at)
                VALUES (?,?,?,?)
                ON CONFLICT(symbol) DO UPDATE SET
                    state_json=excluded.state_json,
                    exited=excluded.exited,
                    updated_at=excluded.updated_at
                """,
                (
                    st.symbol.upper(),
                    json.dumps(st.to_dict()),
                    1 if st.exited else 0,
                    utc_now_iso(),
                ),
            )

    def load(self, symbol: str) -> Optional[PositionTrackState]:
        with self.db.connect() as conn:
            row = conn.execute(
                "SELECT state_json FROM tp_state WHERE symbol = ?",
                (symbol.upper(),),
            ).fetchone()
        if not row:
            return None
        return PositionTrackState.from_dict(json.loads(row["state_json"]))

    def load_active(self) -> Dict[str, PositionTrackState]:
        """
        Returns typed states (not raw dicts) for every non-exited snapshot.
        """
        out: Dict[str, PositionTrackState] = {}

        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT symbol, state_json FROM tp_state WHERE exited = 0"
            ).fetchall()

        for r in rows:
            sym = (r["symbol"] or "").upper()
            if not sym:
                continue
            out[sym] = PositionTrackState.from_dict(json.loads(r["state_json"]))

        return out

    def delete(self, symbol: str) -> None:
        with self.db.connect() as conn:
            conn.execute("DELETE FROM tp_state WHERE symbol = ?", (symbol.upper(),))

    # ---------- EXITS (re-entry cooldown) ----------
    def record_exit(self, symbol: str, exited_ms: int, reason: str = "") -> None:
        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO symbol_exits(symbol, exited_ms, reason, updated_at)
                VALUES (?,?,?,?)
                ON CONFLICT(symbol) DO UPDATE SET
                    exited_ms=excluded.exited_ms,
                    reason=excluded.reason,
                    updated_at=excluded.updated_at
                """,
                (symbol.upper(), int(exited_ms), reason, utc_now_iso()),
            )

    def load_exits(self) -> Dict[str, int]:
        with self.db.connect() as conn:
            rows = conn.execute("SELECT symbol, exited_ms FROM symbol_exits").fetchall()
        return {r["symbol"]: int(r["exited_ms"] or 0) for r in rows}
