# poseidon/persistence/learning_memory.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from poseidon.execution.tp_models import Side
from poseidon.persistence.db import DB, utc_now_iso
from poseidon.symbols.universe import to_contract_symbol

log = logging.getLogger("poseidon.memory")

# a side goes cold after enough trades with a poor win rate and a losing run
COLD_MIN_TRADES = 8
COLD_MAX_WIN_RATE = 0.30
COLD_LOSS_STREAK = 3


@dataclass
class SideStats:
    trades: int = 0
    wins: int = 0
    losses: int = 0
    streak: int = 0  # >0 consecutive wins, <0 consecutive losses
    last_result: Optional[str] = None
    last_roi: Optional[float] = None
    max_roi: Optional[float] = None
    last_confidence: Optional[float] = None

    @property
    def win_rate(self) -> float:
        return self.wins / self.trades if self.trades else 0.0

    @property
    def cold(self) -> bool:
        return (
            self.trades >= COLD_MIN_TRADES
            and self.win_rate < COLD_MAX_WIN_RATE
            and self.streak <= -COLD_LOSS_STREAK
        )

    def to_dict(self) -> Dict[str, Any]:
        d = asdict(self)
        d["win_rate"] = round(self.win_rate, 4)
        d["cold"] = self.cold
        return d


class LearningMemory:
    """
    Per-symbol, per-side trade outcomes. A trade is a win when its final ROI is
    positive; anything else counts as a loss.
    """

    def __init__(self, db: DB):
        self.db = db

    def record_result(
        self,
        symbol: str,
        side: Any,
        roi: float,
        max_roi: Optional[float] = None,
        confidence: Optional[float] = None,
    ) -> SideStats:
        key = to_contract_symbol(symbol) or str(symbol).upper()
        side_key = Side.parse(side).value
        won = roi > 0

        stats = self.get(key)[side_key]
        stats.trades += 1
        if won:
            stats.wins += 1
            stats.streak = stats.streak + 1 if stats.streak > 0 else 1
        else:
            stats.losses += 1
            stats.streak = stats.streak - 1 if stats.streak < 0 else -1
        stats.last_result = "win" if won else "loss"
        stats.last_roi = float(roi)
        stats.max_roi = float(max_roi) if max_roi is not None else stats.max_roi
        stats.last_confidence = float(confidence) if confidence is not None else stats.last_confidence

        with self.db.connect() as conn:
            conn.execute(
                """
                INSERT INTO learning_memory(
                    symbol, side, trades, wins, losses, streak,
                    last_result, last_roi, max_roi, last_confidence, updated_at
                )
                VALUES (?,?,?,?,?,?,?,?,?,?,?)
                ON CONFLICT(symbol, side) DO UPDATE SET
                    trades=excluded.trades,
                    wins=excluded.wins,
                    losses=excluded.losses,
                    streak=excluded.streak,
                    last_result=excluded.last_result,
                    last_roi=excluded.last_roi,
                    max_roi=excluded.max_roi,
                    last_confidence=excluded.last_confidence,
                    updated_at=excluded.updated_at
                """,
                (
                    key,
                    side_key,
                    stats.trades,
                    stats.wins,
                    stats.losses,
                    stats.streak,
                    stats.last_result,
                    stats.last_roi,
                    stats.max_roi,
                    stats.last_confidence,
                    utc_now_iso(),
                ),
            )

        log.info(
            "memory %s [%s] -> %s @ %.2f%% (W %d/%d, streak %d)",
            key, side_key, stats.last_result, roi, stats.wins, stats.trades, stats.streak,
        )
        return stats

    def get(self, symbol: str) -> Dict[str, SideStats]:
        key = to_contract_symbol(symbol) or str(symbol).upper()
        out = {Side.LONG.value: SideStats(), Side.SHORT.value: SideStats()}
        with self.db.connect() as conn:
            rows = conn.execute(
                """
                SELECT side, trades, wins, losses, streak,
                       last_result, last_roi, max_roi, last_confidence
                FROM learning_memory WHERE symbol = ?
                """,
                (key,),
            ).fetchall()
        for r in rows:
            out[r["side"]] = SideStats(
                trades=int(r["trades"]),
                wins=int(r["wins"]),
                losses=int(r["losses"]),
                streak=int(r["streak"]),
                last_result=r["last_result"],
                last_roi=r["last_roi"],
                max_roi=r["max_roi"],
                last_confidence=r["last_confidence"],
            )
        return out

    def is_cold(self, symbol: str, side: Any) -> bool:
        return self.get(symbol)[Side.parse(side).value].cold
