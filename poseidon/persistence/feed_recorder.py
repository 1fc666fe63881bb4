# poseidon/persistence/feed_recorder.py
from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, List

from poseidon.persistence.db import DB

log = logging.getLogger("poseidon.persistence")


class FeedRecorder:
    """
    FeedBus subscriber. DB is the source of truth;
    every event is also mirrored to logs/feed.jsonl.
    """

    def __init__(self, db: DB, jsonl_path: str = "logs/feed.jsonl"):
        self.db = db
        self.jsonl_path = Path(jsonl_path)

        # ensure logs folder + file exist
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            self.jsonl_path.touch(exist_ok=True)
        except OSError as e:
            log.warning("feed jsonl unavailable (%s): %s", self.jsonl_path, e)

    def __call__(self, event: Dict[str, Any]) -> None:
        self.record(event)

    def record(self, event: Dict[str, Any]) -> None:
        # 1) DB
        try:
            with self.db.connect() as conn:
                conn.execute(
                    """
                    INSERT OR IGNORE INTO feed_events(id, ts, type, level, symbol, msg, corr, data_json, tags_json)
                    VALUES (?,?,?,?,?,?,?,?,?)
                    """,
                    (
                        event["id"],
                        int(event["ts"]),
                        event["type"],
                        event["level"],
                        event.get("symbol"),
                        event.get("msg"),
                        event.get("corr"),
                        json.dumps(event.get("data") or {}, ensure_ascii=False, default=str),
                        json.dumps(event.get("tags") or [], ensure_ascii=False),
                    ),
                )
        except Exception:
            # never crash the trading loop because the audit write failed
            log.exception("feed event insert failed")

        # 2) JSONL mirror
        self._write_jsonl(event)

    def tail(self, limit: int = 50) -> List[Dict[str, Any]]:
        limit = max(1, min(int(limit), 500))
        with self.db.connect() as conn:
            rows = conn.execute(
                "SELECT * FROM feed_events ORDER BY ts DESC, rowid DESC LIMIT ?",
                (limit,),
            ).fetchall()

        out = []
        for r in rows[::-1]:
            out.append(
                {
                    "id": r["id"],
                    "ts": r["ts"],
                    "type": r["type"],
                    "level": r["level"],
                    "symbol": r["symbol"],
                    "msg": r["msg"],
                    "corr": r["corr"],
                    "data": json.loads(r["data_json"] or "{}"),
                    "tags": json.loads(r["tags_json"] or "[]"),
                }
            )
        return out

    def _write_jsonl(self, obj: Dict[str, Any]) -> None:
        try:
            self.jsonl_path.parent.mkdir(parents=True, exist_ok=True)
            with self.jsonl_path.open("a", encoding="utf-8") as f:
                f.write(json.dumps(obj, ensure_ascii=False, default=str) + "\n")
        except Exception:
            log.exception("feed jsonl write failed")
