# poseidon/feed/types.py
from __future__ import annotations

import time
import uuid
from enum import Enum
from typing import Any, Dict, Iterable, Mapping, Optional

from poseidon.ops.context import get_corr_id


class FeedType(str, Enum):
    SCANNER = "scanner"
    TA = "ta"
    DECISION = "decision"
    TRADE = "trade"
    TP = "tp"
    ERROR = "error"
    SYSTEM = "system"


FEED_TYPES = {t.value for t in FeedType}
LEVELS = ("debug", "info", "success", "warn", "error")


def now_ms() -> int:
    return int(time.time() * 1000)


def make_feed(
    kind: Any,
    symbol: Optional[str] = None,
    msg: str = "",
    data: Optional[Mapping[str, Any]] = None,
    level: str = "info",
    tags: Optional[Iterable[str]] = None,
    corr: Optional[str] = None,
    ts: Optional[int] = None,
) -> Dict[str, Any]:
    """Build a feed event. Unknown kinds are published as 'system'."""
    k = str(kind.value if isinstance(kind, FeedType) else kind or "").lower()
    return {
        "id": uuid.uuid4().hex,
        "ts": int(ts) if ts is not None else now_ms(),
        "type": k if k in FEED_TYPES else FeedType.SYSTEM.value,
        "level": str(level or "info").lower(),
        "symbol": (symbol or "SYSTEM").upper(),
        "msg": msg or "",
        "data": dict(data or {}),
        "tags": list(tags or []),
        "corr": corr if corr is not None else get_corr_id(),
    }


def normalize_feed(e: Mapping[str, Any]) -> Dict[str, Any]:
    """Coerce a loosely shaped event (older producers, tests) to the feed shape."""
    data = dict(e.get("data") or {})
    try:
        ts = int(e.get("ts"))
    except (TypeError, ValueError):
        ts = now_ms()
    kind = str(e.get("type") or e.get("category") or "system").lower()
    return {
        "id": e.get("id") or uuid.uuid4().hex,
        "ts": ts,
        "type": kind if kind in FEED_TYPES else FeedType.SYSTEM.value,
        "level": str(e.get("level") or "info").lower(),
        "symbol": str(e.get("symbol") or e.get("sym") or "SYSTEM").upper(),
        "msg": e.get("msg") or e.get("message") or data.get("signal") or "",
        "data": data,
        "tags": list(e.get("tags") or []),
        "corr": e.get("corr"),
    }
