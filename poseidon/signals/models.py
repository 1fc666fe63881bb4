# poseidon/signals/models.py
from __future__ import annotations

import math
from dataclasses import asdict, dataclass
from typing import Any, Dict, Mapping, Optional


def _num(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _first(d: Mapping[str, Any], *keys: str) -> Optional[float]:
    for k in keys:
        v = _num(d.get(k))
        if v is not None:
            return v
    return None


@dataclass(frozen=True)
class ScannerRow:
    symbol: str
    price: Optional[float] = None
    quote_volume: Optional[float] = None
    change_pct: Optional[float] = None

    @classmethod
    def from_payload(cls, d: Mapping[str, Any]) -> "ScannerRow":
        return cls(
            symbol=str(d.get("symbol") or "").upper(),
            price=_first(d, "price", "lastPrice"),
            quote_volume=_first(d, "quoteVolume24h", "quoteVolume", "quote_volume", "turnover", "volume"),
            change_pct=_first(d, "priceChgPct", "change", "change_pct"),
        )


@dataclass
class SignalAnalysisRecord:
    symbol: str
    signal: str
    confidence: int
    rsi: Optional[float]
    macd_signal: str
    bb_signal: str
    volume: float
    price: float
    trap_warning: bool
    volume_spike: bool
    open_position: bool = False
    skipped: bool = False
    reason: Optional[str] = None
    phase: Optional[str] = None
    category: str = "regular"
    manual: bool = False
    allocation_pct: int = 0
    corr: Optional[str] = None

    @property
    def side(self) -> str:
        return "short" if self.signal == "bearish" else "long"

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
