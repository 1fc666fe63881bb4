# poseidon/strategy/trend_phase.py
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Optional

from poseidon.strategy.indicators import bollinger, macd_histogram, pct_change

log = logging.getLogger("poseidon.trend")

MIN_CANDLES = 50
CANDLE_INTERVAL = "15"
CANDLE_LIMIT = 100
# 4 x 15m candles back
HOUR_LOOKBACK = 4

BLOCKING_PHASES = {"peak", "reversal"}


@dataclass
class TrendPhase:
    phase: str
    change_1h: float = 0.0
    velocity: float = 0.0
    macd_histogram: float = 0.0
    bb_breakout: str = "none"
    reasons: List[str] = field(default_factory=list)
    reason: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def is_blocking(phase: Any) -> bool:
    name = phase.phase if isinstance(phase, TrendPhase) else str(phase or "")
    return name in BLOCKING_PHASES


def classify_phase(closes: List[float]) -> TrendPhase:
    """
    Pure phase classifier over 15m closes, oldest first.
    """
    if len(closes) < MIN_CANDLES:
        return TrendPhase(phase="unknown", reason="Insufficient candles")

    last = closes[-1]
    change_1h = pct_change(last, closes[-1 - HOUR_LOOKBACK])
    velocity = pct_change(last, closes[-2])
    hist = macd_histogram(closes)

    bb_breakout = "none"
    bands = bollinger(closes)
    if bands is not None:
        lower, _mid, upper = bands
        if last > upper:
            bb_breakout = "upper"
        elif last < lower:
            bb_breakout = "lower"

    phase = "neutral"
    reasons: List[str] = []

    if change_1h > 30 and velocity < 3 and hist < 0:
        phase = "peak"
        reasons.append("Price up >30% in 1h but slowing down")
        reasons.append("MACD histogram turning down")
    elif change_1h > 12 and hist > 0:
        phase = "pumping"
        reasons.append("Upward trend and MACD positive")
    elif hist < 0 and velocity < 0 and change_1h > 15:
        phase = "reversal"
        reasons.append("MACD down, price decelerating, possible top")
    elif bb_breakout == "upper":
        phase = "pumping"
        reasons.append("Close above upper Bollinger band")
    elif bb_breakout == "lower":
        phase = "reversal"
        reasons.append("Close below lower Bollinger band")

    return TrendPhase(
        phase=phase,
        change_1h=round(change_1h, 2),
        velocity=round(velocity, 2),
        macd_histogram=round(hist, 6),
        bb_breakout=bb_breakout,
        reasons=reasons,
    )


def closes_from_candles(candles: List[List[Any]]) -> List[float]:
    # kline rows: [start, open, high, low, close, volume, turnover]
    out: List[float] = []
    for c in candles or []:
        try:
            out.append(float(c[4]))
        except (TypeError, ValueError, IndexError):
            continue
    return out


class TrendPhaseDetector:
    """Fetches 15m candles and classifies the current trend phase."""

    def __init__(self, candles):
        self.candles = candles

    async def detect(self, symbol: str) -> TrendPhase:
        try:
            rows = await self.candles.fetch_candles(
                symbol, interval=CANDLE_INTERVAL, limit=CANDLE_LIMIT
            )
        except Exception as e:
            log.warning("trend phase fetch failed for %s: %s", symbol, e)
            return TrendPhase(phase="error", reason=str(e))

        return classify_phase(closes_from_candles(rows))
