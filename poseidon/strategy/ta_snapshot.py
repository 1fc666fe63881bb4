# poseidon/strategy/ta_snapshot.py
from __future__ import annotations

import math
from dataclasses import asdict, dataclass, field
from typing import Any, Dict, List, Mapping, Optional

from poseidon.strategy.indicators import bollinger, macd_lines, rsi

MIN_TA_CANDLES = 50
SPIKE_MULT = 1.5
VOLUME_LOOKBACK = 20


def _range() -> Dict[str, float]:
    return {"high": 0.0, "low": 0.0}


def _f(v: Any) -> Optional[float]:
    try:
        x = float(v)
    except (TypeError, ValueError):
        return None
    return x if math.isfinite(x) else None


@dataclass
class TaSnapshot:
    symbol: str
    price: float = 0.0
    signal: str = "neutral"  # bullish/bearish/neutral
    rsi: Optional[float] = None
    macd_signal: str = "neutral"  # buy/sell/neutral
    bb_signal: str = "neutral"  # upper/lower/neutral
    volume_spike: bool = False
    trap_warning: bool = False
    quote_volume: float = 0.0
    range_24h: Dict[str, float] = field(default_factory=_range)
    range_7d: Dict[str, float] = field(default_factory=_range)
    range_30d: Dict[str, float] = field(default_factory=_range)

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_payload(cls, symbol: str, data: Mapping[str, Any]) -> "TaSnapshot":
        """Build from a TA endpoint payload (camelCase keys)."""

        def rng(key: str, alt: str) -> Dict[str, float]:
            r = data.get(key) or data.get(alt) or {}
            return {"high": _f(r.get("high")) or 0.0, "low": _f(r.get("low")) or 0.0}

        return cls(
            symbol=symbol,
            price=_f(data.get("price")) or 0.0,
            signal=str(data.get("signal") or "neutral").lower(),
            rsi=_f(data.get("rsi")),
            macd_signal=str(data.get("macdSignal") or data.get("macd_signal") or "neutral").lower(),
            bb_signal=str(data.get("bbSignal") or data.get("bb_signal") or "neutral").lower(),
            volume_spike=bool(data.get("volumeSpike") or data.get("volume_spike")),
            trap_warning=bool(data.get("trapWarning") or data.get("trap_warning")),
            quote_volume=_f(data.get("quoteVolume") or data.get("quote_volume")) or 0.0,
            range_24h=rng("range24h", "range_24h"),
            range_7d=rng("range7D", "range_7d"),
            range_30d=rng("range30D", "range_30d"),
        )


def build_ta_snapshot(
    symbol: str,
    candles: List[List[Any]],
    ticker: Optional[Mapping[str, Any]] = None,
) -> Optional[TaSnapshot]:
    """
    Derive a TaSnapshot from 15m kline rows (oldest first):
    [start, open, high, low, close, volume, turnover].
    Returns None with fewer than 50 usable candles.
    """
    rows = []
    for c in candles or []:
        try:
            o, h, l, cl, v = (float(c[i]) for i in range(1, 6))
        except (TypeError, ValueError, IndexError):
            continue
        rows.append((o, h, l, cl, v))
    if len(rows) < MIN_TA_CANDLES:
        return None

    opens = [r[0] for r in rows]
    highs = [r[1] for r in rows]
    lows = [r[2] for r in rows]
    closes = [r[3] for r in rows]
    vols = [r[4] for r in rows]
    price = closes[-1]

    macd_signal = "neutral"
    lines = macd_lines(closes)
    if lines is not None:
        macd_signal = "buy" if lines[0] > lines[1] else "sell"

    bb_signal = "neutral"
    bands = bollinger(closes)
    if bands is not None:
        lower, _mid, upper = bands
        if price > upper:
            bb_signal = "upper"
        elif price < lower:
            bb_signal = "lower"

    window = vols[-VOLUME_LOOKBACK:]
    avg_vol = sum(window) / len(window)
    volume_spike = vols[-1] > SPIKE_MULT * avg_vol

    body = abs(opens[-1] - closes[-1])
    wick = highs[-1] - lows[-1]
    trap_warning = wick > 2 * (body or 1)

    # coarse ranges from the candle window
    window_range = {"high": max(highs), "low": min(lows)}

    quote_volume = None
    if ticker:
        quote_volume = _f(ticker.get("turnover24h"))
    if quote_volume is None:
        quote_volume = price * vols[-1]

    if macd_signal == "buy" and bb_signal != "lower":
        signal = "bullish"
    elif macd_signal == "sell" and bb_signal != "upper":
        signal = "bearish"
    else:
        signal = "neutral"

    return TaSnapshot(
        symbol=symbol,
        price=price,
        signal=signal,
        rsi=rsi(closes),
        macd_signal=macd_signal,
        bb_signal=bb_signal,
        volume_spike=volume_spike,
        trap_warning=trap_warning,
        quote_volume=quote_volume,
        range_24h=dict(window_range),
        range_7d=dict(window_range),
        range_30d=dict(window_range),
    )
