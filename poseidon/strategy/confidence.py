# poseidon/strategy/confidence.py
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional, Tuple

from poseidon.symbols.universe import classify_category

# ---------------------------------------------------------------------
# Session configuration
# ---------------------------------------------------------------------


def _default_windows() -> Dict[str, Tuple[int, int]]:
    return {
        "ASIA": (0, 7),
        "EUROPE": (8, 12),
        "US": (13, 20),
        "LATE": (21, 23),
    }


def _default_weights() -> Dict[str, float]:
    return {
        "weekend_damp": -2,
        "us_momentum": 3,
        "us_near_high_short": 2,
        "europe_momentum": 1,
        "asia_mean_rev_long": 3,
        "asia_overheated_trim": -2,
        "late_risk_off": -3,
        "late_runway": 2,
    }


@dataclass(frozen=True)
class SessionConfig:
    """
    Session windows are inclusive UTC hour ranges (shifted by utc_offset_hours).
    Weights are score points added by session_bias_points().
    """

    utc_offset_hours: int = 0
    windows: Dict[str, Tuple[int, int]] = field(default_factory=_default_windows)
    weights: Dict[str, float] = field(default_factory=_default_weights)

    def weight(self, key: str) -> float:
        return float(self.weights.get(key, 0) or 0)


DEFAULT_SESSION = SessionConfig()


@dataclass(frozen=True)
class SessionInfo:
    session: str
    hour: int
    weekday: int  # Monday=0 .. Sunday=6

    @property
    def is_weekend(self) -> bool:
        return self.weekday >= 5


def _in_window(hour: int, window: Tuple[int, int]) -> bool:
    start, end = window
    if start <= end:
        return start <= hour <= end
    # wraps midnight
    return hour >= start or hour <= end


def get_session_info(
    now: Optional[datetime] = None, session: Optional[SessionConfig] = None
) -> SessionInfo:
    cfg = session or DEFAULT_SESSION
    now = now or datetime.now(timezone.utc)
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    utc = now.astimezone(timezone.utc)

    hour = (utc.hour + int(cfg.utc_offset_hours or 0)) % 24
    name = "ASIA"
    for candidate in ("EUROPE", "US", "LATE", "ASIA"):
        window = cfg.windows.get(candidate)
        if window and _in_window(hour, window):
            name = candidate
            break
    # weekday stays on the UTC calendar
    return SessionInfo(session=name, hour=hour, weekday=utc.weekday())


# ---------------------------------------------------------------------
# Fibonacci helpers
# ---------------------------------------------------------------------

FIB_RATIOS = (0.236, 0.382, 0.5, 0.618, 0.786)


def compute_fib_levels(low: Any, high: Any) -> Optional[Dict[str, float]]:
    lo = _num(low)
    hi = _num(high)
    if lo is None or hi is None or not hi > lo:
        return None
    r = hi - lo
    levels = {"L": lo, "H": hi, "R": r}
    for ratio in FIB_RATIOS:
        key = "F" + str(int(round(ratio * 1000))).zfill(3)
        levels[key] = round(lo + r * ratio, 6)
    return levels


def fib_headroom(price: Any, fib: Optional[Mapping[str, float]], direction: str) -> Optional[Dict[str, Any]]:
    """Distance (percent) from price to the next fib level in the trade direction."""
    p = _num(price)
    if not fib or p is None or p == 0:
        return None
    levels = [fib[k] for k in ("F236", "F382", "F500", "F618", "F786", "H", "L") if k in fib]

    if direction == "long":
        above = sorted(v for v in levels if v > p)
        nxt = above[0] if above else fib["H"]
        return {"next": nxt, "headroom_pct": (nxt - p) / p * 100, "side": "resistance"}

    below = sorted((v for v in levels if v < p), reverse=True)
    nxt = below[0] if below else fib["L"]
    return {"next": nxt, "headroom_pct": (p - nxt) / p * 100, "side": "support"}


def _near_low(price: Optional[float], low: Optional[float], pct: float) -> bool:
    return price is not None and low is not None and low > 0 and (price - low) / low <= pct


def _near_high(price: Optional[float], high: Optional[float], pct: float) -> bool:
    return price is not None and high is not None and high > 0 and (high - price) / high <= pct


# ---------------------------------------------------------------------
# Session bias
# ---------------------------------------------------------------------


def session_bias_points(
    info: SessionInfo,
    direction: str,
    volume_spike: bool,
    rsi: Optional[float],
    price: Optional[float],
    range_24h: Optional[Mapping[str, Any]],
    headroom_pct: float,
    session: Optional[SessionConfig] = None,
) -> float:
    cfg = session or DEFAULT_SESSION
    rng = range_24h or {}
    low = _num(rng.get("low"))
    high = _num(rng.get("high"))
    pts = 0.0

    if info.is_weekend:
        pts += cfg.weight("weekend_damp")

    if info.session == "US":
        if volume_spike:
            pts += cfg.weight("us_momentum")
        if direction == "short" and _near_high(price, high, 0.012):
            pts += cfg.weight("us_near_high_short")
    elif info.session == "ASIA":
        if direction == "long" and _near_low(price, low, 0.015) and rsi is not None and rsi <= 45:
            pts += cfg.weight("asia_mean_rev_long")
        if volume_spike and rsi is not None and rsi >= 72:
            pts += cfg.weight("asia_overheated_trim")
    elif info.session == "EUROPE":
        if volume_spike:
            pts += cfg.weight("europe_momentum")
    elif info.session == "LATE":
        pts += cfg.weight("late_risk_off")
        if headroom_pct >= 6:
            pts += cfg.weight("late_runway")
    return pts


# ---------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------


def _num(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def _get(d: Mapping[str, Any], *keys: str) -> Any:
    for k in keys:
        if k in d and d[k] is not None:
            return d[k]
    return None


def _as_mapping(inputs: Any) -> Mapping[str, Any]:
    if inputs is None:
        return {}
    if isinstance(inputs, Mapping):
        return inputs
    if hasattr(inputs, "to_dict"):
        return inputs.to_dict()
    return vars(inputs)


def trade_direction(signal: str, macd: str) -> str:
    if signal == "bullish" or macd == "buy":
        return "long"
    if signal == "bearish" or macd == "sell":
        return "short"
    return "long"


def calculate_confidence(
    inputs: Any,
    *,
    now: Optional[datetime] = None,
    session: Optional[SessionConfig] = None,
    category: Optional[str] = None,
) -> int:
    """
    Heuristic 0..100 confidence for a TA snapshot.

    Accepts a TaSnapshot or a mapping (snake_case or camelCase keys). The result only
    depends on the inputs and `now`, so freezing `now` makes it deterministic.
    """
    d = _as_mapping(inputs)
    score = 50.0

    sig = str(_get(d, "signal") or "").lower()
    macd = str(_get(d, "macd_signal", "macdSignal") or "").lower()
    bb = str(_get(d, "bb_signal", "bbSignal") or "").lower()
    rsi = _num(_get(d, "rsi"))
    spike = bool(_get(d, "volume_spike", "volumeSpike"))
    trap = bool(_get(d, "trap_warning", "trapWarning"))
    price = _num(_get(d, "price"))

    # --- technical scaffolding ---
    if sig == "bullish":
        score += 10
    elif sig == "bearish":
        score -= 10

    if macd == "buy":
        score += 6
    elif macd == "sell":
        score -= 6

    if bb == "upper":
        score += 3
    elif bb == "lower":
        score -= 3

    if rsi is not None:
        if 55 <= rsi <= 68:
            score += 6
        if rsi < 35:
            score -= 6
        if rsi > 75:
            score -= 4

    if spike:
        score += 4
    if trap:
        score -= 12

    # --- fibonacci headroom on the 24h range ---
    rng = _get(d, "range_24h", "range24h") or {}
    low24 = _num(rng.get("low")) if isinstance(rng, Mapping) else None
    high24 = _num(rng.get("high")) if isinstance(rng, Mapping) else None
    fib = compute_fib_levels(low24, high24)
    direction = trade_direction(sig, macd)

    headroom_pct = 0.0
    if fib and price is not None:
        hr = fib_headroom(price, fib, direction)
        if hr:
            headroom_pct = float(hr["headroom_pct"] or 0.0)
            if headroom_pct >= 8:
                score += 10
            elif headroom_pct >= 5:
                score += 7
            elif headroom_pct >= 3:
                score += 4
            elif headroom_pct >= 1:
                score += 1
            else:
                score -= 10

            if direction == "long" and _near_low(price, low24, 0.02):
                score += 5
            if direction == "short" and _near_high(price, high24, 0.02):
                score += 5

            # late chase
            if direction == "long" and price >= fib["F618"]:
                score -= 5
            if direction == "short" and price <= fib["F382"]:
                score -= 5

    # --- session bias ---
    info = get_session_info(now, session)
    score += session_bias_points(
        info,
        direction,
        spike,
        rsi,
        price,
        rng if isinstance(rng, Mapping) else None,
        headroom_pct,
        session,
    )

    # --- category shaping ---
    cat = category or classify_category(
        str(_get(d, "symbol", "base") or ""), bool(_get(d, "is_mover", "isMover"))
    )
    if cat == "mover":
        score += 5
        if spike:
            score += 3
    elif cat == "meme":
        if spike:
            score += 2
        score = min(score, 90)

    score = max(0.0, min(100.0, score))

    # neutral or thin setups don't get to sit above 70
    if score >= 70 and (sig == "neutral" or (not spike and rsi is None)):
        score = max(65.0, score - 5)

    return int(math.floor(score + 0.5))
