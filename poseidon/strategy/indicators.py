from __future__ import annotations

import math
from typing import List, Optional, Tuple


def ema_series(values: List[float], period: int) -> List[float]:
    """
    EMA seeded with the SMA of the first `period` values.
    Returns len(values) - period + 1 points, aligned to the end of `values`.
    """
    if period <= 0 or len(values) < period:
        return []
    k = 2 / (period + 1)
    e = sum(values[:period]) / float(period)
    out = [e]
    for v in values[period:]:
        e = v * k + e * (1 - k)
        out.append(e)
    return out


def rsi(closes: List[float], period: int = 14) -> Optional[float]:
    """Simple (non-smoothed) RSI over the last `period` moves. A window without losses divides by 1."""
    if len(closes) < period + 1:
        return None
    gains = 0.0
    losses = 0.0
    for i in range(-period, 0):
        diff = closes[i] - closes[i - 1]
        if diff >= 0:
            gains += diff
        else:
            losses -= diff
    rs = gains / (losses or 1)
    return 100 - 100 / (1 + rs)


def macd_lines(
    closes: List[float], fast: int = 12, slow: int = 26, signal: int = 9
) -> Optional[Tuple[float, float]]:
    """Last (macd, signal) pair, or None without enough closes."""
    fast_s = ema_series(closes, fast)
    slow_s = ema_series(closes, slow)
    if not slow_s:
        return None
    # align fast to slow: both end on the last close
    fast_s = fast_s[len(fast_s) - len(slow_s):]
    macd = [f - s for f, s in zip(fast_s, slow_s)]
    sig = ema_series(macd, signal)
    if not sig:
        return None
    return macd[-1], sig[-1]


def macd_histogram(
    closes: List[float], fast: int = 12, slow: int = 26, signal: int = 9
) -> float:
    lines = macd_lines(closes, fast, slow, signal)
    if lines is None:
        return 0.0
    return lines[0] - lines[1]


def bollinger(
    closes: List[float], period: int = 20, mult: float = 2.0
) -> Optional[Tuple[float, float, float]]:
    """(lower, mid, upper) with population standard deviation."""
    if len(closes) < period:
        return None
    window = closes[-period:]
    mid = sum(window) / float(period)
    var = sum((c - mid) ** 2 for c in window) / float(period)
    sd = math.sqrt(var)
    return mid - mult * sd, mid, mid + mult * sd


def pct_change(now: float, then: float) -> float:
    if not then:
        return 0.0
    return (now - then) / then * 100
