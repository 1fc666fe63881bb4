from __future__ import annotations

import time
from typing import Callable, Dict, Optional, Tuple


def cooldown_ok(last_ms: int, now_ms: int, cooldown_seconds: float) -> bool:
    if cooldown_seconds <= 0 or last_ms <= 0:
        return True
    return (now_ms - last_ms) >= int(cooldown_seconds * 1000)


class SkipThrottle:
    """
    At most one pass per key inside `cooldown_seconds`.
    Used to keep repeated skip / error lines out of the feed.
    Keys whose window has passed are dropped, at most once per cooldown.
    """

    def __init__(
        self,
        cooldown_seconds: float = 15.0,
        clock: Optional[Callable[[], float]] = None,
    ):
        self.cooldown_seconds = cooldown_seconds
        self._clock = clock or time.monotonic
        self._last: Dict[str, Tuple[float, float]] = {}  # key -> (last pass, window)
        self._pruned_at = self._clock()

    def should_log(self, key: str, cooldown_seconds: Optional[float] = None) -> bool:
        window = self.cooldown_seconds if cooldown_seconds is None else cooldown_seconds
        now = self._clock()
        if now - self._pruned_at >= self.cooldown_seconds:
            self._prune(now)
        prev = self._last.get(key)
        if prev is not None and now - prev[0] < window:
            return False
        self._last[key] = (now, window)
        return True

    def _prune(self, now: float) -> None:
        self._pruned_at = now
        stale = [k for k, (ts, window) in self._last.items() if now - ts >= window]
        for k in stale:
            del self._last[k]

    def __len__(self) -> int:
        return len(self._last)

    def clear(self) -> None:
        self._last.clear()
