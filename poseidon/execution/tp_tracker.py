# poseidon/execution/tp_tracker.py
from __future__ import annotations

import asyncio
import logging
import math
from collections import defaultdict
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, Callable, Dict, Mapping, Optional, Union

from poseidon.execution.exit_policy import ExitPolicy, LadderTrailPolicy, build_policy
from poseidon.execution.interfaces import Executor, FeedSink
from poseidon.execution.tp_models import (
    ExitAction,
    OpenPosition,
    PositionTrackState,
    Side,
    TickInput,
    TpConfig,
)
from poseidon.feed.types import FeedType, make_feed, now_ms

log = logging.getLogger("poseidon.tp")


def _positive(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    if not math.isfinite(f) or f <= 0:
        return None
    return f


def _key(symbol: Any) -> str:
    return str(symbol or "").strip().upper()


def _fmt(v: Optional[float]) -> str:
    return "--" if v is None else f"{v:.6g}"


class TpTracker:
    """
    Take-profit ladder + trailing stop for every open position.

    All per-symbol work (open, update, mark_exited, reset) runs under that symbol's
    asyncio.Lock, so two ticks for the same symbol never interleave and a step can't
    fire twice. Executor calls are bounded by config.call_timeout_s; a failed or
    timed-out call leaves the state as it was before the call.
    """

    def __init__(
        self,
        executor: Executor,
        feed: Optional[FeedSink] = None,
        config: Optional[TpConfig] = None,
        policy: Optional[ExitPolicy] = None,
        store=None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.executor = executor
        self.feed = feed
        self.config = config or TpConfig()
        self.policy = policy.with_config(self.config) if policy else LadderTrailPolicy(self.config)
        self.store = store
        self._clock = clock or now_ms

        self._states: Dict[str, PositionTrackState] = {}
        self._locks: Dict[str, asyncio.Lock] = defaultdict(asyncio.Lock)
        self._lock_users: Dict[str, int] = defaultdict(int)

    @asynccontextmanager
    async def _symbol_lock(self, key: str) -> AsyncIterator[None]:
        # the lock is dropped once nobody holds or waits on it and the symbol is untracked
        self._lock_users[key] += 1
        try:
            async with self._locks[key]:
                yield
        finally:
            self._lock_users[key] -= 1
            if self._lock_users[key] <= 0 and key not in self._states:
                self._lock_users.pop(key, None)
                self._locks.pop(key, None)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    async def open(
        self, position: Union[OpenPosition, Mapping[str, Any]]
    ) -> Optional[PositionTrackState]:
        pos = position if isinstance(position, OpenPosition) else OpenPosition.from_mapping(position)
        symbol = _key(pos.symbol)
        entry = _positive(pos.entry_price)
        size = _positive(pos.size)
        if not symbol or entry is None or size is None:
            log.debug("open ignored, bad position: %s", pos)
            return None

        async with self._symbol_lock(symbol):
            existing = self._states.get(symbol)
            if existing is not None:
                return existing

            st = PositionTrackState(
                symbol=symbol,
                side=Side.parse(pos.side),
                entry_price=entry,
                size=size,
                original_size=size,
                lot_size=_positive(pos.lot_size) or 1.0,
                min_size=_positive(pos.min_size) or 0.0,
                initial_margin=_positive(pos.initial_margin),
                peak_price=entry,
                opened_at=self._clock(),
            )
            st.push_confidence(_positive(pos.confidence))
            self._states[symbol] = st
            self._persist(st)

            self._emit_once(
                st,
                "TP tracking started",
                {
                    "side": st.side.value,
                    "entry": entry,
                    "size": size,
                    "initialMargin": st.initial_margin,
                    "policy": self.policy.name,
                },
            )
            return st

    # original callers used init()
    init = open

    async def mark_exited(self, symbol: str) -> Optional[PositionTrackState]:
        key = _key(symbol)
        if key not in self._states:
            return None
        async with self._symbol_lock(key):
            st = self._states.get(key)
            if st is None or st.exited:
                return st
            st.exited = True
            st.trail_active = False
            st.notes = "Exited"
            self._persist(st)
            return st

    on_exit = mark_exited

    async def reset(self, symbol: str) -> bool:
        key = _key(symbol)
        async with self._symbol_lock(key):
            existed = self._states.pop(key, None) is not None
            if self.store is not None:
                try:
                    self.store.delete(key)
                except Exception:
                    log.exception("tp snapshot delete failed for %s", key)
        if existed:
            log.info("tp state reset for %s", key)
        return existed

    def restore(self) -> int:
        """Reload non-exited snapshots from the store (call before the loops start)."""
        if self.store is None:
            return 0
        restored = 0
        for symbol, st in self.store.load_active().items():
            if symbol in self._states:
                continue
            self._states[symbol] = st
            restored += 1
        if restored:
            log.info("restored %d tp state(s) from store", restored)
        return restored

    # ------------------------------------------------------------------
    # Config / status
    # ------------------------------------------------------------------
    def set_config(self, partial: Any) -> TpConfig:
        policy_name = None
        if isinstance(partial, Mapping) and "policy" in partial:
            partial = dict(partial)
            policy_name = partial.pop("policy")

        config = self.config.merged(partial)
        if policy_name:
            policy = build_policy(policy_name, config)
        else:
            policy = self.policy.with_config(config)
        self.config, self.policy = config, policy
        return config

    def get_status(self, symbol: str) -> Optional[PositionTrackState]:
        return self._states.get(_key(symbol))

    def statuses(self) -> Dict[str, PositionTrackState]:
        return dict(self._states)

    def is_tracking(self, symbol: str) -> bool:
        return _key(symbol) in self._states

    # ------------------------------------------------------------------
    # Tick
    # ------------------------------------------------------------------
    async def update(
        self, tick: Union[TickInput, Mapping[str, Any]]
    ) -> Optional[PositionTrackState]:
        t = tick if isinstance(tick, TickInput) else TickInput.from_mapping(tick)
        symbol = _key(t.symbol)
        price = _positive(t.current_price)
        if not symbol or price is None or symbol not in self._states:
            return None

        async with self._symbol_lock(symbol):
            st = self._states.get(symbol)
            if st is None or st.exited:
                return st
            await self._tick(st, t, price)
            self._persist(st)
            return st

    async def _tick(self, st: PositionTrackState, t: TickInput, price: float) -> None:
        policy = self.policy

        if st.initial_margin is None:
            st.initial_margin = _positive(t.initial_margin)

        roi = policy.roi(st, price)
        st.max_roi = max(st.max_roi, roi)
        st.last_roi = roi
        st.push_confidence(_positive(t.confidence))

        # --- ladder: several steps may be due after a gap ---
        partial_taken = False
        while True:
            intent = policy.next_partial(st, roi)
            if intent is None:
                break
            ok = await self._call(st, "partial_close", self.executor.partial_close, st.symbol, intent.qty)
            if not ok:
                break
            policy.apply_partial(st, intent, price)
            partial_taken = True
            self._emit_once(
                st,
                f"TP step {st.fired_steps} hit",
                {
                    "roi": round(roi, 2),
                    "triggerRoi": intent.trigger_roi,
                    "qty": intent.qty,
                    "remaining": st.size,
                    "trailStop": st.trail_stop,
                    "peak": st.peak_price,
                },
                level="success",
            )

        # --- peak / trailing stop ---
        if st.trail_active and policy.track_peak(st, price):
            self._emit_throttled(
                st,
                "New peak",
                {"peak": st.peak_price, "trailStop": st.trail_stop, "roi": round(roi, 2)},
            )

        # --- exit ---
        exit_allowed = policy.exits_on_partial_tick or not partial_taken
        if exit_allowed and st.trail_active and st.size > 0:
            reason = policy.exit_reason(st, price, roi, t)
            if reason:
                ok = await self._call(st, "close_all", self.executor.close_all, st.symbol)
                if ok:
                    st.exited = True
                    st.trail_active = False
                    st.last_action = ExitAction.EXIT_ALL.value
                    st.notes = f"Exited ({reason}) at {_fmt(price)} | ROI {roi:.2f}%"
                    self._emit_once(
                        st,
                        "Exit all",
                        {
                            "reason": reason,
                            "price": price,
                            "roi": round(roi, 2),
                            "maxRoi": round(st.max_roi, 2),
                            "trailStop": st.trail_stop,
                            "confidence": t.confidence,
                            "phase": t.trend_phase,
                        },
                        level="success",
                    )
                    return

        # --- status ---
        st.notes = (
            f"ROI {roi:.2f}% | max {st.max_roi:.2f}% | steps {st.fired_steps} | "
            f"size {_fmt(st.size)} | trail {_fmt(st.trail_stop) if st.trail_active else 'off'}"
        )
        self._emit_throttled(st, st.notes, {"roi": round(roi, 2), "price": price})

    # ------------------------------------------------------------------
    # Side effects
    # ------------------------------------------------------------------
    async def _call(self, st: PositionTrackState, action: str, fn, *args) -> bool:
        timeout = self.config.call_timeout_s
        try:
            await asyncio.wait_for(fn(*args), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            err = f"timed out after {timeout}s"
        except Exception as e:
            err = str(e) or type(e).__name__

        log.warning("%s failed for %s: %s", action, st.symbol, err)
        self._emit(
            FeedType.ERROR,
            st.symbol,
            f"{action} failed",
            {"error": err, "size": st.size, "firedSteps": st.fired_steps},
            level="error",
        )
        return False

    def _emit_once(self, st: PositionTrackState, msg: str, data: Dict[str, Any], level: str = "info") -> None:
        self._emit(FeedType.TP, st.symbol, msg, data, level=level)

    def _emit_throttled(self, st: PositionTrackState, msg: str, data: Dict[str, Any]) -> None:
        now = self._clock()
        if now - st.last_emit_at < self.config.emit_throttle_ms:
            return
        st.last_emit_at = now
        self._emit(FeedType.TP, st.symbol, msg, data, level="debug")

    def _emit(self, kind: FeedType, symbol: str, msg: str, data: Dict[str, Any], level: str = "info") -> None:
        if self.feed is None:
            return
        try:
            self.feed.emit(make_feed(kind, symbol, msg, data, level=level, tags=["tp"]))
        except Exception:
            log.exception("feed emit failed")

    def _persist(self, st: PositionTrackState) -> None:
        if self.store is None:
            return
        try:
            self.store.save(st)
        except Exception:
            log.exception("tp snapshot save failed for %s", st.symbol)
