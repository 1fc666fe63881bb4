# poseidon/execution/exit_policy.py
from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from poseidon.execution.quantity import round_qty, subtract_qty
from poseidon.execution.tp_models import (
    ExitAction,
    PositionTrackState,
    Side,
    TickInput,
    TpConfig,
    compute_trail_stop,
)

REVERSAL_PHASES = ("reversal", "peak")


@dataclass
class PartialIntent:
    step_index: int
    take: float
    qty: float
    trigger_roi: float


def position_pnl(st: PositionTrackState, price: float) -> float:
    if st.side == Side.SHORT:
        return (st.entry_price - price) * st.size
    return (price - st.entry_price) * st.size


def base_margin(st: PositionTrackState, fallback_ratio: float) -> float:
    if st.initial_margin is not None:
        return st.initial_margin
    # unknown margin: assume fallback_ratio of notional (0.2 ~ 5x leverage)
    return max(1e-9, st.entry_price * st.size * fallback_ratio)


def tighter_stop(side: Side, old: Optional[float], new: float) -> float:
    if old is None:
        return new
    if side == Side.SHORT:
        return min(old, new)
    return max(old, new)


def is_reversal_exit(tick: TickInput, min_exit_confidence: float) -> bool:
    if tick.trend_phase not in REVERSAL_PHASES or tick.confidence is None:
        return False
    return float(tick.confidence) < min_exit_confidence


class ExitPolicy:
    """
    Decides partial takes and the final exit for one tracked position.
    The tracker owns state, locking and side effects; a policy only reads and
    mutates the PositionTrackState it is handed.
    """

    name: str = "base"
    # whether exit_reason runs on the same tick a partial was taken
    exits_on_partial_tick: bool = True

    def __init__(self, config: TpConfig):
        self.config = config

    def with_config(self, config: TpConfig) -> "ExitPolicy":
        return type(self)(config)

    def roi(self, st: PositionTrackState, price: float) -> float:
        return position_pnl(st, price) / base_margin(st, self.config.margin_fallback_ratio) * 100

    def next_partial(self, st: PositionTrackState, roi: float) -> Optional[PartialIntent]:
        raise NotImplementedError

    def apply_partial(
        self, st: PositionTrackState, intent: PartialIntent, price: float
    ) -> None:
        raise NotImplementedError

    def track_peak(self, st: PositionTrackState, price: float) -> bool:
        raise NotImplementedError

    def exit_reason(
        self, st: PositionTrackState, price: float, roi: float, tick: TickInput
    ) -> Optional[str]:
        raise NotImplementedError

    def _reduce_qty(self, st: PositionTrackState, take: float) -> float:
        qty = round_qty(st.size * max(0.0, min(1.0, take)), st.lot_size, st.min_size)
        # a ladder take never closes the whole remainder, the exit path does that
        if not (qty > 0) or qty >= st.size:
            return 0.0
        return qty


class LadderTrailPolicy(ExitPolicy):
    """
    Take a fraction of the remaining size at each ROI step, arm a trailing stop on the
    first fill and tighten it by 5pp for every further step (floor 10%).
    """

    name = "ladder"

    def next_partial(self, st: PositionTrackState, roi: float) -> Optional[PartialIntent]:
        steps = self.config.resolved_steps()
        if st.fired_steps >= len(steps):
            return None
        step = steps[st.fired_steps]
        if roi < step.roi:
            return None

        min_rem = self.config.min_remainder_contracts
        if min_rem > 0 and st.size <= min_rem:
            return None

        qty = self._reduce_qty(st, step.take)
        if qty <= 0:
            return None
        return PartialIntent(
            step_index=st.fired_steps, take=step.take, qty=qty, trigger_roi=step.roi
        )

    def apply_partial(
        self, st: PositionTrackState, intent: PartialIntent, price: float
    ) -> None:
        st.size = subtract_qty(st.size, intent.qty)
        st.fired_steps += 1
        st.last_action = ExitAction.PARTIAL.value

        if not st.trail_active or st.favorable(price, st.peak_price):
            st.peak_price = price
        st.trail_active = True

        drop = self.config.effective_trail_drop(st.fired_steps)
        st.trail_stop = tighter_stop(
            st.side, st.trail_stop, compute_trail_stop(st.side, st.peak_price, drop)
        )

    def track_peak(self, st: PositionTrackState, price: float) -> bool:
        if not st.favorable(price, st.peak_price):
            return False
        st.peak_price = price
        drop = self.config.effective_trail_drop(max(st.fired_steps, 1))
        st.trail_stop = tighter_stop(
            st.side, st.trail_stop, compute_trail_stop(st.side, price, drop)
        )
        return True

    def exit_reason(
        self, st: PositionTrackState, price: float, roi: float, tick: TickInput
    ) -> Optional[str]:
        if st.trail_stop is not None:
            if st.side == Side.LONG and price <= st.trail_stop:
                return "trail_hit"
            if st.side == Side.SHORT and price >= st.trail_stop:
                return "trail_hit"
        if is_reversal_exit(tick, self.config.min_exit_confidence):
            return "reversal"
        return None


class SinglePartialPolicy(ExitPolicy):
    """
    Bank 40% once at ROI >= 100%, then exit the remainder when ROI gives back 30% of
    its high-water mark or the trend turns with weak confidence.
    """

    name = "single_partial"
    exits_on_partial_tick = False

    PARTIAL_PCT = 0.40
    TRIGGER_ROI = 100.0
    TRAIL_DROP_PCT = 30.0

    def roi(self, st: PositionTrackState, price: float) -> float:
        # measured on the margin still committed, so the partial isn't a drawdown
        if st.initial_margin is not None and st.original_size > 0:
            margin = max(1e-9, st.initial_margin * st.size / st.original_size)
        else:
            margin = base_margin(st, self.config.margin_fallback_ratio)
        return position_pnl(st, price) / margin * 100

    def next_partial(self, st: PositionTrackState, roi: float) -> Optional[PartialIntent]:
        if st.tp40_done or roi < self.TRIGGER_ROI:
            return None
        qty = self._reduce_qty(st, self.PARTIAL_PCT)
        if qty <= 0:
            return None
        return PartialIntent(
            step_index=0, take=self.PARTIAL_PCT, qty=qty, trigger_roi=self.TRIGGER_ROI
        )

    def apply_partial(
        self, st: PositionTrackState, intent: PartialIntent, price: float
    ) -> None:
        st.size = subtract_qty(st.size, intent.qty)
        st.fired_steps = 1
        st.trail_active = True
        st.peak_price = price
        st.last_action = ExitAction.PARTIAL_40.value

    def track_peak(self, st: PositionTrackState, price: float) -> bool:
        if not st.favorable(price, st.peak_price):
            return False
        st.peak_price = price
        return True

    def exit_reason(
        self, st: PositionTrackState, price: float, roi: float, tick: TickInput
    ) -> Optional[str]:
        if not st.tp40_done:
            return None
        floor = st.max_roi - st.max_roi * (self.TRAIL_DROP_PCT / 100)
        if roi < floor:
            return "trail_pullback"
        if is_reversal_exit(tick, self.config.min_exit_confidence):
            return "reversal"
        return None


POLICIES = {
    LadderTrailPolicy.name: LadderTrailPolicy,
    SinglePartialPolicy.name: SinglePartialPolicy,
}


def build_policy(name: str, config: TpConfig) -> ExitPolicy:
    key = (name or LadderTrailPolicy.name).lower().strip()
    if key not in POLICIES:
        raise ValueError(f"Unknown TP policy: {name}")
    return POLICIES[key](config)
