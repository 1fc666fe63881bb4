# poseidon/execution/tp_models.py
from __future__ import annotations

import math
from dataclasses import dataclass, field, fields, replace
from enum import Enum
from typing import Any, Callable, Dict, List, Mapping, Optional, Tuple

TRAIL_FLOOR = 0.10
TRAIL_TIGHTEN_PER_STEP = 0.05
CONFIDENCE_TREND_MAX = 50


class Side(str, Enum):
    LONG = "long"
    SHORT = "short"

    @classmethod
    def parse(cls, v: Any) -> "Side":
        # anything mentioning short (SHORT, sell-short, "short") is short, the rest long
        s = str(v or "long").lower()
        if "short" in s or s == "sell":
            return cls.SHORT
        return cls.LONG


class ExitAction(str, Enum):
    NONE = "none"
    PARTIAL = "partial"
    PARTIAL_40 = "partial_40"
    EXIT_ALL = "exit_all"


@dataclass(frozen=True)
class LadderStep:
    roi: float
    take: float


@dataclass(frozen=True)
class LadderSpec:
    step_pct: float = 50.0
    take_fraction: float = 0.25
    max_steps: int = 12


@dataclass(frozen=True)
class TpConfig:
    """
    Process-wide take-profit settings. Read-only during a tick; replaced through
    TpTracker.set_config().

    margin_fallback_ratio is the assumed initial-margin share of notional used when a
    position's real margin is unknown (entry * size * ratio). It is an approximation.
    """

    steps: Tuple[LadderStep, ...] = ()
    ladder: LadderSpec = LadderSpec()
    trail_drop_pct: float = 0.25
    min_exit_confidence: float = 60.0
    emit_throttle_ms: int = 1500
    min_remainder_contracts: float = 0.0
    margin_fallback_ratio: float = 0.2
    call_timeout_s: float = 10.0

    def resolved_steps(self) -> List[LadderStep]:
        if self.steps:
            valid = [
                LadderStep(roi=float(s.roi), take=float(s.take))
                for s in self.steps
                if math.isfinite(float(s.roi)) and math.isfinite(float(s.take)) and float(s.take) > 0
            ]
            return sorted(valid, key=lambda s: s.roi)
        return generate_steps(self.ladder)

    def effective_trail_drop(self, step_count: int) -> float:
        return effective_trail_drop(self.trail_drop_pct, step_count)

    def merged(self, partial: Any) -> "TpConfig":
        """
        Return a copy with the given keys overridden (mapping or TpConfig).
        Values are coerced to the field's type; a bad value raises ValueError and
        nothing is applied.
        """
        if partial is None:
            return self
        if isinstance(partial, TpConfig):
            return partial
        updates: Dict[str, Any] = {}
        names = {f.name for f in fields(self)}
        for k, v in dict(partial).items():
            if k not in names or v is None:
                continue
            if k == "steps":
                if not isinstance(v, (list, tuple)):
                    raise ValueError("steps must be a list")
                v = tuple(_coerce_step(s) for s in v)
            elif k == "ladder":
                if not isinstance(v, Mapping):
                    raise ValueError("ladder must be an object")
                v = _coerce_ladder(self.ladder, v)
            else:
                v = _coerce_field(k, v)
            updates[k] = v
        return replace(self, **updates)


# field -> (type, accepted range, description for the error)
_FIELD_RULES: Dict[str, Tuple[type, Callable[[float], bool], str]] = {
    "trail_drop_pct": (float, lambda f: 0 < f < 1, "in (0, 1)"),
    "min_exit_confidence": (float, lambda f: 0 <= f <= 100, "in [0, 100]"),
    "emit_throttle_ms": (int, lambda f: f >= 0, ">= 0"),
    "min_remainder_contracts": (float, lambda f: f >= 0, ">= 0"),
    "margin_fallback_ratio": (float, lambda f: 0 < f <= 1, "in (0, 1]"),
    "call_timeout_s": (float, lambda f: f > 0, "> 0"),
}


def _number(name: str, v: Any) -> float:
    if isinstance(v, bool):
        raise ValueError(f"{name} must be a number, got {v!r}")
    try:
        f = float(v)
    except (TypeError, ValueError):
        raise ValueError(f"{name} must be a number, got {v!r}") from None
    if not math.isfinite(f):
        raise ValueError(f"{name} must be finite, got {v!r}")
    return f


def _coerce_field(name: str, v: Any) -> Any:
    kind, ok, expected = _FIELD_RULES[name]
    f = _number(name, v)
    if not ok(f):
        raise ValueError(f"{name} must be {expected}, got {v!r}")
    return int(f) if kind is int else f


def _coerce_ladder(base: LadderSpec, raw: Mapping[str, Any]) -> LadderSpec:
    updates: Dict[str, Any] = {}
    for k, v in raw.items():
        if v is None:
            continue
        if k == "step_pct":
            f = _number("ladder.step_pct", v)
            if f <= 0:
                raise ValueError(f"ladder.step_pct must be > 0, got {v!r}")
            updates[k] = f
        elif k == "take_fraction":
            f = _number("ladder.take_fraction", v)
            if not 0 < f <= 1:
                raise ValueError(f"ladder.take_fraction must be in (0, 1], got {v!r}")
            updates[k] = f
        elif k == "max_steps":
            f = _number("ladder.max_steps", v)
            if f < 1:
                raise ValueError(f"ladder.max_steps must be >= 1, got {v!r}")
            updates[k] = int(f)
        else:
            raise ValueError(f"unknown ladder key: {k}")
    return replace(base, **updates)


def _coerce_step(s: Any) -> LadderStep:
    if isinstance(s, LadderStep):
        roi, take = s.roi, s.take
    elif isinstance(s, Mapping):
        if "roi" not in s or "take" not in s:
            raise ValueError(f"step needs roi and take: {s!r}")
        roi, take = s["roi"], s["take"]
    else:
        try:
            roi, take = s
        except (TypeError, ValueError):
            raise ValueError(f"bad step: {s!r}") from None
    roi = _number("step.roi", roi)
    take = _number("step.take", take)
    if not 0 < take <= 1:
        raise ValueError(f"step.take must be in (0, 1], got {take!r}")
    return LadderStep(roi=roi, take=take)


def generate_steps(ladder: LadderSpec) -> List[LadderStep]:
    step = max(1.0, float(ladder.step_pct))
    take = max(0.0, min(1.0, float(ladder.take_fraction)))
    max_steps = max(1, int(ladder.max_steps))
    return [LadderStep(roi=k * step, take=take) for k in range(1, max_steps + 1)]


def effective_trail_drop(base_drop: float, step_count: int) -> float:
    # -5pp per step after the first, never below 10%
    base = max(0.0, min(1.0, float(base_drop or 0.25)))
    tighten = max(0, int(step_count) - 1) * TRAIL_TIGHTEN_PER_STEP
    return max(TRAIL_FLOOR, base - tighten)


def compute_trail_stop(side: Side, ref_price: float, drop_pct: float) -> float:
    k = max(0.0, min(1.0, float(drop_pct)))
    if side == Side.SHORT:
        return ref_price * (1 + k)
    return ref_price * (1 - k)


@dataclass
class PositionTrackState:
    symbol: str
    side: Side
    entry_price: float
    size: float
    original_size: float
    lot_size: float = 1.0
    min_size: float = 0.0
    initial_margin: Optional[float] = None

    fired_steps: int = 0
    trail_active: bool = False
    peak_price: float = 0.0
    trail_stop: Optional[float] = None

    max_roi: float = 0.0
    last_roi: Optional[float] = None
    exited: bool = False
    last_emit_at: int = 0
    last_action: str = ExitAction.NONE.value
    notes: str = "Tracking initialized"
    confidence_trend: List[float] = field(default_factory=list)
    opened_at: int = 0

    @property
    def tp40_done(self) -> bool:
        return self.fired_steps >= 1

    def favorable(self, price: float, ref: float) -> bool:
        """True when price is better than ref for this side."""
        if self.side == Side.SHORT:
            return price < ref
        return price > ref

    def push_confidence(self, confidence: Optional[float]) -> None:
        if confidence is None:
            return
        self.confidence_trend.append(float(confidence))
        if len(self.confidence_trend) > CONFIDENCE_TREND_MAX:
            del self.confidence_trend[: len(self.confidence_trend) - CONFIDENCE_TREND_MAX]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "symbol": self.symbol,
            "side": self.side.value,
            "entry_price": self.entry_price,
            "size": self.size,
            "original_size": self.original_size,
            "lot_size": self.lot_size,
            "min_size": self.min_size,
            "initial_margin": self.initial_margin,
            "fired_steps": self.fired_steps,
            "trail_active": self.trail_active,
            "peak_price": self.peak_price,
            "trail_stop": self.trail_stop,
            "max_roi": self.max_roi,
            "last_roi": self.last_roi,
            "exited": self.exited,
            "last_emit_at": self.last_emit_at,
            "last_action": self.last_action,
            "notes": self.notes,
            "confidence_trend": list(self.confidence_trend),
            "opened_at": self.opened_at,
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PositionTrackState":
        return cls(
            symbol=str(d["symbol"]),
            side=Side.parse(d.get("side")),
            entry_price=float(d["entry_price"]),
            size=float(d["size"]),
            original_size=float(d.get("original_size") or d["size"]),
            lot_size=float(d.get("lot_size") or 1.0),
            min_size=float(d.get("min_size") or 0.0),
            initial_margin=(
                float(d["initial_margin"]) if d.get("initial_margin") is not None else None
            ),
            fired_steps=int(d.get("fired_steps") or 0),
            trail_active=bool(d.get("trail_active")),
            peak_price=float(d.get("peak_price") or d["entry_price"]),
            trail_stop=float(d["trail_stop"]) if d.get("trail_stop") is not None else None,
            max_roi=float(d.get("max_roi") or 0.0),
            last_roi=float(d["last_roi"]) if d.get("last_roi") is not None else None,
            exited=bool(d.get("exited")),
            last_emit_at=int(d.get("last_emit_at") or 0),
            last_action=str(d.get("last_action") or ExitAction.NONE.value),
            notes=str(d.get("notes") or ""),
            confidence_trend=[float(x) for x in d.get("confidence_trend") or []],
            opened_at=int(d.get("opened_at") or 0),
        )


@dataclass
class OpenPosition:
    """What TpTracker.open() needs to start tracking a position."""

    symbol: str
    side: str
    entry_price: float
    size: float
    initial_margin: Optional[float] = None
    lot_size: float = 1.0
    min_size: float = 0.0
    confidence: float = 70.0

    @classmethod
    def from_mapping(cls, d: Mapping[str, Any]) -> "OpenPosition":
        return cls(
            symbol=str(d.get("symbol") or ""),
            side=str(d.get("side") or "long"),
            entry_price=d.get("entry_price") or d.get("entryPrice") or 0,
            size=d.get("size") or 0,
            initial_margin=d.get("initial_margin", d.get("initialMargin")),
            lot_size=d.get("lot_size") or d.get("lotSize") or 1.0,
            min_size=d.get("min_size") or d.get("minSize") or 0.0,
            confidence=d.get("confidence") if d.get("confidence") is not None else 70.0,
        )


@dataclass
class TickInput:
    symbol: str
    current_price: Any
    confidence: Optional[float] = None
    trend_phase: str = "uptrend"
    initial_margin: Optional[float] = None

    @classmethod
    def from_mapping(cls, d: Mapping[str, Any]) -> "TickInput":
        return cls(
            symbol=str(d.get("symbol") or ""),
            current_price=d.get("current_price", d.get("currentPrice")),
            confidence=d.get("confidence"),
            trend_phase=str(d.get("trend_phase") or d.get("trendPhase") or "uptrend"),
            initial_margin=d.get("initial_margin", d.get("initialMargin")),
        )
