import asyncio

import pytest

from poseidon.execution.tp_models import LadderStep, OpenPosition, TickInput, TpConfig
from poseidon.execution.tp_tracker import TpTracker

SYMBOL = "ABC-USDTM"
TWO_STEPS = (LadderStep(roi=50, take=0.25), LadderStep(roi=100, take=0.25))


class _FakeExecutor:
    """
    Minimal executor that records what the tracker asked for.
    """

    def __init__(self, fail_partial_after=None, delay=0.0):
        self.partial_calls = []
        self.close_calls = []
        self.fail_partial_after = fail_partial_after
        self.delay = delay

    async def place_order(self, symbol, side, margin_usdt, leverage, confidence, price=None):
        return {}

    async def partial_close(self, symbol, qty):
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.fail_partial_after is not None and len(self.partial_calls) >= self.fail_partial_after:
            raise RuntimeError("exchange rejected reduce-only order")
        self.partial_calls.append((symbol, qty))

    async def close_all(self, symbol):
        self.close_calls.append(symbol)


class _Feed:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def of_type(self, kind):
        return [e for e in self.events if e["type"] == kind]


def _position(**overrides):
    p = dict(
        symbol=SYMBOL,
        side="long",
        entry_price=100.0,
        size=10.0,
        initial_margin=200.0,
        lot_size=0.001,
    )
    p.update(overrides)
    return OpenPosition(**p)


def _tracker(executor, feed=None, **cfg):
    cfg.setdefault("steps", TWO_STEPS)
    return TpTracker(executor, feed=feed, config=TpConfig(**cfg))


def test_gap_fires_every_step_due_in_one_tick():
    ex = _FakeExecutor()
    tracker = _tracker(ex)

    async def run():
        await tracker.open(_position())
        # ROI 120% on 200 margin
        return await tracker.update(TickInput(symbol=SYMBOL, current_price=124.0))

    st = asyncio.run(run())

    assert st.fired_steps == 2
    assert st.size == pytest.approx(5.625)
    assert [q for _, q in ex.partial_calls] == [2.5, 1.875]
    assert st.trail_active is True
    assert st.peak_price == 124.0
    # second step tightens the drop to 20%
    assert st.trail_stop == pytest.approx(124.0 * 0.8)
    assert ex.close_calls == []


def test_size_and_fired_steps_are_monotonic():
    ex = _FakeExecutor()
    tracker = _tracker(ex)
    prices = [105, 112, 110, 124, 130, 126, 140, 135]

    async def run():
        await tracker.open(_position())
        seen = []
        for px in prices:
            st = await tracker.update({"symbol": SYMBOL, "current_price": px})
            seen.append((st.size, st.fired_steps))
            if st.exited:
                break
        return seen

    seen = asyncio.run(run())
    sizes = [s for s, _ in seen]
    steps = [n for _, n in seen]
    assert sizes == sorted(sizes, reverse=True)
    assert steps == sorted(steps)
    assert all(s > 0 for s in sizes)


def test_failed_partial_keeps_state_and_retries_next_tick():
    ex = _FakeExecutor(fail_partial_after=0)
    feed = _Feed()
    tracker = _tracker(ex, feed=feed)

    async def run():
        await tracker.open(_position())
        first = await tracker.update(TickInput(symbol=SYMBOL, current_price=112.0))
        snapshot = (first.size, first.fired_steps, first.trail_active)

        ex.fail_partial_after = None
        second = await tracker.update(TickInput(symbol=SYMBOL, current_price=112.0))
        return snapshot, second

    snapshot, st = asyncio.run(run())

    assert snapshot == (10.0, 0, False)
    assert feed.of_type("error")
    assert "partial_close failed" in feed.of_type("error")[0]["msg"]
    assert st.fired_steps == 1
    assert st.size == pytest.approx(7.5)


def test_second_step_failure_keeps_first_step():
    ex = _FakeExecutor(fail_partial_after=1)
    tracker = _tracker(ex)

    async def run():
        await tracker.open(_position())
        return await tracker.update(TickInput(symbol=SYMBOL, current_price=124.0))

    st = asyncio.run(run())
    assert st.fired_steps == 1
    assert st.size == pytest.approx(7.5)
    assert len(ex.partial_calls) == 1


def test_slow_executor_times_out_without_state_change():
    ex = _FakeExecutor(delay=0.5)
    feed = _Feed()
    tracker = _tracker(ex, feed=feed, call_timeout_s=0.05)

    async def run():
        await tracker.open(_position())
        return await tracker.update(TickInput(symbol=SYMBOL, current_price=112.0))

    st = asyncio.run(run())
    assert st.fired_steps == 0
    assert st.size == 10.0
    errors = feed.of_type("error")
    assert errors and "timed out" in errors[0]["data"]["error"]


def test_concurrent_ticks_fire_a_step_once():
    ex = _FakeExecutor(delay=0.05)
    tracker = _tracker(ex)

    async def run():
        await tracker.open(_position())
        tick = TickInput(symbol=SYMBOL, current_price=112.0)
        await asyncio.gather(tracker.update(tick), tracker.update(tick), tracker.update(tick))
        return tracker.get_status(SYMBOL)

    st = asyncio.run(run())
    assert len(ex.partial_calls) == 1
    assert st.fired_steps == 1


def test_min_remainder_stops_the_ladder():
    ex = _FakeExecutor()
    tracker = _tracker(ex, min_remainder_contracts=8)

    async def run():
        await tracker.open(_position())
        return await tracker.update(TickInput(symbol=SYMBOL, current_price=124.0))

    st = asyncio.run(run())
    assert st.fired_steps == 1
    assert st.size == pytest.approx(7.5)


def test_take_that_rounds_to_whole_size_is_not_sent():
    ex = _FakeExecutor()
    tracker = _tracker(ex)

    async def run():
        await tracker.open(_position(size=1.0, lot_size=1.0, min_size=1.0, initial_margin=20.0))
        return await tracker.update(TickInput(symbol=SYMBOL, current_price=200.0))

    st = asyncio.run(run())
    assert ex.partial_calls == []
    assert st.fired_steps == 0
    assert st.size == 1.0


def test_margin_from_tick_is_used_when_unknown():
    ex = _FakeExecutor()
    tracker = _tracker(ex)

    async def run():
        await tracker.open(_position(initial_margin=None))
        # 24% ROI on 1000 margin; the 0.2 fallback would have read 120%
        return await tracker.update(
            TickInput(symbol=SYMBOL, current_price=124.0, initial_margin=1000.0)
        )

    st = asyncio.run(run())
    assert st.initial_margin == 1000.0
    assert st.fired_steps == 0


def test_fallback_margin_when_nothing_reports_one():
    ex = _FakeExecutor()
    tracker = _tracker(ex)

    async def run():
        await tracker.open(_position(initial_margin=None))
        return await tracker.update(TickInput(symbol=SYMBOL, current_price=124.0))

    st = asyncio.run(run())
    # 100 * 10 * 0.2 = 200 margin -> same as the gap scenario
    assert st.fired_steps == 2


@pytest.mark.parametrize(
    "bad",
    [
        dict(symbol=""),
        dict(entry_price=0),
        dict(size=-1),
        dict(size="abc"),
    ],
)
def test_open_ignores_bad_positions(bad):
    tracker = _tracker(_FakeExecutor())
    st = asyncio.run(tracker.open(_position(**bad)))
    assert st is None
    assert tracker.statuses() == {}


def test_open_twice_keeps_the_existing_state():
    ex = _FakeExecutor()
    tracker = _tracker(ex)

    async def run():
        first = await tracker.open(_position())
        await tracker.update(TickInput(symbol=SYMBOL, current_price=112.0))
        second = await tracker.open(_position(entry_price=50.0))
        return first, second

    first, second = asyncio.run(run())
    assert first is second
    assert second.entry_price == 100.0
    assert second.fired_steps == 1


def test_update_ignores_untracked_and_bad_prices():
    ex = _FakeExecutor()
    tracker = _tracker(ex)

    async def run():
        await tracker.open(_position())
        a = await tracker.update(TickInput(symbol="OTHER-USDTM", current_price=200.0))
        b = await tracker.update(TickInput(symbol=SYMBOL, current_price=float("nan")))
        c = await tracker.update(TickInput(symbol=SYMBOL, current_price=None))
        d = await tracker.update(TickInput(symbol=SYMBOL, current_price=-5))
        return a, b, c, d

    assert asyncio.run(run()) == (None, None, None, None)
    assert ex.partial_calls == []


def test_mark_exited_is_idempotent_and_stops_updates():
    ex = _FakeExecutor()
    tracker = _tracker(ex)

    async def run():
        await tracker.open(_position())
        a = await tracker.mark_exited(SYMBOL)
        b = await tracker.mark_exited(SYMBOL)
        st = await tracker.update(TickInput(symbol=SYMBOL, current_price=200.0))
        missing = await tracker.mark_exited("NOPE-USDTM")
        return a, b, st, missing

    a, b, st, missing = asyncio.run(run())
    assert a is b is st
    assert st.exited is True
    assert ex.partial_calls == []
    assert missing is None


def test_reset_forgets_the_symbol():
    tracker = _tracker(_FakeExecutor())

    async def run():
        await tracker.open(_position())
        return await tracker.reset(SYMBOL), await tracker.reset(SYMBOL)

    assert asyncio.run(run()) == (True, False)
    assert not tracker.is_tracking(SYMBOL)


def test_status_events_are_throttled():
    now = {"ms": 10_000}
    feed = _Feed()
    tracker = TpTracker(
        _FakeExecutor(),
        feed=feed,
        config=TpConfig(steps=TWO_STEPS, emit_throttle_ms=1500),
        clock=lambda: now["ms"],
    )

    async def run():
        await tracker.open(_position())
        await tracker.update(TickInput(symbol=SYMBOL, current_price=101.0))
        await tracker.update(TickInput(symbol=SYMBOL, current_price=102.0))
        now["ms"] += 2000
        await tracker.update(TickInput(symbol=SYMBOL, current_price=103.0))

    asyncio.run(run())
    status = [e for e in feed.of_type("tp") if e["level"] == "debug"]
    assert len(status) == 2


def test_step_events_are_never_throttled():
    feed = _Feed()
    tracker = TpTracker(
        _FakeExecutor(),
        feed=feed,
        config=TpConfig(steps=TWO_STEPS),
        clock=lambda: 10_000,
    )

    async def run():
        await tracker.open(_position())
        await tracker.update(TickInput(symbol=SYMBOL, current_price=124.0))

    asyncio.run(run())
    msgs = [e["msg"] for e in feed.of_type("tp")]
    assert "TP step 1 hit" in msgs
    assert "TP step 2 hit" in msgs


def test_set_config_replaces_steps_and_policy():
    tracker = _tracker(_FakeExecutor())

    cfg = tracker.set_config({"steps": [{"roi": 10, "take": 0.5}], "trail_drop_pct": 0.2})
    assert cfg.resolved_steps() == [LadderStep(roi=10.0, take=0.5)]
    assert tracker.config.trail_drop_pct == 0.2

    tracker.set_config({"policy": "single_partial"})
    assert tracker.policy.name == "single_partial"
    assert tracker.policy.config is tracker.config


def test_set_config_with_unknown_policy_changes_nothing():
    tracker = _tracker(_FakeExecutor())
    before = tracker.config

    with pytest.raises(ValueError):
        tracker.set_config({"policy": "martingale", "trail_drop_pct": 0.5})

    assert tracker.config is before
    assert tracker.policy.name == "ladder"


def test_set_config_coerces_numeric_strings():
    tracker = _tracker(_FakeExecutor())

    cfg = tracker.set_config({"emit_throttle_ms": "500", "min_exit_confidence": "55"})

    assert cfg.emit_throttle_ms == 500
    assert cfg.min_exit_confidence == 55.0

    async def run():
        await tracker.open(_position())
        return await tracker.update(TickInput(symbol=SYMBOL, current_price=101.0))

    assert asyncio.run(run()) is not None


@pytest.mark.parametrize(
    "partial",
    [
        {"emit_throttle_ms": "soon"},
        {"min_remainder_contracts": "lots"},
        {"trail_drop_pct": 1.5},
        {"trail_drop_pct": 0},
        {"min_exit_confidence": float("nan")},
        {"call_timeout_s": -1},
        {"margin_fallback_ratio": True},
        {"steps": [{"roi": 10}]},
        {"steps": [{"roi": 10, "take": 2}]},
        {"steps": "50:0.25"},
        {"ladder": {"max_steps": 0}},
        {"ladder": {"bogus": 1}},
    ],
)
def test_set_config_rejects_bad_values_and_keeps_tracking(partial):
    ex = _FakeExecutor()
    tracker = _tracker(ex)
    before = tracker.config

    with pytest.raises(ValueError):
        tracker.set_config(partial)
    assert tracker.config is before

    async def run():
        await tracker.open(_position())
        return await tracker.update(TickInput(symbol=SYMBOL, current_price=124.0))

    assert asyncio.run(run()).fired_steps == 2


def test_reset_drops_the_symbol_lock_once_it_is_free():
    tracker = _tracker(_FakeExecutor(delay=0.01))

    async def run():
        await tracker.open(_position())
        # reset queues behind a tick that is mid partial-close
        await asyncio.gather(
            tracker.update(TickInput(symbol=SYMBOL, current_price=124.0)),
            tracker.reset(SYMBOL),
        )

    asyncio.run(run())

    assert not tracker.is_tracking(SYMBOL)
    assert dict(tracker._locks) == {}
    assert dict(tracker._lock_users) == {}


def test_tracked_symbols_keep_their_lock():
    tracker = _tracker(_FakeExecutor())

    async def run():
        await tracker.open(_position())
        await tracker.mark_exited(SYMBOL)

    asyncio.run(run())
    assert SYMBOL in tracker._locks
