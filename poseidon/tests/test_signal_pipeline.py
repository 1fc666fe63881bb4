import asyncio

from poseidon.core.config import Settings
from poseidon.ops.context import get_corr_id
from poseidon.signals.models import ScannerRow
from poseidon.signals.pipeline import SignalDecisionPipeline, allocation_for
from poseidon.strategy.ta_snapshot import TaSnapshot
from poseidon.strategy.trend_phase import TrendPhase


class _Scanner:
    def __init__(self, rows=None):
        self.rows = list(rows or [])
        self.calls = 0

    async def top_tokens(self):
        self.calls += 1
        return self.rows


class _TaSource:
    """Counts fetches so tests can assert TA was (not) consulted."""

    def __init__(self, snapshot=None, error=None):
        self.snapshot = snapshot
        self.error = error
        self.calls = []

    async def fetch(self, symbol):
        self.calls.append(symbol)
        if self.error:
            raise self.error
        return self.snapshot


class _Positions:
    def __init__(self, positions=None, error=None):
        self.positions = list(positions or [])
        self.error = error

    async def list_open_positions(self):
        if self.error:
            raise self.error
        return self.positions


class _Trend:
    def __init__(self, phase="neutral"):
        self.phase = phase
        self.calls = []

    async def detect(self, symbol):
        self.calls.append(symbol)
        return TrendPhase(phase=self.phase, reasons=[f"{self.phase} for test"])


class _Feed:
    def __init__(self):
        self.events = []

    def emit(self, event):
        self.events.append(event)

    def msgs(self, msg):
        return [e for e in self.events if e["msg"] == msg]


def _ta(signal="bullish", price=2.0):
    return TaSnapshot(
        symbol="ABC-USDTM",
        price=price,
        signal=signal,
        rsi=60.0,
        macd_signal="buy" if signal == "bullish" else "sell",
        bb_signal="neutral",
    )


def _build(
    rows=None,
    ta=None,
    positions=None,
    phase="neutral",
    score=95,
    consumer=None,
    is_active=None,
    memory=None,
    **settings_kw,
):
    feed = _Feed()
    parts = {
        "scanner": _Scanner(rows if rows is not None else [ScannerRow("ABCUSDT", 2.0, 1_000_000)]),
        "ta": ta if ta is not None else _TaSource(_ta()),
        "positions": positions or _Positions(),
        "trend": _Trend(phase),
        "feed": feed,
    }
    pipeline = SignalDecisionPipeline(
        parts["scanner"],
        parts["ta"],
        parts["positions"],
        feed=feed,
        trend=parts["trend"],
        consumer=consumer,
        settings=Settings(**settings_kw),
        scorer=lambda inputs, **kw: score,
        is_active=is_active,
        memory=memory,
    )
    return pipeline, parts


def test_volume_above_cap_is_rejected_before_ta():
    pipeline, parts = _build(rows=[ScannerRow("ABCUSDT", 2.0, 25_000_000)])

    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))

    assert rec is None
    assert parts["ta"].calls == []
    gates = [e for e in parts["feed"].events if e["data"].get("reason") == "volume-cap"]
    assert len(gates) == 1


def test_majors_are_exempt_from_the_volume_cap():
    pipeline, parts = _build(rows=[ScannerRow("BTCUSDT", 60_000.0, 25_000_000)])

    rec = asyncio.run(pipeline.evaluate("BTCUSDT"))

    assert parts["ta"].calls == ["XBT-USDTM"]
    assert rec is not None
    assert rec.symbol == "XBT-USDTM"
    assert rec.category == "major"


def test_volume_floor():
    pipeline, parts = _build(rows=[ScannerRow("ABCUSDT", 2.0, 5_000)], MIN_QUOTE_VOLUME=10_000)
    assert asyncio.run(pipeline.evaluate("ABCUSDT")) is None
    assert parts["ta"].calls == []


def test_missing_market_data_is_rejected():
    pipeline, parts = _build(rows=[])
    assert asyncio.run(pipeline.evaluate("ABCUSDT")) is None
    assert parts["ta"].calls == []


def test_explicit_price_and_volume_skip_the_scanner():
    pipeline, parts = _build(rows=[])
    rec = asyncio.run(pipeline.evaluate("ABCUSDT", price=2.0, quote_volume=1_000_000))
    assert rec is not None
    assert parts["scanner"].calls == 0


def test_scanner_row_prefix_match():
    pipeline, _ = _build(rows=[ScannerRow("ABCDUSDT", 3.0, 2_000_000)])
    rec = asyncio.run(pipeline.evaluate("ABC"))
    assert rec is not None
    assert rec.volume == 2_000_000


def test_denylisted_symbol_never_reaches_ta():
    pipeline, parts = _build(rows=[ScannerRow("TESTUSDT", 1.0, 1_000)])
    assert asyncio.run(pipeline.evaluate("TESTUSDT")) is None
    assert parts["ta"].calls == []


def test_bad_input_returns_none():
    pipeline, _ = _build()
    assert asyncio.run(pipeline.evaluate("")) is None
    assert asyncio.run(pipeline.evaluate(None)) is None
    assert asyncio.run(pipeline.evaluate("PERP")) is None


def test_blocking_phase_skips_a_confident_candidate():
    seen = []

    async def consumer(rec):
        seen.append(rec)

    pipeline, parts = _build(phase="peak", score=95, consumer=consumer)

    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))

    assert rec.skipped is True
    assert rec.reason == "phase-peak"
    assert rec.confidence == 95
    assert rec.signal == "bullish"
    assert rec.phase == "peak"
    assert seen == []
    skipped = parts["feed"].msgs("Skipped")
    assert skipped and skipped[0]["level"] == "warn"


def test_unknown_phase_does_not_block():
    pipeline, _ = _build(phase="unknown")
    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))
    assert rec.skipped is False
    assert rec.phase == "unknown"


def test_candidate_is_sized_and_handed_to_the_consumer():
    seen = []

    async def consumer(rec):
        seen.append(rec)

    pipeline, parts = _build(score=95, consumer=consumer)

    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))

    assert rec.skipped is False
    assert rec.allocation_pct == 25
    assert rec.side == "long"
    assert seen == [rec]
    candidate = parts["feed"].msgs("Trade candidate")
    assert len(candidate) == 1
    assert candidate[0]["corr"].startswith("ABC-USDTM-")
    assert rec.corr == candidate[0]["corr"]
    assert get_corr_id() is None


def test_allocation_tiers():
    assert allocation_for(95) == 25
    assert allocation_for(85) == 25
    assert allocation_for(84) == 10


def test_moderate_confidence_gets_base_allocation():
    pipeline, _ = _build(score=75)
    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))
    assert rec.allocation_pct == 10


def test_low_confidence_is_skipped():
    pipeline, parts = _build(score=60)
    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))
    assert rec.skipped is True
    assert rec.reason == "low-confidence"
    assert parts["trend"].calls == []


def test_neutral_signal_is_skipped():
    pipeline, _ = _build(ta=_TaSource(_ta(signal="neutral")))
    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))
    assert rec.skipped is True
    assert rec.reason == "neutral"


def test_missing_ta_returns_none():
    pipeline, parts = _build(ta=_TaSource(None))
    assert asyncio.run(pipeline.evaluate("ABCUSDT")) is None
    assert parts["ta"].calls == ["ABC-USDTM"]


def test_failing_ta_source_returns_none():
    pipeline, _ = _build(ta=_TaSource(error=RuntimeError("HTTP 500")))
    assert asyncio.run(pipeline.evaluate("ABCUSDT")) is None


def test_open_position_is_skipped_unless_manual():
    positions = _Positions([{"symbol": "ABCUSDTM", "size": 3}])
    pipeline, _ = _build(positions=positions)

    auto = asyncio.run(pipeline.evaluate("ABCUSDT"))
    manual = asyncio.run(pipeline.evaluate("ABCUSDT", manual=True))

    assert auto.skipped is True
    assert auto.open_position is True
    assert auto.reason == "open-position"
    assert manual.skipped is False


def test_reentry_cooldown():
    pipeline, _ = _build(REENTRY_COOLDOWN_SECONDS=600)
    pipeline.record_exit("ABCUSDT")

    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))
    assert rec.skipped is True
    assert rec.reason == "cooldown"

    other, _ = _build(REENTRY_COOLDOWN_SECONDS=600)
    other.load_exits({"ABC-USDTM": 1})
    assert asyncio.run(other.evaluate("ABCUSDT")).skipped is False


def test_inactive_bot_only_serves_manual_requests():
    pipeline, parts = _build(is_active=lambda: False)
    assert asyncio.run(pipeline.evaluate("ABCUSDT")) is None
    assert parts["ta"].calls == []
    assert asyncio.run(pipeline.evaluate("ABCUSDT", manual=True)) is not None


def test_repeated_skips_are_logged_once_and_ta_is_cached():
    pipeline, parts = _build(ta=_TaSource(_ta(signal="neutral")))

    async def run():
        return [await pipeline.evaluate("ABCUSDT") for _ in range(3)]

    recs = asyncio.run(run())

    assert all(r.reason == "neutral" for r in recs)
    assert len(parts["feed"].msgs("Skipped")) == 1
    assert parts["ta"].calls == ["ABC-USDTM"]


def test_consumer_failure_still_returns_the_candidate():
    async def consumer(rec):
        raise RuntimeError("order backend down")

    pipeline, parts = _build(consumer=consumer)
    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))

    assert rec is not None and rec.skipped is False
    assert parts["feed"].msgs("Candidate handling failed")


def test_unexpected_failure_becomes_an_error_event():
    pipeline, parts = _build(positions=_Positions(error=RuntimeError("positions down")))
    assert asyncio.run(pipeline.evaluate("ABCUSDT")) is None
    errors = [e for e in parts["feed"].events if e["type"] == "error"]
    assert errors and errors[0]["data"]["error"] == "positions down"
    assert get_corr_id() is None


class _Memory:
    def __init__(self, cold_sides=()):
        self.cold_sides = set(cold_sides)
        self.calls = []

    def is_cold(self, symbol, side):
        self.calls.append((symbol, side))
        return side in self.cold_sides


def test_cold_memory_skips_only_the_losing_side():
    memory = _Memory(cold_sides={"long"})
    pipeline, _ = _build(memory=memory)

    rec = asyncio.run(pipeline.evaluate("ABCUSDT"))

    assert rec.skipped is True
    assert rec.reason == "cold-memory"
    assert memory.calls == [("ABC-USDTM", "long")]

    short_pipeline, _ = _build(memory=_Memory(cold_sides={"long"}), ta=_TaSource(_ta(signal="bearish")))
    assert asyncio.run(short_pipeline.evaluate("ABCUSDT")).skipped is False


def test_cold_memory_guard_can_be_disabled_and_skips_manual():
    pipeline, _ = _build(memory=_Memory(cold_sides={"long"}), COLD_MEMORY_GUARD=False)
    assert asyncio.run(pipeline.evaluate("ABCUSDT")).skipped is False

    guarded, _ = _build(memory=_Memory(cold_sides={"long"}))
    assert asyncio.run(guarded.evaluate("ABCUSDT", manual=True)).skipped is False
