import pytest

from poseidon.strategy.ta_snapshot import TaSnapshot, build_ta_snapshot


def _accelerating(n=60):
    # close = 100 + 0.01 * i^2, each candle opens at the previous close
    rows = []
    prev = 100.0
    for i in range(n):
        close = 100 + 0.01 * i * i
        rows.append([i, prev, close + 0.2, prev - 0.2, close, 10.0, close * 10])
        prev = close
    return rows


def test_needs_fifty_candles():
    assert build_ta_snapshot("ABC-USDTM", _accelerating(49)) is None


def test_rising_market_is_bullish():
    ta = build_ta_snapshot("ABC-USDTM", _accelerating())
    assert ta.signal == "bullish"
    assert ta.macd_signal == "buy"
    assert ta.bb_signal == "neutral"
    assert ta.price == pytest.approx(134.81)
    # 14 gains, no losses: rs = gains / 1
    assert ta.rsi == pytest.approx(100 - 100 / (1 + 14.56))
    assert ta.volume_spike is False
    assert ta.trap_warning is False
    assert ta.range_24h["high"] == pytest.approx(135.01)


def test_volume_spike_and_trap_on_last_candle():
    rows = _accelerating()
    c = rows[-1][4]
    rows[-1] = [rows[-1][0], c, c + 5, c - 5, c, 100.0, 0]
    ta = build_ta_snapshot("ABC-USDTM", rows)
    assert ta.volume_spike is True
    assert ta.trap_warning is True


def test_quote_volume_prefers_ticker_turnover():
    rows = _accelerating()
    assert build_ta_snapshot("ABC-USDTM", rows, {"turnover24h": "123456"}).quote_volume == 123456.0
    assert build_ta_snapshot("ABC-USDTM", rows).quote_volume == pytest.approx(134.81 * 10)


def test_from_payload_reads_camel_case():
    ta = TaSnapshot.from_payload(
        "ABC-USDTM",
        {
            "price": "1.25",
            "signal": "Bearish",
            "rsi": 40,
            "macdSignal": "sell",
            "bbSignal": "lower",
            "volumeSpike": True,
            "range24h": {"high": 1.4, "low": 1.1},
        },
    )
    assert ta.price == 1.25
    assert ta.signal == "bearish"
    assert ta.macd_signal == "sell"
    assert ta.volume_spike is True
    assert ta.range_24h == {"high": 1.4, "low": 1.1}
    assert ta.range_7d == {"high": 0.0, "low": 0.0}
