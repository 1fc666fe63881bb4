import pytest

from poseidon.strategy.indicators import bollinger, ema_series, pct_change, rsi


def test_rsi_needs_period_plus_one_closes():
    assert rsi([1.0] * 14) is None


def test_rsi_without_losses_divides_by_one():
    closes = [100.0 + i for i in range(15)]  # 14 moves of +1
    assert rsi(closes) == pytest.approx(100 - 100 / (1 + 14))


def test_rsi_uses_only_the_last_period_moves():
    closes = [500.0, 100.0] + [100.0 + i for i in range(1, 15)]
    # the 500 -> 100 drop is outside the 14-move window
    assert rsi(closes) == pytest.approx(100 - 100 / (1 + 14))


def test_rsi_mixed_moves():
    closes = [10.0, 12.0, 11.0] * 5
    gains = sum(max(0.0, b - a) for a, b in zip(closes[-15:-1], closes[-14:]))
    losses = sum(max(0.0, a - b) for a, b in zip(closes[-15:-1], closes[-14:]))
    assert rsi(closes) == pytest.approx(100 - 100 / (1 + gains / losses))


def test_ema_series_is_seeded_with_sma():
    out = ema_series([1.0, 2.0, 3.0, 4.0], 3)
    assert out[0] == pytest.approx(2.0)
    assert out[1] == pytest.approx(4.0 * 0.5 + 2.0 * 0.5)
    assert ema_series([1.0], 3) == []


def test_bollinger_and_pct_change():
    lower, mid, upper = bollinger([2.0] * 20)
    assert lower == mid == upper == 2.0
    assert bollinger([1.0] * 5) is None
    assert pct_change(110, 100) == pytest.approx(10.0)
    assert pct_change(5, 0) == 0.0
