import pytest

from poseidon.core.config import Settings
from poseidon.execution.tp_models import LadderStep


def test_unknown_execution_mode_fails():
    s = Settings(EXECUTION_MODE="banana")
    with pytest.raises(ValueError) as e:
        s.validate_runtime()
    assert "EXECUTION_MODE" in str(e.value)


def test_unknown_tp_policy_fails():
    with pytest.raises(ValueError):
        Settings(TP_POLICY="martingale").validate_runtime()


def test_trail_drop_must_be_a_fraction():
    with pytest.raises(ValueError):
        Settings(TP_TRAIL_DROP_PCT=25).validate_runtime()


def test_trail_drop_below_floor_is_a_warning():
    warnings = Settings(TP_TRAIL_DROP_PCT=0.05).validate_runtime()
    assert any("floor" in w for w in warnings)


def test_live_mode_warning_not_error():
    warnings = Settings(EXECUTION_MODE="LIVE").validate_runtime()
    assert any("REAL money" in w for w in warnings)


def test_paper_defaults_are_valid():
    assert Settings().validate_runtime() == []


def test_tp_steps_from_csv():
    s = Settings(TP_STEPS="100:0.5, 50:0.25, junk")
    assert s.tp_config().resolved_steps() == [LadderStep(50.0, 0.25), LadderStep(100.0, 0.5)]


def test_tp_steps_from_json_env(monkeypatch):
    monkeypatch.setenv("TP_STEPS", '[{"roi": 40, "take": 0.3}]')
    assert Settings().TP_STEPS == [{"roi": 40.0, "take": 0.3}]


def test_generated_ladder_when_no_steps():
    s = Settings(TP_LADDER_STEP_PCT=25, TP_LADDER_MAX_STEPS=3)
    assert [x.roi for x in s.tp_config().resolved_steps()] == [25, 50, 75]


def test_symbol_lists_from_env(monkeypatch):
    monkeypatch.setenv("MAJORS", "btc, eth")
    monkeypatch.setenv("MEMES", '["pepe"]')
    s = Settings()
    assert s.MAJORS == ["BTC", "ETH"]
    assert s.MEMES == ["PEPE"]


def test_urls_are_normalized():
    s = Settings(BACKEND_BASE_URL="http://localhost:3000/")
    assert s.BACKEND_BASE_URL == "http://localhost:3000"


def test_session_offset_is_range_checked():
    with pytest.raises(ValueError):
        Settings(SESSION_UTC_OFFSET_HOURS=20).validate_runtime()
    assert Settings(SESSION_UTC_OFFSET_HOURS=2).session_config().utc_offset_hours == 2
