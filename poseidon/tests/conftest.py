import pytest


@pytest.fixture(autouse=True)
def _test_env(monkeypatch, tmp_path):
    """
    Ensure tests never route orders to a real backend and never write
    into the working tree.
    """
    monkeypatch.setenv("EXECUTION_MODE", "paper")
    monkeypatch.setenv("BACKEND_BASE_URL", "http://backend.invalid")
    monkeypatch.setenv("BYBIT_BASE_URL", "http://bybit.invalid")
    monkeypatch.setenv("DB_PATH", str(tmp_path / "poseidon.db"))
    monkeypatch.setenv("FEED_JSONL_PATH", str(tmp_path / "feed.jsonl"))
    monkeypatch.setenv("BOT_ACTIVE", "true")
