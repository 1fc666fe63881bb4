from __future__ import annotations
import time
from contextvars import ContextVar
from typing import Optional

# Context-local (safe for async tasks & threads)
_current_corr_id: ContextVar[Optional[str]] = ContextVar("current_corr_id", default=None)
_current_cycle_id: ContextVar[Optional[str]] = ContextVar(
    "current_cycle_id", default=None
)

def new_corr_id(symbol: str) -> str:
    return f"{symbol}-{int(time.time() * 1000)}"

def set_corr_id(corr_id: str) -> None:
    _current_corr_id.set(corr_id)

def get_corr_id() -> Optional[str]:
    return _current_corr_id.get()

def clear_corr_id() -> None:
    _current_corr_id.set(None)

def set_cycle_id(cycle_id: str) -> None:
    _current_cycle_id.set(cycle_id)

def get_cycle_id() -> Optional[str]:
    return _current_cycle_id.get()

def clear_cycle_id() -> None:
    _current_cycle_id.set(None)
