from __future__ import annotations

from typing import Any, Dict, List, Optional, Protocol


class Executor(Protocol):
    """
    Order side effects. Each call is made at most once per logical event;
    raising (or timing out) means the action did not happen.
    """

    async def partial_close(self, symbol: str, qty: float) -> None: ...

    async def close_all(self, symbol: str) -> None: ...

    async def place_order(
        self,
        symbol: str,
        side: str,
        margin_usdt: float,
        leverage: int,
        confidence: float,
        price: Optional[float] = None,
    ) -> Dict[str, Any]: ...


class FeedSink(Protocol):
    def emit(self, event: Dict[str, Any]) -> None: ...


class PositionSource(Protocol):
    async def list_open_positions(self) -> List[Dict[str, Any]]: ...


class TaSource(Protocol):
    async def fetch(self, symbol: str): ...


class ScannerSource(Protocol):
    async def top_tokens(self) -> list: ...


class CandleSource(Protocol):
    async def fetch_candles(
        self, symbol: str, interval: str = "15", limit: int = 100
    ) -> List[List[Any]]: ...
