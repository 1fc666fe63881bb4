from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from poseidon.exchange.http_client import PoseidonHttpClient
from poseidon.execution.quantity import round_qty, subtract_qty
from poseidon.feed.types import now_ms

log = logging.getLogger("poseidon.executor")


class ExecutorError(Exception):
    pass


# =========================
# Execution Result
# =========================
@dataclass
class Fill:
    action: str
    symbol: str
    qty: float
    price: Optional[float]
    ts: int


# =========================
# Paper Executor
# =========================
class PaperExecutor:
    """
    In-memory fills for EXECUTION_MODE=paper. Also serves as the position source
    so the monitor loop sees what the paper book holds.
    """

    def __init__(self, lot_size: float = 0.001, min_size: float = 0.0):
        self.lot_size = lot_size
        self.min_size = min_size
        self.positions: Dict[str, Dict[str, Any]] = {}
        self.marks: Dict[str, float] = {}
        self.fills: List[Fill] = []

    def set_mark(self, symbol: str, price: float) -> None:
        self.marks[symbol.upper()] = float(price)
        pos = self.positions.get(symbol.upper())
        if pos is not None:
            pos["markPrice"] = float(price)

    # ---------------- Executor protocol ----------------

    async def place_order(
        self,
        symbol: str,
        side: str,
        margin_usdt: float,
        leverage: int,
        confidence: float,
        price: Optional[float] = None,
    ) -> Dict[str, Any]:
        symbol = symbol.upper()
        if symbol in self.positions:
            raise ExecutorError(f"position already open for {symbol}")

        px = price or self.marks.get(symbol)
        if not px or px <= 0:
            raise ExecutorError(f"no price for {symbol}")

        size = round_qty(float(margin_usdt) * int(leverage) / px, self.lot_size, self.min_size)
        if size <= 0:
            raise ExecutorError(f"margin {margin_usdt} too small for {symbol} @ {px}")

        pos = {
            "symbol": symbol,
            "side": "short" if str(side).lower() in ("short", "sell") else "long",
            "entryPrice": px,
            "markPrice": px,
            "size": size,
            "initialMargin": float(margin_usdt),
            "leverage": int(leverage),
            "lotSize": self.lot_size,
            "minSize": self.min_size,
            "confidence": confidence,
        }
        self.positions[symbol] = pos
        self.marks[symbol] = px
        self.fills.append(Fill("open", symbol, size, px, now_ms()))
        log.info("paper open %s %s size=%s @ %s", pos["side"], symbol, size, px)
        return dict(pos)

    async def partial_close(self, symbol: str, qty: float) -> None:
        symbol = symbol.upper()
        pos = self.positions.get(symbol)
        if pos is None:
            raise ExecutorError(f"no open position for {symbol}")
        if qty <= 0 or qty > pos["size"]:
            raise ExecutorError(f"bad partial qty {qty} for size {pos['size']}")
        pos["size"] = subtract_qty(pos["size"], qty)
        self.fills.append(Fill("partial", symbol, qty, self.marks.get(symbol), now_ms()))
        if pos["size"] <= 0:
            self.positions.pop(symbol, None)

    async def close_all(self, symbol: str) -> None:
        symbol = symbol.upper()
        pos = self.positions.pop(symbol, None)
        if pos is None:
            raise ExecutorError(f"no open position for {symbol}")
        self.fills.append(Fill("close", symbol, pos["size"], self.marks.get(symbol), now_ms()))

    # ---------------- PositionSource protocol ----------------

    async def list_open_positions(self) -> List[Dict[str, Any]]:
        return [dict(p) for p in self.positions.values()]


# =========================
# HTTP Executor (order backend)
# =========================
class HttpExecutor:
    """Routes orders to the backend's /api/* trade endpoints."""

    def __init__(self, http: PoseidonHttpClient):
        self.http = http

    async def _post(self, path: str, body: Dict[str, Any]) -> Dict[str, Any]:
        try:
            data = await asyncio.to_thread(self.http.post, path, body)
        except RuntimeError as e:
            raise ExecutorError(str(e)) from e
        if isinstance(data, dict) and data.get("success") is False:
            raise ExecutorError(str(data.get("error") or data.get("message") or f"{path} rejected"))
        return data if isinstance(data, dict) else {"result": data}

    async def place_order(
        self,
        symbol: str,
        side: str,
        margin_usdt: float,
        leverage: int,
        confidence: float,
        price: Optional[float] = None,
    ) -> Dict[str, Any]:
        body = {
            "contract": symbol,
            "side": "sell" if str(side).lower() in ("short", "sell") else "buy",
            "leverage": int(leverage),
            "notionalUsd": round(float(margin_usdt) * int(leverage), 2),
            "confidence": confidence,
        }
        if price:
            body["price"] = price
        return await self._post("/api/place-futures-order", body)

    async def partial_close(self, symbol: str, qty: float) -> None:
        await self._post("/api/partial-close", {"contract": symbol, "size": qty})

    async def close_all(self, symbol: str) -> None:
        await self._post("/api/close-trade", {"contract": symbol, "note": "poseidon exit"})
