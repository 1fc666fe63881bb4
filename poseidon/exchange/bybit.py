from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from poseidon.exchange.http_client import PoseidonHttpClient
from poseidon.symbols.universe import to_bybit_symbol

log = logging.getLogger("poseidon.bybit")


def kline_rows(payload: Any) -> List[List[Any]]:
    """
    Bybit v5 kline list, newest first:
    [startTime, open, high, low, close, volume, turnover]
    Returned oldest first.
    """
    rows = ((payload or {}).get("result") or {}).get("list") or []
    return list(reversed(rows))


class BybitMarketClient:
    """Public Bybit linear market data (candles + 24h ticker)."""

    def __init__(self, http: PoseidonHttpClient):
        self.http = http

    # ---------------- BLOCKING ----------------

    def klines(self, symbol: str, interval: str = "15", limit: int = 100) -> List[List[Any]]:
        data = self.http.get(
            "/v5/market/kline",
            params={
                "category": "linear",
                "symbol": to_bybit_symbol(symbol),
                "interval": interval,
                "limit": limit,
            },
        )
        if isinstance(data, dict) and data.get("retCode") not in (None, 0):
            raise RuntimeError(f"Bybit kline error {data.get('retCode')}: {data.get('retMsg')}")
        return kline_rows(data)

    def ticker(self, symbol: str) -> Optional[Dict[str, Any]]:
        data = self.http.get(
            "/v5/market/tickers",
            params={"category": "linear", "symbol": to_bybit_symbol(symbol)},
        )
        rows = ((data or {}).get("result") or {}).get("list") or []
        return rows[0] if rows else None

    # ---------------- ASYNC (CandleSource) ----------------

    async def fetch_candles(
        self, symbol: str, interval: str = "15", limit: int = 100
    ) -> List[List[Any]]:
        return await asyncio.to_thread(self.klines, symbol, interval, limit)

    async def fetch_ticker(self, symbol: str) -> Optional[Dict[str, Any]]:
        return await asyncio.to_thread(self.ticker, symbol)
