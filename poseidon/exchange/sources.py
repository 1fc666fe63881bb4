# poseidon/exchange/sources.py
from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, List, Optional

from poseidon.exchange.bybit import BybitMarketClient
from poseidon.exchange.http_client import PoseidonHttpClient
from poseidon.signals.models import ScannerRow
from poseidon.strategy.ta_snapshot import TaSnapshot, build_ta_snapshot
from poseidon.symbols.universe import normalize_base

log = logging.getLogger("poseidon.sources")


class HttpTaSource:
    """TA from the backend's /api/ta/{symbol} endpoint."""

    def __init__(self, http: PoseidonHttpClient):
        self.http = http

    async def fetch(self, symbol: str) -> Optional[TaSnapshot]:
        base = normalize_base(symbol)
        # spot form first, then the bare base
        for candidate in (f"{base}-USDT", base):
            try:
                data = await asyncio.to_thread(self.http.get, f"/api/ta/{candidate}")
            except RuntimeError as e:
                log.debug("ta fetch %s failed: %s", candidate, e)
                continue
            if not isinstance(data, dict) or data.get("nodata") or data.get("success") is False:
                continue
            return TaSnapshot.from_payload(symbol, data)
        return None


class KlineTaSource:
    """TA computed locally from Bybit 15m candles + 24h ticker."""

    def __init__(self, market: BybitMarketClient):
        self.market = market

    async def fetch(self, symbol: str) -> Optional[TaSnapshot]:
        try:
            candles = await self.market.fetch_candles(symbol, interval="15", limit=100)
        except RuntimeError as e:
            log.debug("kline fetch %s failed: %s", symbol, e)
            return None
        ticker = None
        try:
            ticker = await self.market.fetch_ticker(symbol)
        except RuntimeError as e:
            # quote volume falls back to price * last volume
            log.debug("ticker fetch %s failed: %s", symbol, e)
        return build_ta_snapshot(symbol, candles, ticker)


class HttpScannerSource:
    """Scanner top list from /api/scan-tokens."""

    def __init__(self, http: PoseidonHttpClient):
        self.http = http

    async def top_tokens(self) -> List[ScannerRow]:
        try:
            data = await asyncio.to_thread(self.http.get, "/api/scan-tokens")
        except RuntimeError as e:
            log.warning("scanner fetch failed: %s", e)
            return []
        rows = data.get("top50") if isinstance(data, dict) else data
        return [ScannerRow.from_payload(r) for r in rows or [] if isinstance(r, dict) and r.get("symbol")]


class HttpPositionSource:
    """Open positions from /api/positions."""

    def __init__(self, http: PoseidonHttpClient):
        self.http = http

    async def list_open_positions(self) -> List[Dict[str, Any]]:
        data = await asyncio.to_thread(self.http.get, "/api/positions")
        rows = data.get("positions") if isinstance(data, dict) else data
        return [r for r in rows or [] if isinstance(r, dict)]
