# poseidon/runner/engine.py
from __future__ import annotations

import asyncio
import logging
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from poseidon.core.config import Settings, settings as default_settings
from poseidon.execution.executor import PaperExecutor
from poseidon.execution.tp_models import OpenPosition, PositionTrackState, TickInput
from poseidon.execution.tp_tracker import TpTracker
from poseidon.feed.types import FeedType, make_feed, now_ms
from poseidon.ops.context import clear_cycle_id, set_cycle_id
from poseidon.signals.models import SignalAnalysisRecord
from poseidon.signals.pipeline import SignalDecisionPipeline
from poseidon.symbols.universe import to_contract_symbol

log = logging.getLogger("poseidon.engine")


def _utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _price_of(p: Dict[str, Any]) -> Optional[float]:
    for k in ("markPrice", "mark_price", "price", "lastPrice"):
        try:
            v = float(p.get(k))
        except (TypeError, ValueError):
            continue
        if v > 0:
            return v
    return None


@dataclass
class EngineState:
    running: bool = False
    started_at: Optional[str] = None
    last_scan_at: Optional[str] = None
    last_monitor_at: Optional[str] = None
    scan_cycles: int = 0
    monitor_cycles: int = 0
    candidates: int = 0
    orders: int = 0
    exits: int = 0
    errors: int = 0
    last_error: Optional[str] = None
    last_symbol: Optional[str] = None


class PoseidonEngine:
    """
    Two loops on one event loop:
      - scan: one pipeline.evaluate per SCAN_INTERVAL_SECONDS, round-robin over the scanner list
      - monitor: every MONITOR_INTERVAL_SECONDS, tick the tracker for every open position
    A failing cycle is logged and counted; the loops keep going.
    """

    def __init__(
        self,
        pipeline: SignalDecisionPipeline,
        tracker: TpTracker,
        executor,
        positions,
        scanner,
        trend=None,
        feed=None,
        *,
        settings: Optional[Settings] = None,
        store=None,
        memory=None,
    ):
        self.pipeline = pipeline
        self.tracker = tracker
        self.executor = executor
        self.positions = positions
        self.scanner = scanner
        self.trend = trend
        self.feed = feed
        self.settings = settings or default_settings
        self.store = store
        self.memory = memory

        self.state = EngineState()
        self._cursor = 0
        self._tasks: List[asyncio.Task] = []

        if self.pipeline.consumer is None:
            self.pipeline.consumer = self.on_candidate
        if self.store is not None:
            self.pipeline.load_exits(self.store.load_exits())

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------
    async def scan_once(self) -> Optional[SignalAnalysisRecord]:
        rows = await self.scanner.top_tokens()
        if not rows:
            return None
        row = rows[self._cursor % len(rows)]
        self._cursor += 1
        self.state.last_symbol = row.symbol
        return await self.pipeline.evaluate(
            row.symbol, price=row.price, quote_volume=row.quote_volume
        )

    async def on_candidate(self, record: SignalAnalysisRecord) -> Optional[Dict[str, Any]]:
        s = self.settings
        self.state.candidates += 1
        margin = round(s.TRADE_BUDGET_USDT * record.allocation_pct / 100.0, 2)

        try:
            fill = await asyncio.wait_for(
                self.executor.place_order(
                    record.symbol,
                    record.side,
                    margin,
                    s.DEFAULT_LEVERAGE,
                    record.confidence,
                    price=record.price,
                ),
                timeout=s.EXECUTOR_TIMEOUT_SECONDS,
            )
        except Exception as e:
            err = str(e) or type(e).__name__
            self._fail("place_order", err, record.symbol)
            return None

        self.state.orders += 1
        fill = fill or {}
        self._publish(
            FeedType.TRADE,
            record.symbol,
            "Order placed",
            {
                "side": record.side,
                "marginUsdt": margin,
                "leverage": s.DEFAULT_LEVERAGE,
                "confidence": record.confidence,
                "allocationPct": record.allocation_pct,
                "fill": fill,
            },
            level="success",
        )

        # backends that don't report a fill are picked up by the next monitor pass
        await self.tracker.open(
            OpenPosition(
                symbol=record.symbol,
                side=record.side,
                entry_price=fill.get("entryPrice") or fill.get("entry_price") or record.price,
                size=fill.get("size") or 0,
                initial_margin=fill.get("initialMargin") or margin,
                lot_size=fill.get("lotSize") or 1.0,
                min_size=fill.get("minSize") or 0.0,
                confidence=record.confidence,
            )
        )
        return fill

    # ------------------------------------------------------------------
    # Monitor
    # ------------------------------------------------------------------
    async def monitor_once(self) -> Dict[str, Any]:
        # states tracked before the exchange snapshot; only these can be "gone"
        known = self.tracker.statuses()
        raw = await self.positions.list_open_positions()
        live: Dict[str, Dict[str, Any]] = {}
        for p in raw:
            sym = to_contract_symbol(p.get("symbol") or p.get("contract"))
            if sym:
                live[sym] = dict(p, symbol=sym)

        for sym, p in live.items():
            if not self.tracker.is_tracking(sym):
                await self.tracker.open(OpenPosition.from_mapping(p))

        results = await asyncio.gather(
            *(self._tick(sym, p) for sym, p in live.items()), return_exceptions=True
        )
        for sym, r in zip(live, results):
            if isinstance(r, Exception):
                self._fail("monitor", "".join(traceback.format_exception_only(type(r), r)).strip(), sym)

        # tracked but gone from the exchange: closed (by us or externally)
        closed = []
        for sym, st in known.items():
            if sym in live or self.tracker.get_status(sym) is not st:
                continue
            await self.tracker.mark_exited(sym)
            await self.tracker.reset(sym)
            self._record_exit(sym, st)
            closed.append(sym)

        return {"positions": len(live), "closed": closed}

    async def _tick(self, sym: str, p: Dict[str, Any]) -> None:
        confidence = None
        ta = await self.pipeline.fetch_ta(sym)
        if ta is not None:
            confidence = self.pipeline.score(sym, ta)

        price = ta.price if ta is not None and ta.price > 0 else _price_of(p)
        if price is None:
            return
        if isinstance(self.executor, PaperExecutor):
            self.executor.set_mark(sym, price)

        phase = "uptrend"
        if self.trend is not None:
            phase = (await self.trend.detect(sym)).phase

        await self.tracker.update(
            TickInput(
                symbol=sym,
                current_price=price,
                confidence=confidence,
                trend_phase=phase,
                initial_margin=p.get("initialMargin") or p.get("initial_margin"),
            )
        )

    def _record_exit(self, sym: str, st: Optional[PositionTrackState] = None) -> None:
        ts = now_ms()
        self.state.exits += 1
        self.pipeline.record_exit(sym, ts)
        if self.store is not None:
            try:
                self.store.record_exit(sym, ts, "closed")
            except Exception:
                log.exception("exit record failed for %s", sym)

        data: Dict[str, Any] = {"exitedAt": ts}
        if st is not None and st.last_roi is not None:
            data.update(side=st.side.value, roi=round(st.last_roi, 2), maxRoi=round(st.max_roi, 2))
            if self.memory is not None:
                try:
                    stats = self.memory.record_result(
                        sym,
                        st.side,
                        st.last_roi,
                        max_roi=st.max_roi,
                        confidence=st.confidence_trend[-1] if st.confidence_trend else None,
                    )
                    data["result"] = stats.last_result
                except Exception:
                    log.exception("learning memory update failed for %s", sym)
        self._publish(FeedType.TRADE, sym, "Position closed", data)

    # ------------------------------------------------------------------
    # Loops
    # ------------------------------------------------------------------
    async def _loop(self, name: str, fn, interval_s: float) -> None:
        while self.state.running:
            set_cycle_id(str(uuid.uuid4()))
            try:
                await fn()
                if name == "scan":
                    self.state.scan_cycles += 1
                    self.state.last_scan_at = _utc_now_iso()
                else:
                    self.state.monitor_cycles += 1
                    self.state.last_monitor_at = _utc_now_iso()
            except asyncio.CancelledError:
                raise
            except Exception:
                self._fail(name, traceback.format_exc())
            finally:
                clear_cycle_id()
            await asyncio.sleep(interval_s)

    def start(self) -> bool:
        if self.state.running:
            return False
        s = self.settings
        self.state.running = True
        self.state.started_at = _utc_now_iso()
        self.state.last_error = None
        self._tasks = [
            asyncio.create_task(self._loop("scan", self.scan_once, s.SCAN_INTERVAL_SECONDS)),
            asyncio.create_task(self._loop("monitor", self.monitor_once, s.MONITOR_INTERVAL_SECONDS)),
        ]
        self._publish(FeedType.SYSTEM, None, "Engine started", {"mode": s.EXECUTION_MODE})
        log.info("engine started mode=%s", s.EXECUTION_MODE)
        return True

    async def stop(self) -> bool:
        if not self.state.running:
            return False
        self.state.running = False
        for task in self._tasks:
            if not task.done():
                task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                # expected when we cancel the background loop
                pass
        self._tasks = []
        self._publish(FeedType.SYSTEM, None, "Engine stopped", {})
        log.info("engine stopped")
        return True

    def status(self) -> Dict[str, Any]:
        st = self.state
        return {
            "running": st.running,
            "mode": self.settings.EXECUTION_MODE,
            "started_at": st.started_at,
            "last_scan_at": st.last_scan_at,
            "last_monitor_at": st.last_monitor_at,
            "scan_cycles": st.scan_cycles,
            "monitor_cycles": st.monitor_cycles,
            "candidates": st.candidates,
            "orders": st.orders,
            "exits": st.exits,
            "errors": st.errors,
            "last_error": st.last_error,
            "last_symbol": st.last_symbol,
            "tracked": len(self.tracker.statuses()),
        }

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def _fail(self, where: str, err: str, symbol: Optional[str] = None) -> None:
        self.state.errors += 1
        self.state.last_error = err
        log.warning("%s failed%s: %s", where, f" for {symbol}" if symbol else "", err)
        self._publish(FeedType.ERROR, symbol, f"{where} failed", {"error": err}, level="error")

    def _publish(self, kind, symbol, msg, data=None, level="info") -> None:
        if self.feed is None:
            return
        try:
            self.feed.emit(make_feed(kind, symbol, msg, data, level=level, tags=["engine"]))
        except Exception:
            log.exception("feed emit failed")
