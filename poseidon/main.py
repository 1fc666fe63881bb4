import logging
from dataclasses import asdict, dataclass
from typing import Any, Dict, Optional

from fastapi import Body, FastAPI, HTTPException, Query

from poseidon.core.config import Settings, settings
from poseidon.exchange.bybit import BybitMarketClient
from poseidon.exchange.http_client import PoseidonHttpClient
from poseidon.exchange.sources import (
    HttpPositionSource,
    HttpScannerSource,
    HttpTaSource,
    KlineTaSource,
)
from poseidon.execution.executor import HttpExecutor, PaperExecutor
from poseidon.execution.exit_policy import build_policy
from poseidon.execution.tp_tracker import TpTracker
from poseidon.feed.bus import FeedBus
from poseidon.persistence.db import DB
from poseidon.persistence.feed_recorder import FeedRecorder
from poseidon.persistence.learning_memory import LearningMemory
from poseidon.persistence.tp_state_store import TpStateStore
from poseidon.runner.engine import PoseidonEngine
from poseidon.signals.pipeline import SignalDecisionPipeline
from poseidon.strategy.trend_phase import TrendPhaseDetector
from poseidon.symbols.universe import to_contract_symbol

log = logging.getLogger("poseidon.api")

app = FastAPI(title="Poseidon Futures Bot")

SENSITIVE_MARKERS = ("KEY", "SECRET", "TOKEN", "PASSWORD")


@dataclass
class Services:
    settings: Settings
    bus: FeedBus
    store: Optional[TpStateStore]
    recorder: Optional[FeedRecorder]
    memory: Optional[LearningMemory]
    executor: Any
    tracker: TpTracker
    pipeline: SignalDecisionPipeline
    trend: TrendPhaseDetector
    engine: PoseidonEngine
    bot_active: bool = True


services: Optional[Services] = None


def build_services(
    cfg: Settings,
    *,
    scanner=None,
    ta_source=None,
    positions=None,
    candles=None,
    executor=None,
    persist: bool = True,
) -> Services:
    """Wire the bot from config. Any external source can be swapped in (tests, tools)."""
    bus = FeedBus(cfg.FEED_BUFFER_SIZE)

    store = recorder = memory = None
    if persist:
        db = DB(cfg.DB_PATH)
        store = TpStateStore(db)
        recorder = FeedRecorder(db, cfg.FEED_JSONL_PATH)
        memory = LearningMemory(db)
        bus.subscribe(recorder)

    backend = PoseidonHttpClient(cfg.BACKEND_BASE_URL, timeout=cfg.HTTP_TIMEOUT_SECONDS)
    market = BybitMarketClient(
        PoseidonHttpClient(cfg.BYBIT_BASE_URL, timeout=cfg.HTTP_TIMEOUT_SECONDS)
    )

    if executor is None:
        executor = PaperExecutor() if cfg.EXECUTION_MODE == "paper" else HttpExecutor(backend)
    if positions is None:
        positions = executor if isinstance(executor, PaperExecutor) else HttpPositionSource(backend)
    if scanner is None:
        scanner = HttpScannerSource(backend)
    if ta_source is None:
        ta_source = KlineTaSource(market) if cfg.TA_SOURCE == "kline" else HttpTaSource(backend)

    trend = TrendPhaseDetector(candles or market)

    tp_cfg = cfg.tp_config()
    tracker = TpTracker(
        executor,
        feed=bus,
        config=tp_cfg,
        policy=build_policy(cfg.TP_POLICY, tp_cfg),
        store=store,
    )

    svc_ref: Dict[str, Services] = {}
    pipeline = SignalDecisionPipeline(
        scanner,
        ta_source,
        positions,
        feed=bus,
        trend=trend,
        settings=cfg,
        is_active=lambda: svc_ref["svc"].bot_active,
        memory=memory,
    )
    engine = PoseidonEngine(
        pipeline,
        tracker,
        executor,
        positions,
        scanner,
        trend=trend,
        feed=bus,
        settings=cfg,
        store=store,
        memory=memory,
    )

    svc = Services(
        settings=cfg,
        bus=bus,
        store=store,
        recorder=recorder,
        memory=memory,
        executor=executor,
        tracker=tracker,
        pipeline=pipeline,
        trend=trend,
        engine=engine,
        bot_active=cfg.BOT_ACTIVE,
    )
    svc_ref["svc"] = svc
    return svc


def get_services() -> Services:
    global services
    if services is None:
        services = build_services(settings)
        restored = services.tracker.restore()
        if restored:
            log.info("[TP] restored %d tracked position(s)", restored)
    return services


@app.on_event("startup")
async def _startup_validate_config():
    """Fail-fast config validation at startup."""
    logging.basicConfig(
        level=getattr(logging, settings.LOG_LEVEL, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    try:
        warnings = settings.validate_runtime()
        for w in warnings:
            log.warning("[CONFIG WARNING] %s", w)
    except ValueError as e:
        # Fail-closed: crash the service rather than running with a dangerous config
        log.error(str(e))
        raise


@app.on_event("shutdown")
async def on_shutdown():
    if services is not None:
        await services.engine.stop()


# ---------------------------------------------------------------------
# Health / debug
# ---------------------------------------------------------------------


@app.get("/health")
def health():
    svc = get_services()
    return {
        "ok": True,
        "mode": svc.settings.EXECUTION_MODE,
        "bot_active": svc.bot_active,
        "engine_running": svc.engine.state.running,
    }


@app.get("/debug/config")
def debug_config():
    svc = get_services()
    out = {}
    for k, v in svc.settings.model_dump().items():
        if any(m in k.upper() for m in SENSITIVE_MARKERS):
            v = "***" if v else v
        out[k] = v
    out["tp_config"] = asdict(svc.tracker.config)
    out["tp_policy_active"] = svc.tracker.policy.name
    return out


@app.get("/feed/tail")
def feed_tail(limit: int = Query(100, ge=1, le=1000), since: Optional[int] = None):
    events = get_services().bus.tail(limit=limit, since=since)
    return {"count": len(events), "events": events}


# ---------------------------------------------------------------------
# Take profit
# ---------------------------------------------------------------------


@app.get("/tp/status")
def tp_status():
    states = get_services().tracker.statuses()
    return {"count": len(states), "positions": {k: v.to_dict() for k, v in states.items()}}


@app.get("/tp/status/{symbol}")
def tp_status_symbol(symbol: str):
    st = get_services().tracker.get_status(to_contract_symbol(symbol) or symbol)
    if st is None:
        raise HTTPException(status_code=404, detail=f"{symbol} is not tracked")
    return st.to_dict()


@app.post("/tp/config")
def tp_config(partial: Dict[str, Any] = Body(...)):
    tracker = get_services().tracker
    try:
        cfg = tracker.set_config(partial)
    except (TypeError, ValueError, KeyError) as e:
        raise HTTPException(status_code=400, detail=str(e))
    return {"status": "ok", "policy": tracker.policy.name, "config": asdict(cfg)}


@app.post("/tp/reset/{symbol}")
async def tp_reset(symbol: str):
    existed = await get_services().tracker.reset(to_contract_symbol(symbol) or symbol)
    return {"status": "reset" if existed else "not_tracked", "symbol": symbol}


# ---------------------------------------------------------------------
# Signals
# ---------------------------------------------------------------------


@app.post("/signal/analyze/{symbol}")
async def signal_analyze(
    symbol: str,
    price: Optional[float] = None,
    quote_volume: Optional[float] = None,
    category: Optional[str] = None,
):
    rec = await get_services().pipeline.evaluate(
        symbol, manual=True, price=price, quote_volume=quote_volume, category=category
    )
    return {"symbol": symbol, "result": rec.to_dict() if rec else None}


@app.get("/memory/{symbol}")
def learning_memory(symbol: str):
    memory = get_services().memory
    contract = to_contract_symbol(symbol)
    if memory is None or not contract:
        raise HTTPException(status_code=404, detail=f"no learning memory for {symbol}")
    return {"symbol": contract, **{side: s.to_dict() for side, s in memory.get(contract).items()}}


@app.get("/trend-phase/{symbol}")
async def trend_phase(symbol: str):
    contract = to_contract_symbol(symbol)
    if not contract:
        raise HTTPException(status_code=400, detail=f"bad symbol: {symbol}")
    phase = await get_services().trend.detect(contract)
    return {"symbol": contract, **phase.to_dict()}


# ---------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------


@app.post("/engine/start")
async def engine_start():
    engine = get_services().engine
    started = engine.start()
    return {"status": "started" if started else "already_running", **engine.status()}


@app.post("/engine/stop")
async def engine_stop():
    engine = get_services().engine
    stopped = await engine.stop()
    return {"status": "stopped" if stopped else "not_running", **engine.status()}


@app.get("/engine/status")
def engine_status():
    return get_services().engine.status()


@app.post("/bot/active")
def bot_active(active: bool = True):
    svc = get_services()
    svc.bot_active = active
    svc.bus.push("system", None, f"Bot {'activated' if active else 'paused'}", {"active": active})
    return {"bot_active": svc.bot_active}
