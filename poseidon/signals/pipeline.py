# poseidon/signals/pipeline.py
from __future__ import annotations

import logging
import math
import time
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional, Tuple

from poseidon.core.config import Settings, settings as default_settings
from poseidon.feed.throttle import SkipThrottle, cooldown_ok
from poseidon.feed.types import FeedType, make_feed, now_ms
from poseidon.ops.context import clear_corr_id, new_corr_id, set_corr_id
from poseidon.signals.models import SignalAnalysisRecord
from poseidon.strategy.confidence import calculate_confidence
from poseidon.strategy.ta_snapshot import TaSnapshot
from poseidon.strategy.trend_phase import is_blocking
from poseidon.symbols.universe import (
    classify_category,
    is_denied_symbol,
    match_scanner_row,
    normalize_base,
    to_contract_symbol,
)

log = logging.getLogger("poseidon.signals")

Consumer = Callable[[SignalAnalysisRecord], Awaitable[Any]]

HIGH_CONFIDENCE = 85
ALLOCATION_HIGH_PCT = 25
ALLOCATION_BASE_PCT = 10


def _finite(v: Any) -> Optional[float]:
    if v is None or isinstance(v, bool):
        return None
    try:
        f = float(v)
    except (TypeError, ValueError):
        return None
    return f if math.isfinite(f) else None


def allocation_for(confidence: float) -> int:
    return ALLOCATION_HIGH_PCT if confidence >= HIGH_CONFIDENCE else ALLOCATION_BASE_PCT


class SignalDecisionPipeline:
    """
    Gates one symbol from scanner row to trade candidate:

      active/denylist -> contract -> price/volume -> TA -> confidence ->
      cold memory -> open position / re-entry cooldown -> trend phase -> candidate

    Gates before TA return None; later gates return a skipped record.
    Skip lines reach the feed at most once per (reason, symbol) per cooldown.
    """

    def __init__(
        self,
        scanner,
        ta_source,
        positions,
        feed=None,
        trend=None,
        consumer: Optional[Consumer] = None,
        *,
        settings: Optional[Settings] = None,
        scorer: Callable[..., int] = calculate_confidence,
        is_active: Optional[Callable[[], bool]] = None,
        memory=None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.scanner = scanner
        self.ta_source = ta_source
        self.positions = positions
        self.feed = feed
        self.trend = trend
        self.consumer = consumer
        self.settings = settings or default_settings
        self.scorer = scorer
        self.is_active = is_active or (lambda: bool(self.settings.BOT_ACTIVE))
        self._clock = clock
        self.memory = memory

        self.session = self.settings.session_config()
        self.throttle = SkipThrottle(self.settings.SKIP_LOG_COOLDOWN_SECONDS, clock=clock)
        self._ta_cache: Dict[str, Tuple[float, TaSnapshot]] = {}
        self._exits: Dict[str, int] = {}

    # ------------------------------------------------------------------
    # Re-entry cooldown bookkeeping
    # ------------------------------------------------------------------
    def record_exit(self, symbol: str, exited_ms: Optional[int] = None) -> None:
        contract = to_contract_symbol(symbol)
        if contract:
            self._exits[contract] = int(exited_ms if exited_ms is not None else now_ms())

    def load_exits(self, exits: Mapping[str, int]) -> None:
        for sym, ms in exits.items():
            self.record_exit(sym, ms)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------
    async def evaluate(
        self,
        symbol_input: Any,
        manual: bool = False,
        price: Any = None,
        quote_volume: Any = None,
        category: Optional[str] = None,
        is_mover: bool = False,
    ) -> Optional[SignalAnalysisRecord]:
        try:
            return await self._evaluate(symbol_input, manual, price, quote_volume, category, is_mover)
        except Exception as e:
            log.exception("signal analysis failed for %s", symbol_input)
            self._publish(
                FeedType.ERROR,
                str(symbol_input or "SYSTEM"),
                "Signal analysis failed",
                {"error": str(e)},
                level="error",
            )
            return None
        finally:
            clear_corr_id()

    async def _evaluate(
        self,
        symbol_input: Any,
        manual: bool,
        price: Any,
        quote_volume: Any,
        category: Optional[str],
        is_mover: bool,
    ) -> Optional[SignalAnalysisRecord]:
        s = self.settings

        # 1) active / input / denylist
        if not manual and not self.is_active():
            return None
        if isinstance(symbol_input, Mapping):
            symbol_input = symbol_input.get("symbol")
        if not isinstance(symbol_input, str) or not symbol_input.strip():
            return None
        if is_denied_symbol(symbol_input, s.SYMBOL_DENYLIST_REGEX):
            self._gate_note("denylist", symbol_input.upper(), "Denylisted symbol")
            return None

        # 2) contract + scanner row
        contract = to_contract_symbol(symbol_input)
        if not contract:
            return None
        base = normalize_base(contract)
        corr = new_corr_id(contract)
        set_corr_id(corr)

        px = _finite(price)
        qv = _finite(quote_volume)
        if px is None or qv is None:
            row = match_scanner_row(await self.scanner.top_tokens(), contract)
            if row is not None:
                px = px if px is not None else _finite(row.price)
                qv = qv if qv is not None else _finite(row.quote_volume)

        # 3) price / volume sanity (no TA call past this point on failure)
        if px is None or px <= 0 or qv is None or qv <= 0:
            self._gate_note(
                "no-data",
                contract,
                "Insufficient market data",
                {"havePrice": px is not None, "haveVolume": qv is not None},
            )
            return None

        exempt = base in set(s.MAJORS) or base in set(s.MEMES)
        if not exempt and qv > s.MAX_QUOTE_VOLUME:
            self._gate_note("volume-cap", contract, "Volume above cap", {"quoteVolume": qv})
            return None
        if not exempt and s.MIN_QUOTE_VOLUME > 0 and qv < s.MIN_QUOTE_VOLUME:
            self._gate_note("volume-min", contract, "Volume below floor", {"quoteVolume": qv})
            return None

        self._publish(FeedType.SCANNER, contract, "Analyzing", {"price": px, "quoteVolume": qv}, level="debug")

        # 4) TA
        ta = await self.fetch_ta(contract)
        if ta is None:
            self._gate_note("no-ta", contract, "TA unavailable")
            return None

        # 5) confidence
        cat = category or classify_category(contract, is_mover, s.MAJORS, s.MEMES)
        confidence = self.score(contract, ta, category=cat, fallback_price=px)

        self._publish(
            FeedType.TA,
            contract,
            "TA fetched",
            {
                "signal": ta.signal,
                "confidence": confidence,
                "rsi": ta.rsi,
                "macd": ta.macd_signal,
                "bb": ta.bb_signal,
                "volumeSpike": ta.volume_spike,
            },
            level="debug",
        )

        record = SignalAnalysisRecord(
            symbol=contract,
            signal=ta.signal,
            confidence=confidence,
            rsi=ta.rsi,
            macd_signal=ta.macd_signal,
            bb_signal=ta.bb_signal,
            volume=qv,
            price=ta.price or px,
            trap_warning=ta.trap_warning,
            volume_spike=ta.volume_spike,
            category=cat,
            manual=manual,
            corr=corr,
        )

        if ta.signal not in ("bullish", "bearish"):
            return self._skip(record, "neutral")
        if confidence < s.MIN_CONFIDENCE:
            return self._skip(record, "low-confidence")

        # 6) learning memory, open position / re-entry cooldown
        if not manual:
            if self.memory is not None and s.COLD_MEMORY_GUARD and self.memory.is_cold(contract, record.side):
                return self._skip(record, "cold-memory")

            for p in await self.positions.list_open_positions():
                if to_contract_symbol(p.get("symbol") or p.get("contract")) == contract:
                    record.open_position = True
                    return self._skip(record, "open-position")

            last_exit = self._exits.get(contract, 0)
            if not cooldown_ok(last_exit, now_ms(), s.REENTRY_COOLDOWN_SECONDS):
                return self._skip(record, "cooldown")

        # 7) trend phase (observe-only on unknown/error)
        if self.trend is not None:
            phase = await self.trend.detect(contract)
            record.phase = phase.phase
            if is_blocking(phase):
                log.warning("%s phase=%s, skipping entry (%s)", contract, phase.phase, "; ".join(phase.reasons))
                return self._skip(record, f"phase-{phase.phase}", level="warn")

        # 8) candidate
        record.allocation_pct = allocation_for(confidence)
        self._publish(
            FeedType.DECISION,
            contract,
            "Trade candidate",
            record.to_dict(),
            level="success",
            tags=["candidate"],
        )

        if self.consumer is not None:
            try:
                await self.consumer(record)
            except Exception as e:
                log.exception("candidate consumer failed for %s", contract)
                self._publish(FeedType.ERROR, contract, "Candidate handling failed", {"error": str(e)}, level="error")
        return record

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------
    def score(
        self,
        contract: str,
        ta: TaSnapshot,
        category: Optional[str] = None,
        fallback_price: Optional[float] = None,
    ) -> int:
        inputs = ta.to_dict()
        inputs["symbol"] = contract
        inputs["price"] = ta.price or fallback_price
        return int(self.scorer(inputs, session=self.session, category=category))

    async def fetch_ta(self, contract: str) -> Optional[TaSnapshot]:
        now = self._clock()
        hit = self._ta_cache.get(contract)
        if hit is not None and hit[0] > now:
            return hit[1]
        try:
            ta = await self.ta_source.fetch(contract)
        except Exception as e:
            log.warning("ta source failed for %s: %s", contract, e)
            return None
        if ta is not None:
            self._ta_cache[contract] = (now + self.settings.TA_CACHE_TTL_SECONDS, ta)
        return ta

    def _skip(self, record: SignalAnalysisRecord, reason: str, level: str = "info") -> SignalAnalysisRecord:
        record.skipped = True
        record.reason = reason
        if self.throttle.should_log(f"{reason}:{record.symbol}"):
            self._publish(
                FeedType.DECISION,
                record.symbol,
                "Skipped",
                {
                    "reason": reason,
                    "signal": record.signal,
                    "confidence": record.confidence,
                    "phase": record.phase,
                },
                level=level,
                tags=["skip"],
            )
        return record

    def _gate_note(self, reason: str, symbol: str, msg: str, data: Optional[Dict[str, Any]] = None) -> None:
        log.debug("%s gated: %s", symbol, reason)
        if self.throttle.should_log(f"{reason}:{symbol}"):
            self._publish(FeedType.DECISION, symbol, msg, dict(data or {}, reason=reason), level="debug", tags=["gate"])

    def _publish(self, kind, symbol, msg, data=None, level="info", tags=None) -> None:
        if self.feed is None:
            return
        try:
            self.feed.emit(make_feed(kind, symbol, msg, data, level=level, tags=tags))
        except Exception:
            log.exception("feed emit failed")
