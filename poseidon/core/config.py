# poseidon/core/config.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from poseidon.execution.tp_models import LadderSpec, LadderStep, TpConfig
from poseidon.strategy.confidence import SessionConfig
from poseidon.symbols.universe import MAJORS, MEMES

log = logging.getLogger("poseidon.config")


def _parse_list(v: Any) -> List[str]:
    """
    Accepts:
      - list: ["BTC","ETH"]
      - csv:  "BTC,ETH"
      - json: '["BTC","ETH"]'
    Returns uppercase, trimmed symbols.
    """
    if v is None:
        return []
    if isinstance(v, list):
        return [str(x).strip().upper() for x in v if str(x).strip()]
    s = str(v).strip()
    if not s:
        return []
    if s.startswith("["):
        try:
            arr = json.loads(s)
            return [str(x).strip().upper() for x in arr if str(x).strip()]
        except Exception:
            # fall back to csv parse
            pass
    return [p.strip().upper() for p in s.split(",") if p.strip()]


def _parse_steps(v: Any) -> List[Dict[str, float]]:
    """
    Accepts:
      - list: [{"roi": 50, "take": 0.25}, ...]
      - csv:  "50:0.25,100:0.25"
      - json: '[{"roi":50,"take":0.25}]'
    Invalid entries are dropped; ordering is fixed later by TpConfig.
    """
    if v is None:
        return []

    raw: Any = v
    if isinstance(v, str):
        s = v.strip()
        if not s:
            return []
        if s.startswith("["):
            try:
                raw = json.loads(s)
            except Exception:
                log.warning("TP_STEPS is not valid JSON, ignoring: %s", s)
                return []
        else:
            raw = []
            for part in s.split(","):
                part = part.strip()
                if ":" not in part:
                    continue
                roi, take = part.split(":", 1)
                raw.append({"roi": roi.strip(), "take": take.strip()})

    out: List[Dict[str, float]] = []
    if not isinstance(raw, list):
        return out
    for item in raw:
        if not isinstance(item, dict):
            continue
        try:
            out.append({"roi": float(item["roi"]), "take": float(item["take"])})
        except Exception:
            continue
    return out


class Settings(BaseSettings):
    """Runtime configuration loaded from .env / environment variables."""

    # enable_decoding=False keeps List/Dict fields away from pydantic-settings' json decoding,
    # the validators below accept csv as well.
    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=True,
        extra="ignore",
        enable_decoding=False,
    )

    # --- Execution ---
    EXECUTION_MODE: str = "paper"  # paper/live
    BOT_ACTIVE: bool = True

    # --- Backends ---
    BACKEND_BASE_URL: str = "http://localhost:3000"
    BYBIT_BASE_URL: str = "https://api.bybit.com"
    HTTP_TIMEOUT_SECONDS: float = 12.0
    TA_SOURCE: str = "http"  # http/kline

    # --- Loops ---
    SCAN_INTERVAL_SECONDS: float = 12.0
    MONITOR_INTERVAL_SECONDS: float = 5.0

    # --- Signal gates ---
    MIN_CONFIDENCE: float = 70.0
    MAX_QUOTE_VOLUME: float = 20_000_000.0
    MIN_QUOTE_VOLUME: float = 0.0
    MAJORS: List[str] = Field(default_factory=lambda: list(MAJORS))
    MEMES: List[str] = Field(default_factory=lambda: list(MEMES))
    SYMBOL_DENYLIST_REGEX: str = r"ALTCOIN|ZEUS|TEST"
    TA_CACHE_TTL_SECONDS: float = 10.0
    SKIP_LOG_COOLDOWN_SECONDS: float = 15.0
    REENTRY_COOLDOWN_SECONDS: int = 0
    COLD_MEMORY_GUARD: bool = True  # skip sides with a losing record in learning memory

    # --- Take profit ---
    TP_POLICY: str = "ladder"  # ladder/single_partial
    TP_STEPS: List[Dict[str, float]] = Field(default_factory=list)
    TP_LADDER_STEP_PCT: float = 50.0
    TP_LADDER_TAKE_FRACTION: float = 0.25
    TP_LADDER_MAX_STEPS: int = 12
    TP_TRAIL_DROP_PCT: float = 0.25
    TP_MIN_EXIT_CONFIDENCE: float = 60.0
    TP_EMIT_THROTTLE_MS: int = 1500
    TP_MIN_REMAINDER_CONTRACTS: float = 0.0
    TP_MARGIN_FALLBACK_RATIO: float = 0.2
    EXECUTOR_TIMEOUT_SECONDS: float = 10.0

    # --- Sizing ---
    TRADE_BUDGET_USDT: float = 100.0
    DEFAULT_LEVERAGE: int = 5

    # --- Session bias ---
    SESSION_UTC_OFFSET_HOURS: int = 0

    # --- Feed / persistence ---
    FEED_BUFFER_SIZE: int = 1000
    DB_PATH: str = "data/poseidon.db"
    FEED_JSONL_PATH: str = "logs/feed.jsonl"
    LOG_LEVEL: str = "INFO"

    @field_validator("MAJORS", mode="before")
    @classmethod
    def parse_majors(cls, v: Any) -> List[str]:
        return _parse_list(v)

    @field_validator("MEMES", mode="before")
    @classmethod
    def parse_memes(cls, v: Any) -> List[str]:
        return _parse_list(v)

    @field_validator("TP_STEPS", mode="before")
    @classmethod
    def parse_tp_steps(cls, v: Any) -> List[Dict[str, float]]:
        return _parse_steps(v)

    def model_post_init(self, __context: Any) -> None:
        self.EXECUTION_MODE = (self.EXECUTION_MODE or "paper").lower().strip()
        self.TP_POLICY = (self.TP_POLICY or "ladder").lower().strip()
        self.TA_SOURCE = (self.TA_SOURCE or "http").lower().strip()
        self.LOG_LEVEL = (self.LOG_LEVEL or "INFO").upper().strip()
        self.BACKEND_BASE_URL = self.BACKEND_BASE_URL.rstrip("/")
        self.BYBIT_BASE_URL = self.BYBIT_BASE_URL.rstrip("/")

    def tp_config(self) -> TpConfig:
        return TpConfig(
            steps=tuple(LadderStep(roi=s["roi"], take=s["take"]) for s in self.TP_STEPS),
            ladder=LadderSpec(
                step_pct=self.TP_LADDER_STEP_PCT,
                take_fraction=self.TP_LADDER_TAKE_FRACTION,
                max_steps=self.TP_LADDER_MAX_STEPS,
            ),
            trail_drop_pct=self.TP_TRAIL_DROP_PCT,
            min_exit_confidence=self.TP_MIN_EXIT_CONFIDENCE,
            emit_throttle_ms=self.TP_EMIT_THROTTLE_MS,
            min_remainder_contracts=self.TP_MIN_REMAINDER_CONTRACTS,
            margin_fallback_ratio=self.TP_MARGIN_FALLBACK_RATIO,
            call_timeout_s=self.EXECUTOR_TIMEOUT_SECONDS,
        )

    def session_config(self) -> SessionConfig:
        return SessionConfig(utc_offset_hours=self.SESSION_UTC_OFFSET_HOURS)

    def validate_runtime(self) -> List[str]:
        """
        Fail-fast validation. Returns warnings (non-fatal).
        Raises ValueError for fatal misconfiguration.
        """
        errors: List[str] = []
        warnings: List[str] = []

        if self.EXECUTION_MODE not in {"paper", "live"}:
            errors.append("EXECUTION_MODE must be 'paper' or 'live'.")

        if self.TP_POLICY not in {"ladder", "single_partial"}:
            errors.append("TP_POLICY must be 'ladder' or 'single_partial'.")

        if self.TA_SOURCE not in {"http", "kline"}:
            errors.append("TA_SOURCE must be 'http' or 'kline'.")

        if not (0 <= self.MIN_CONFIDENCE <= 100):
            errors.append("MIN_CONFIDENCE must be within 0..100.")

        if self.MAX_QUOTE_VOLUME <= 0:
            errors.append("MAX_QUOTE_VOLUME must be > 0.")
        if self.MIN_QUOTE_VOLUME < 0:
            errors.append("MIN_QUOTE_VOLUME must be >= 0.")
        if self.MIN_QUOTE_VOLUME >= self.MAX_QUOTE_VOLUME:
            errors.append("MIN_QUOTE_VOLUME must be below MAX_QUOTE_VOLUME.")

        # Ladder sanity
        if not (0 < self.TP_TRAIL_DROP_PCT < 1):
            errors.append("TP_TRAIL_DROP_PCT must be a fraction between 0 and 1.")
        elif self.TP_TRAIL_DROP_PCT < 0.10:
            warnings.append(
                "TP_TRAIL_DROP_PCT is below the 10% trailing floor; the floor will apply."
            )
        if not self.TP_STEPS:
            if self.TP_LADDER_STEP_PCT <= 0:
                errors.append("TP_LADDER_STEP_PCT must be > 0.")
            if not (0 < self.TP_LADDER_TAKE_FRACTION <= 1):
                errors.append("TP_LADDER_TAKE_FRACTION must be within (0, 1].")
            if self.TP_LADDER_MAX_STEPS < 1:
                errors.append("TP_LADDER_MAX_STEPS must be >= 1.")
        elif any(s["take"] >= 1 for s in self.TP_STEPS):
            warnings.append(
                "TP_STEPS contains take >= 1; a ladder step never closes the full position."
            )
        if not (0 < self.TP_MARGIN_FALLBACK_RATIO <= 1):
            errors.append("TP_MARGIN_FALLBACK_RATIO must be within (0, 1].")
        if self.EXECUTOR_TIMEOUT_SECONDS <= 0:
            errors.append("EXECUTOR_TIMEOUT_SECONDS must be > 0.")

        # Sizing sanity
        if self.TRADE_BUDGET_USDT <= 0:
            errors.append("TRADE_BUDGET_USDT must be > 0.")
        if self.DEFAULT_LEVERAGE < 1:
            errors.append("DEFAULT_LEVERAGE must be >= 1.")

        if self.SCAN_INTERVAL_SECONDS <= 0 or self.MONITOR_INTERVAL_SECONDS <= 0:
            errors.append("SCAN_INTERVAL_SECONDS and MONITOR_INTERVAL_SECONDS must be > 0.")

        if not (-12 <= self.SESSION_UTC_OFFSET_HOURS <= 14):
            errors.append("SESSION_UTC_OFFSET_HOURS must be within -12..14.")

        if self.EXECUTION_MODE == "live":
            warnings.append(
                "EXECUTION_MODE=live routes orders to the backend at "
                f"{self.BACKEND_BASE_URL} and will trade REAL money."
            )

        if errors:
            msg = "Config validation failed:\n" + "\n".join([f"- {e}" for e in errors])
            raise ValueError(msg)

        return warnings


# Pydantic v2 + postponed annotations safety
Settings.model_rebuild()
settings = Settings()
