from __future__ import annotations

import re
from typing import Any, Iterable, Optional

MAJORS = ("BTC", "ETH", "BNB", "SOL", "XRP", "ADA", "AVAX", "DOGE", "LINK", "LTC")
MEMES = ("SHIB", "PEPE", "TRUMP", "FLOKI", "BONK", "WIF", "MYRO")

BTC_ALIASES = {"BTCUSDT", "BTC-USDT", "BTCUSDTM", "XBTUSDT"}
DEFAULT_DENYLIST = r"ALTCOIN|ZEUS|TEST"


def normalize_base(symbol: Any) -> str:
    """'xbt-usdtm' / 'BTCUSDT' / 'btc' -> 'BTC'."""
    s = re.sub(r"[-_/]", "", str(symbol or "").upper())
    s = re.sub(r"USDTM?$", "", s)
    return "BTC" if s == "XBT" else s


def to_contract_symbol(symbol: Any) -> str:
    """
    Normalize any ticker form to the futures contract form, e.g. DOGE -> DOGE-USDTM,
    BTCUSDT -> XBT-USDTM. PERP placeholders map to ''.
    """
    if not symbol:
        return ""
    s = str(symbol).strip().upper()
    if s in ("PERP", "PERPUSDT"):
        return ""
    if s in BTC_ALIASES:
        return "XBT-USDTM"

    s = re.sub(r"[-/]", "", s)
    s = re.sub(r"PERP", "", s, count=1)
    if s.endswith("USDTM"):
        base = s[: -len("USDTM")]
    elif s.endswith("USDT"):
        base = s[: -len("USDT")]
    else:
        base = s
    if not base:
        return ""
    if base == "BTC":
        base = "XBT"
    return f"{base}-USDTM"


def to_bybit_symbol(symbol: Any) -> str:
    """Linear perpetual symbol on Bybit: XBT-USDTM -> BTCUSDT."""
    base = normalize_base(symbol)
    return f"{base}USDT" if base else ""


def classify_category(
    symbol: str,
    is_mover: bool = False,
    majors: Optional[Iterable[str]] = None,
    memes: Optional[Iterable[str]] = None,
) -> str:
    """major / meme / mover / regular"""
    base = normalize_base(symbol)
    if not base:
        return "regular"
    if base in set(majors if majors is not None else MAJORS):
        return "major"
    if base in set(memes if memes is not None else MEMES):
        return "meme"
    if is_mover:
        return "mover"
    return "regular"


def is_denied_symbol(symbol: str, pattern: str = DEFAULT_DENYLIST) -> bool:
    if not pattern:
        return False
    return re.search(pattern, str(symbol or "").upper()) is not None


def match_scanner_row(rows: Iterable[Any], symbol: str) -> Optional[Any]:
    """
    Exact base match first, then the first row whose base starts with ours.
    Rows only need a `.symbol` attribute (or a 'symbol' key).
    """
    target = normalize_base(symbol)
    if not target:
        return None
    rows = list(rows or [])

    def _base(row: Any) -> str:
        sym = row.get("symbol") if isinstance(row, dict) else getattr(row, "symbol", "")
        return normalize_base(sym)

    for row in rows:
        if _base(row) == target:
            return row
    for row in rows:
        if _base(row).startswith(target):
            return row
    return None
