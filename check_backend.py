from dotenv import load_dotenv

load_dotenv()

import os
import requests

backend = os.getenv("BACKEND_BASE_URL", "http://localhost:3000").rstrip("/")
bybit = os.getenv("BYBIT_BASE_URL", "https://api.bybit.com").rstrip("/")
symbol = os.getenv("CHECK_SYMBOL", "BTCUSDT").strip().upper()


def show(name: str, url: str, params=None) -> None:
    try:
        r = requests.get(url, params=params or {}, timeout=15)
        body = r.text[:300].replace("\n", " ")
        print(f"[{name}] {r.status_code} {url}\n  {body}")
    except requests.RequestException as e:
        print(f"[{name}] FAILED {url}: {e}")


show("scanner", f"{backend}/api/scan-tokens")
show("positions", f"{backend}/api/positions")
show("ta", f"{backend}/api/ta/{symbol}")
show(
    "bybit-kline",
    f"{bybit}/v5/market/kline",
    {"category": "linear", "symbol": symbol, "interval": "15", "limit": 5},
)
