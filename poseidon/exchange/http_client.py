from __future__ import annotations

import logging
import random
import time
from typing import Any, Dict, Optional

import requests

log = logging.getLogger("poseidon.http")


class PoseidonHttpClient:
    """
    Blocking JSON client for the order backend and public market-data APIs.
    Retries 418/429/5xx and network errors with exponential backoff, then raises
    RuntimeError. Async callers wrap it with asyncio.to_thread.
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = 12.0,
        max_retries: int = 3,
        session: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = timeout
        self.max_retries = max_retries
        self.session = session or requests.Session()

    # ------------------------------------------------------------------
    # robust request helper
    # ------------------------------------------------------------------
    def _request(
        self,
        method: str,
        path: str,
        params=None,
        json_body=None,
        headers=None,
        max_retries: Optional[int] = None,
    ):
        url = f"{self.base_url}{path}"
        params = dict(params or {})
        headers = dict(headers or {})
        retries = self.max_retries if max_retries is None else max_retries

        last_err = None
        for attempt in range(retries + 1):
            try:
                r = self.session.request(
                    method,
                    url,
                    params=params,
                    json=json_body,
                    headers=headers,
                    timeout=self.timeout,
                )

                # Rate limit / temp ban
                if r.status_code in (418, 429):
                    ra = r.headers.get("Retry-After")
                    sleep_s = float(ra) if ra else (0.4 * (2**attempt))
                    sleep_s += random.uniform(0, 0.2)
                    last_err = f"HTTP {r.status_code}"
                    time.sleep(min(sleep_s, 10.0))
                    continue

                # Server errors
                if r.status_code >= 500:
                    last_err = f"HTTP {r.status_code}: {r.text[:200]}"
                    time.sleep(min(0.4 * (2**attempt), 8.0))
                    continue

                r.raise_for_status()
                return r.json() if r.content else None

            except (requests.Timeout, requests.ConnectionError) as e:
                last_err = e
                time.sleep(min(0.4 * (2**attempt), 8.0))
                continue
            except Exception as e:
                last_err = e
                break

        raise RuntimeError(f"Request failed after retries: {method} {path} ({last_err})")

    def get(self, path: str, params: Optional[Dict[str, Any]] = None):
        return self._request("GET", path, params=params)

    def post(self, path: str, body: Dict[str, Any]):
        # order side effects are not retried: a retry could double-fill
        return self._request("POST", path, json_body=body, max_retries=0)
