# poseidon/feed/bus.py
from __future__ import annotations

import logging
import threading
from collections import deque
from typing import Any, Callable, Deque, Dict, List, Mapping, Optional, Set

from poseidon.feed.types import make_feed, normalize_feed

log = logging.getLogger("poseidon.feed")

Subscriber = Callable[[Dict[str, Any]], None]


class FeedBus:
    """
    In-process feed: bounded ring buffer + fan-out to subscribers.
    publish() never raises; a failing subscriber is logged and skipped.
    """

    def __init__(self, max_items: int = 1000):
        self.max_items = max(1, int(max_items))
        self._buffer: Deque[Dict[str, Any]] = deque()
        self._seen: Set[str] = set()
        self._subs: List[Subscriber] = []
        self._lock = threading.Lock()

    def publish(self, event: Mapping[str, Any]) -> bool:
        ev = normalize_feed(event)
        with self._lock:
            if ev["id"] in self._seen:
                return False
            self._seen.add(ev["id"])
            self._buffer.append(ev)
            while len(self._buffer) > self.max_items:
                old = self._buffer.popleft()
                self._seen.discard(old["id"])
            subs = list(self._subs)

        for fn in subs:
            try:
                fn(ev)
            except Exception:
                log.exception("feed subscriber failed")
        return True

    # FeedSink protocol
    def emit(self, event: Mapping[str, Any]) -> None:
        self.publish(event)

    def push(self, kind: Any, symbol: Optional[str], msg: str, data=None, level="info", tags=None, corr=None) -> None:
        self.publish(make_feed(kind, symbol, msg, data, level, tags, corr))

    def subscribe(self, fn: Subscriber) -> Callable[[], None]:
        with self._lock:
            self._subs.append(fn)

        def _unsubscribe() -> None:
            with self._lock:
                if fn in self._subs:
                    self._subs.remove(fn)

        return _unsubscribe

    def tail(self, limit: int = 100, since: Optional[int] = None) -> List[Dict[str, Any]]:
        with self._lock:
            items = list(self._buffer)
        if since is not None:
            items = [e for e in items if e["ts"] > since]
        if limit > 0:
            items = items[-limit:]
        return items

    def __len__(self) -> int:
        return len(self._buffer)
