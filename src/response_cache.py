# src/response_cache.py
import json
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional, Tuple

log = logging.getLogger(__name__)


@dataclass(frozen=True)
class CacheEntry:
    url: str
    created_at: float
    payload: str  # シリアライズ済みのレコード（共有しても書き換わらない）


class ResponseCache:
    """
    URL 完全一致キーの TTL + LRU キャッシュ。
    - get: 期限切れなら削除して None、ヒットなら最新位置へ移動
    - set: 容量に達していれば最も古い1件を追い出してから追加
    """

    def __init__(self, ttl_ms: int, max_entries: int, clock: Callable[[], float] = time.monotonic):
        self.ttl_ms = max(0, int(ttl_ms))
        self.max_entries = max(1, int(max_entries))
        self._clock = clock
        self._store: "OrderedDict[str, CacheEntry]" = OrderedDict()
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._store)

    def __contains__(self, url: str) -> bool:
        return url in self._store

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def get(self, url: str) -> Optional[Tuple[Dict[str, Any], int]]:
        with self._lock:
            entry = self._store.get(url)
            if entry is None:
                return None
            age_ms = self._now_ms() - entry.created_at
            if age_ms > self.ttl_ms:
                del self._store[url]
                log.debug("[cache] expired %s (%.0f ms)", url, age_ms)
                return None
            self._store.move_to_end(url)
            return json.loads(entry.payload), max(0, int(age_ms))

    def set(self, url: str, record: Dict[str, Any]) -> None:
        payload = json.dumps(record, ensure_ascii=False)
        with self._lock:
            if url in self._store:
                del self._store[url]
            while len(self._store) >= self.max_entries:
                evicted, _ = self._store.popitem(last=False)
                log.debug("[cache] evict %s", evicted)
            self._store[url] = CacheEntry(url=url, created_at=self._now_ms(), payload=payload)

    def purge(self, url: Optional[str] = None) -> int:
        with self._lock:
            if url is None:
                count = len(self._store)
                self._store.clear()
                return count
            return 1 if self._store.pop(url, None) is not None else 0

    def status(self) -> Dict[str, int]:
        return {"entries": len(self._store), "ttlMs": self.ttl_ms, "maxEntries": self.max_entries}
