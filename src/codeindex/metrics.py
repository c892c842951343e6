import threading
from typing import Dict, Optional


class Metrics:
    """Thread-safe counters for one service instance."""

    COUNTERS = (
        "files_parsed",
        "parse_failures",
        "chunks_embedded",
        "chunks_cached",
        "chunks_failed",
        "chunks_removed",
        "provider_requests",
        "provider_retries",
        "provider_errors",
        "tokens_used",
        "searches",
        "updates_applied",
        "events_collapsed",
    )

    def __init__(self):
        self._lock = threading.Lock()
        self._counters: Dict[str, int] = {name: 0 for name in self.COUNTERS}
        self.cost = 0.0
        self._search_seconds = 0.0

    def incr(self, name: str, amount: int = 1):
        with self._lock:
            self._counters[name] = self._counters.get(name, 0) + amount

    def add_cost(self, cost: float):
        with self._lock:
            self.cost += cost

    def observe_search(self, seconds: float):
        with self._lock:
            self._counters["searches"] += 1
            self._search_seconds += seconds

    def get(self, name: str) -> int:
        with self._lock:
            return self._counters.get(name, 0)

    def snapshot(self) -> Dict[str, object]:
        with self._lock:
            data: Dict[str, object] = dict(self._counters)
            data["cost"] = round(self.cost, 8)
            searches = self._counters["searches"]
            data["avg_search_ms"] = (self._search_seconds / searches * 1000.0) if searches else None
        return data

    def cache_hit_rate(self) -> Optional[float]:
        with self._lock:
            hits = self._counters["chunks_cached"]
            total = hits + self._counters["chunks_embedded"] + self._counters["chunks_failed"]
        return hits / total if total else None
