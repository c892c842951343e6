"""
Embedding cache for codeindex.

Records are keyed by (content hash, provider, model, dimensions) and persisted
in SQLite so a restarted build never re-submits a chunk that was already
embedded at the same width. A small in-memory LRU sits in front of the table.
"""
import logging
import threading
import time
from collections import OrderedDict
from typing import Any, Dict, Iterable, Optional

from .model import EmbeddingRecord
from .store import blob_to_vector, db_conn, vector_to_blob

logger = logging.getLogger(__name__)


class LRUCache:
    """Simple LRU cache with TTL support for expensive operations"""

    def __init__(self, max_size: int = 1000, ttl: int = 3600):
        self.max_size = max_size
        self.ttl = ttl
        self.cache = OrderedDict()
        self._lock = threading.Lock()

    def get(self, key: Any) -> Optional[Any]:
        """Get a value from the cache if it exists and hasn't expired"""
        with self._lock:
            if key in self.cache:
                value, timestamp = self.cache[key]
                if time.time() - timestamp < self.ttl:
                    self.cache.move_to_end(key)
                    return value
                del self.cache[key]
            return None

    def set(self, key: Any, value: Any):
        with self._lock:
            if key in self.cache:
                del self.cache[key]
            while self.max_size > 0 and len(self.cache) >= self.max_size:
                self.cache.popitem(last=False)
            self.cache[key] = (value, time.time())

    def discard_where(self, predicate) -> int:
        with self._lock:
            doomed = [key for key in self.cache if predicate(key)]
            for key in doomed:
                del self.cache[key]
            return len(doomed)

    def __len__(self) -> int:
        return len(self.cache)


_CACHE_KEY = ("content_hash", "provider", "model", "dimensions")


def _primary_key(con, table: str) -> tuple:
    rows = con.execute(f"PRAGMA table_info({table})").fetchall()
    # row[5] is the column's 1-based position in the primary key, 0 when not part of it
    return tuple(row[1] for row in sorted((r for r in rows if r[5]), key=lambda r: r[5]))


def ensure_cache_table(db_path: str):
    with db_conn(db_path) as con:
        pk = _primary_key(con, "embeddings")
        if pk and pk != _CACHE_KEY:
            # cached vectors are reproducible; an older key layout is simply rebuilt
            logger.warning("Rebuilding embedding cache table keyed by %s", ", ".join(pk))
            con.execute("DROP TABLE embeddings")
        con.execute(
            """
            CREATE TABLE IF NOT EXISTS embeddings (
                content_hash TEXT NOT NULL,
                provider TEXT NOT NULL,
                model TEXT NOT NULL,
                dimensions INTEGER NOT NULL,
                vector BLOB NOT NULL,
                tokens INTEGER DEFAULT 0,
                cost REAL DEFAULT 0,
                created_at REAL,
                PRIMARY KEY (content_hash, provider, model, dimensions)
            );
            """
        )


class EmbeddingCache:
    def __init__(self, db_path: str, memory_size: int = 10000, ttl: int = 7200):
        self.db_path = db_path
        self._memory = LRUCache(max_size=memory_size, ttl=ttl)
        self._stats_lock = threading.Lock()
        self.hits = 0
        self.misses = 0
        ensure_cache_table(db_path)

    def _count(self, hit: bool):
        with self._stats_lock:
            if hit:
                self.hits += 1
            else:
                self.misses += 1

    def get(self, content_hash: str, provider: str, model: str, dimensions: int) -> Optional[EmbeddingRecord]:
        key = (content_hash, provider, model, dimensions)
        record = self._memory.get(key)
        if record is None:
            with db_conn(self.db_path) as con:
                row = con.execute(
                    """
                    SELECT vector, tokens, cost FROM embeddings
                    WHERE content_hash = ? AND provider = ? AND model = ? AND dimensions = ?
                    """,
                    key,
                ).fetchone()
            if row:
                record = EmbeddingRecord(
                    content_hash=content_hash,
                    provider=provider,
                    model=model,
                    vector=blob_to_vector(row[0]),
                    tokens=row[1] or 0,
                    cost=row[2] or 0.0,
                )
                self._memory.set(key, record)
        self._count(record is not None)
        return record

    def put(self, record: EmbeddingRecord):
        """Persist one record immediately so progress survives a crash."""
        with db_conn(self.db_path) as con:
            con.execute(
                """
                INSERT OR REPLACE INTO embeddings
                    (content_hash, provider, model, dimensions, vector, tokens, cost, created_at)
                VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                """,
                (
                    record.content_hash,
                    record.provider,
                    record.model,
                    record.dimensions,
                    vector_to_blob(record.vector),
                    record.tokens,
                    record.cost,
                    time.time(),
                ),
            )
        self._memory.set((record.content_hash, record.provider, record.model, record.dimensions), record)

    def contains(self, content_hash: str, provider: str, model: str, dimensions: int) -> bool:
        key = (content_hash, provider, model, dimensions)
        if self._memory.get(key) is not None:
            return True
        with db_conn(self.db_path) as con:
            row = con.execute(
                "SELECT 1 FROM embeddings WHERE content_hash = ? AND provider = ? AND model = ? AND dimensions = ?",
                key,
            ).fetchone()
        return row is not None

    def evict_hashes(self, hashes: Iterable[str]) -> int:
        """Drop every record for hashes no live chunk references any more."""
        doomed = sorted(set(hashes))
        if not doomed:
            return 0
        with db_conn(self.db_path) as con:
            cur = con.executemany("DELETE FROM embeddings WHERE content_hash = ?", [(h,) for h in doomed])
            removed = cur.rowcount
        wanted = set(doomed)
        self._memory.discard_where(lambda key: key[0] in wanted)
        return max(removed, 0)

    def count(self) -> int:
        with db_conn(self.db_path) as con:
            return con.execute("SELECT COUNT(*) FROM embeddings").fetchone()[0]

    def integrity_check(self) -> Dict[str, object]:
        with db_conn(self.db_path) as con:
            integrity = con.execute("PRAGMA integrity_check").fetchone()[0]
            bad = con.execute(
                "SELECT COUNT(*) FROM embeddings WHERE length(vector) != dimensions * 4"
            ).fetchone()[0]
        return {"integrity": integrity, "corrupt_records": bad, "ok": integrity == "ok" and bad == 0}

    def hit_rate(self) -> Optional[float]:
        with self._stats_lock:
            total = self.hits + self.misses
            return self.hits / total if total else None

    def stats(self) -> Dict[str, object]:
        with self._stats_lock:
            hits, misses = self.hits, self.misses
        return {
            "hits": hits,
            "misses": misses,
            "hit_rate": self.hit_rate(),
            "memory_entries": len(self._memory),
        }
