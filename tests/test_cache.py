import sqlite3
import time
from pathlib import Path

import numpy as np

from codeindex.cache import EmbeddingCache, LRUCache
from codeindex.model import EmbeddingRecord


def record(content_hash="abc", model="m1", values=(1.0, 2.0, 3.0)):
    return EmbeddingRecord(
        content_hash=content_hash,
        provider="custom",
        model=model,
        vector=np.array(values, dtype=np.float32),
        tokens=12,
        cost=0.5,
    )


def test_lru_cache_evicts_oldest_and_expires():
    cache = LRUCache(max_size=2, ttl=3600)
    cache.set("a", 1)
    cache.set("b", 2)
    assert cache.get("a") == 1  # a is now most recent
    cache.set("c", 3)
    assert cache.get("b") is None
    assert cache.get("a") == 1
    assert len(cache) == 2

    expiring = LRUCache(max_size=10, ttl=0)
    expiring.set("k", "v")
    time.sleep(0.01)
    assert expiring.get("k") is None


def test_put_then_get_survives_restart(tmp_path: Path):
    db = str(tmp_path / "cache.db")
    EmbeddingCache(db).put(record())

    fresh = EmbeddingCache(db)
    hit = fresh.get("abc", "custom", "m1", 3)
    assert hit is not None
    np.testing.assert_allclose(hit.vector, [1.0, 2.0, 3.0])
    assert (hit.tokens, hit.cost) == (12, 0.5)
    assert fresh.stats()["hits"] == 1


def test_cache_is_keyed_by_provider_model_and_width(tmp_path: Path):
    cache = EmbeddingCache(str(tmp_path / "cache.db"))
    cache.put(record(model="m1"))
    assert cache.get("abc", "custom", "m2", 3) is None
    assert cache.get("abc", "openai", "m1", 3) is None
    assert cache.get("abc", "custom", "m1", 2) is None
    assert cache.contains("abc", "custom", "m1", 3)
    assert not cache.contains("abc", "custom", "m1", 2)
    assert cache.hit_rate() == 0.0

    cache.put(record(model="m1", values=(1.0, 0.0)))
    assert cache.count() == 2
    assert cache.get("abc", "custom", "m1", 2).dimensions == 2
    assert cache.get("abc", "custom", "m1", 3).dimensions == 3


def test_legacy_table_without_width_in_key_is_rebuilt(tmp_path: Path):
    db = str(tmp_path / "cache.db")
    con = sqlite3.connect(db)
    con.execute(
        "CREATE TABLE embeddings (content_hash TEXT, provider TEXT, model TEXT, dimensions INTEGER,"
        " vector BLOB, tokens INTEGER, cost REAL, created_at REAL,"
        " PRIMARY KEY (content_hash, provider, model))"
    )
    con.execute("INSERT INTO embeddings VALUES ('abc', 'custom', 'm1', 3, x'00', 0, 0, 0)")
    con.commit()
    con.close()

    cache = EmbeddingCache(db)
    assert cache.count() == 0
    cache.put(record())
    cache.put(record(values=(1.0, 0.0)))
    assert cache.count() == 2


def test_evict_hashes_drops_rows_and_memory(tmp_path: Path):
    cache = EmbeddingCache(str(tmp_path / "cache.db"))
    cache.put(record("h1"))
    cache.put(record("h1", model="m2"))
    cache.put(record("h2"))

    assert cache.evict_hashes(["h1", "missing"]) == 2
    assert cache.get("h1", "custom", "m1", 3) is None
    assert cache.get("h2", "custom", "m1", 3) is not None
    assert cache.count() == 1
    assert cache.evict_hashes([]) == 0


def test_integrity_check_flags_corrupt_records(tmp_path: Path):
    db = str(tmp_path / "cache.db")
    cache = EmbeddingCache(db)
    cache.put(record())
    assert cache.integrity_check()["ok"]

    con = sqlite3.connect(db)
    con.execute("UPDATE embeddings SET dimensions = 99")
    con.commit()
    con.close()
    report = cache.integrity_check()
    assert not report["ok"]
    assert report["corrupt_records"] == 1
