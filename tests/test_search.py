import pytest

from codeindex.errors import ChunkNotFound, ProviderTransientFailure
from codeindex.indexer import Indexer
from codeindex.search import QueryEngine
from codeindex.store import SearchFilters

QUERY = "fibonacci number"


@pytest.fixture
def indexer(settings, provider, sources):
    indexer = Indexer(settings, provider=provider)
    indexer.index(sources)
    return indexer


@pytest.fixture
def engine(indexer, provider):
    return QueryEngine(
        provider,
        indexer.store,
        indexer.graph,
        indexer.controller,
        metrics=indexer.metrics,
        cache=indexer.cache,
        max_results=10,
    )


def test_search_ranks_the_matching_chunk_first(engine):
    results = engine.search(QUERY)
    assert results[0].path == "math_utils.py"
    assert "fibonacci" in results[0].symbols
    assert results[0].kind == "function"
    assert results[0].start_line == 1
    scores = [r.score for r in results]
    assert scores == sorted(scores, reverse=True)
    assert len(engine.search(QUERY, k=1)) == 1


def test_search_results_carry_resolution_rate(engine):
    by_path = {r.path: r for r in engine.search(QUERY)}
    assert by_path["app.py"].resolution_rate == 1.0
    assert by_path["geometry.py"].resolution_rate is None


def test_search_filters_and_min_score(engine):
    only_geometry = engine.search(QUERY, filters=SearchFilters(path_prefix="geometry"))
    assert [r.path for r in only_geometry] == ["geometry.py"]
    assert engine.search(QUERY, min_score=0.999) == []


def test_query_vectors_are_cached(engine, backend):
    engine.search(QUERY)
    engine.search(QUERY, k=2)
    assert sum(1 for texts, _task in backend.calls if texts == [QUERY]) == 1
    assert engine.metrics.get("searches") == 2


def test_empty_query_is_rejected(engine):
    with pytest.raises(ValueError):
        engine.search("   ")


def test_peek_returns_call_context(engine):
    (app,) = [r for r in engine.search(QUERY) if r.path == "app.py"]
    peek = engine.peek(app.chunk_id)
    assert peek["name"] == "report"
    assert {e["callee"] for e in peek["outgoing"]} == {"Circle", "fibonacci", "area"}
    assert peek["incoming"] == []
    assert peek["resolution_rate"] == 1.0
    assert peek["text"].startswith("# file: app.py")

    with pytest.raises(ChunkNotFound):
        engine.peek("no-such-chunk")


def test_find_similar_never_returns_the_chunk_itself(engine):
    top = engine.search(QUERY)[0]
    similar = engine.find_similar(chunk_id=top.chunk_id)
    assert top.chunk_id not in {r.chunk_id for r in similar}
    assert len(similar) == 2

    with pytest.raises(ChunkNotFound):
        engine.find_similar(chunk_id="missing")


def test_find_similar_from_snippet(engine):
    results = engine.find_similar(snippet="def area(self):\n    return math.pi * self.radius ** 2")
    assert results[0].path == "geometry.py"


def test_find_similar_needs_exactly_one_target(engine):
    with pytest.raises(ValueError):
        engine.find_similar()
    with pytest.raises(ValueError):
        engine.find_similar(chunk_id="x", snippet="y")
    with pytest.raises(ValueError):
        engine.find_similar(snippet="  ")


def test_status(engine):
    status = engine.status(pending=2, building=False)
    assert status["indexed"] is True
    assert status["chunks"] == 3
    assert status["vectors"] == 3
    assert status["files"] == 3
    assert status["pending"] == 2
    assert status["provider"] == "custom"
    assert status["last_build"] is not None


def test_health_check(engine, backend):
    health = engine.health_check()
    assert health["healthy"]
    assert health["provider"]["reachable"]
    assert health["index"]["ok"]

    backend.fail_ping = ProviderTransientFailure("connection refused")
    health = engine.health_check()
    assert not health["healthy"]
    assert health["provider"]["error"] == "connection refused"


def test_health_check_repairs_vector_drift(engine):
    engine.index._faiss.reset()
    assert not engine.health_check()["healthy"]

    repaired = engine.health_check(repair=True)
    assert repaired["repaired"]
    assert repaired["healthy"]
    assert engine.index.vector_count() == 3


def test_metrics_report(engine):
    engine.search(QUERY)
    report = engine.metrics_report()
    assert report["chunks_embedded"] == 3
    assert report["searches"] == 1
    assert report["cache_hit_rate"] == 0.0
    assert report["resolution"]["resolved-unique"] > 0
    assert 0.0 < report["resolution_rate"] <= 1.0
    assert report["cost"] > 0
    assert report["cache"]["misses"] >= 3
