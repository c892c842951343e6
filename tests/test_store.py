import os
from pathlib import Path

import numpy as np
import pytest

from codeindex.model import Chunk, SymbolId
from codeindex.store import FAISS_INDEX, SearchFilters, VectorIndex


def make_chunk(chunk_id, path="a.py", start=0, kind="function", name="f"):
    return Chunk(
        id=chunk_id,
        path=path,
        start_byte=start,
        end_byte=start + 10,
        start_line=1,
        end_line=2,
        kind=kind,
        name=name,
        symbols=(SymbolId(path, name, kind),),
        text=f"# file: {path}\ndef {name}(): pass",
        tokens=5,
        outgoing=[{"callee": "g", "status": "unresolved"}],
    )


def vec(*values):
    return np.array(values, dtype=np.float32)


@pytest.fixture
def index(tmp_path: Path):
    return VectorIndex(str(tmp_path / "idx"), "custom", "fake", 4)


def test_upsert_get_and_round_trip_metadata(index):
    chunk = make_chunk("c1")
    index.upsert(chunk, vec(1, 2, 3, 4), version=3)

    entry = index.get("c1")
    assert entry.version == 3
    assert entry.chunk.symbols == (SymbolId("a.py", "f", "function"),)
    assert entry.chunk.outgoing == [{"callee": "g", "status": "unresolved"}]
    # the stored vector is the raw one, not the normalized search copy
    np.testing.assert_allclose(entry.vector, [1, 2, 3, 4])
    assert index.get("missing") is None


def test_upsert_replaces_existing_chunk(index):
    index.upsert(make_chunk("c1"), vec(1, 0, 0, 0))
    index.upsert(make_chunk("c1"), vec(0, 1, 0, 0), version=2)
    assert index.count() == 1
    assert index.vector_count() == 1
    ((entry, score),) = index.query(vec(0, 1, 0, 0), 5)
    assert entry.version == 2
    assert score == pytest.approx(1.0)


def test_dimension_mismatch_is_rejected(index):
    with pytest.raises(ValueError):
        index.upsert(make_chunk("c1"), vec(1, 2, 3))


def test_query_orders_by_similarity(index):
    index.upsert(make_chunk("near", start=0), vec(1, 0.1, 0, 0))
    index.upsert(make_chunk("far", start=20), vec(0, 1, 0, 0))
    index.upsert(make_chunk("opposite", start=40), vec(-1, 0, 0, 0))

    hits = index.query(vec(1, 0, 0, 0), 3)
    assert [e.chunk.id for e, _ in hits] == ["near", "far", "opposite"]
    scores = [s for _, s in hits]
    assert scores == sorted(scores, reverse=True)
    assert scores[-1] == pytest.approx(-1.0)
    assert index.query(vec(1, 0, 0, 0), 0) == []


def test_equal_scores_order_by_path_then_offset(index):
    index.upsert(make_chunk("b0", path="b.py", start=0), vec(1, 0, 0, 0))
    index.upsert(make_chunk("a10", path="a.py", start=10), vec(2, 0, 0, 0))
    index.upsert(make_chunk("a0", path="a.py", start=0), vec(3, 0, 0, 0))

    hits = index.query(vec(1, 0, 0, 0), 3)
    assert [e.chunk.id for e, _ in hits] == ["a0", "a10", "b0"]


def test_filters_and_exclusions(index):
    index.upsert(make_chunk("py", path="src/a.py"), vec(1, 0, 0, 0))
    index.upsert(make_chunk("cls", path="src/b.py", kind="class", name="B"), vec(1, 0.1, 0, 0))
    index.upsert(make_chunk("other", path="tests/t.py"), vec(1, 0.2, 0, 0))
    index.upsert(make_chunk("js", path="src/c.js"), vec(1, 0.3, 0, 0))

    query = vec(1, 0, 0, 0)
    ids = lambda hits: {e.chunk.id for e, _ in hits}  # noqa: E731
    assert ids(index.query(query, 10, SearchFilters(path_prefix="src/"))) == {"py", "cls", "js"}
    assert ids(index.query(query, 10, SearchFilters(file_type="py"))) == {"py", "cls", "other"}
    assert ids(index.query(query, 10, SearchFilters(kinds=["class"]))) == {"cls"}
    assert ids(index.query(query, 10, SearchFilters(exclude_path="src/a.py"))) == {"cls", "other", "js"}
    assert ids(index.query(query, 10, exclude_ids=["py"])) == {"cls", "other", "js"}
    # filters are applied before the cut at k
    assert ids(index.query(query, 1, SearchFilters(path_prefix="tests/"))) == {"other"}


def test_delete_and_delete_file(index):
    index.upsert(make_chunk("c1", start=0), vec(1, 0, 0, 0))
    index.upsert(make_chunk("c2", start=20), vec(0, 1, 0, 0))
    index.upsert(make_chunk("d1", path="d.py"), vec(0, 0, 1, 0))
    index.set_file("a.py", "hash-a")

    assert index.delete("d1")
    assert not index.delete("d1")
    assert index.chunk_ids_for_file("a.py") == ["c1", "c2"]
    assert sorted(index.delete_file("a.py")) == ["c1", "c2"]
    assert index.count() == 0
    assert index.vector_count() == 0
    assert index.file_hash("a.py") is None
    assert index.query(vec(1, 0, 0, 0), 5) == []


def test_update_edges_only_touches_metadata(index):
    index.upsert(make_chunk("c1"), vec(1, 0, 0, 0), version=1)
    assert index.update_edges("c1", [], [{"caller": "b.py::g"}], version=4)
    entry = index.get("c1")
    assert entry.chunk.outgoing == []
    assert entry.chunk.incoming == [{"caller": "b.py::g"}]
    assert entry.version == 4
    assert not index.update_edges("missing", [], [])


def test_file_records_and_meta(index):
    index.set_file("a.py", "h1", mtime=5.0, version=2)
    index.upsert(make_chunk("c1", path="b.py"), vec(1, 0, 0, 0))
    assert index.file_hash("a.py") == "h1"
    assert index.tracked_files() == ["a.py", "b.py"]
    index.forget_file("a.py")
    assert index.file_hash("a.py") is None

    index.set_meta("last_build", "now")
    assert index.get_meta("last_build") == "now"


def test_persistence_and_rebuild_from_rows(tmp_path: Path):
    directory = str(tmp_path / "idx")
    first = VectorIndex(directory, "custom", "fake", 4)
    first.upsert(make_chunk("c1"), vec(1, 0, 0, 0))
    first.upsert(make_chunk("c2", start=20), vec(0, 1, 0, 0))
    first.save()

    reopened = VectorIndex(directory, "custom", "fake", 4)
    assert reopened.vector_count() == 2
    assert reopened.check()["ok"]

    # a missing vector file is rebuilt from the stored rows
    os.remove(os.path.join(directory, FAISS_INDEX))
    rebuilt = VectorIndex(directory, "custom", "fake", 4)
    assert rebuilt.vector_count() == 2
    ((top, _),) = rebuilt.query(vec(0, 1, 0, 0), 1)
    assert top.chunk.id == "c2"


def test_configuration_change_resets_index(tmp_path: Path):
    directory = str(tmp_path / "idx")
    first = VectorIndex(directory, "custom", "fake", 4)
    first.upsert(make_chunk("c1"), vec(1, 0, 0, 0))
    first.set_file("a.py", "h")
    first.save()

    same = VectorIndex(directory, "custom", "fake", 4)
    assert same.reset_reason is None
    assert same.count() == 1

    changed = VectorIndex(directory, "custom", "other", 8)
    assert "fake" in changed.reset_reason and "other" in changed.reset_reason
    assert changed.count() == 0
    assert changed.vector_count() == 0
    assert changed.file_hash("a.py") is None


def test_check_and_rebuild_vectors(index):
    index.upsert(make_chunk("c1"), vec(1, 0, 0, 0))
    index._faiss.reset()
    report = index.check()
    assert not report["ok"]
    assert (report["rows"], report["vectors"]) == (1, 0)

    assert index.rebuild_vectors() == 1
    assert index.check()["ok"]


def test_clear(index):
    index.upsert(make_chunk("c1"), vec(1, 0, 0, 0))
    index.set_file("a.py", "h")
    index.clear()
    assert index.count() == 0
    assert index.vector_count() == 0
    assert index.tracked_files() == []
