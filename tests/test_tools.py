import dataclasses
import time

import pytest

from codeindex.errors import ChunkNotFound, ConfigurationError
from codeindex.tools import (
    CodeIndexService,
    format_bytes,
    format_health,
    format_index_stats,
    format_logs,
    format_metrics,
    format_peek,
    format_results,
    format_status,
    truncate_content,
)

from conftest import MATH_UTILS


@pytest.fixture
def service(repo, settings, provider):
    service = CodeIndexService(root=str(repo), settings=settings, provider=provider)
    yield service
    service.close()


def test_status_before_indexing(service):
    status = service.status()
    assert not status["indexed"]
    assert not status["watching"]
    assert format_status(status) == "Codebase is not indexed. Run `codeindex index` to create an index."


def test_index_discovers_and_embeds_the_repository(service, backend):
    stats = service.index()
    assert stats["files_total"] == 3
    assert stats["chunks_embedded"] == 3
    assert format_index_stats(stats).startswith("Indexed. 3 files processed, 3 new chunks embedded.")

    again = service.index()
    assert again["chunks_embedded"] == 0
    assert format_index_stats(again) == "Indexed. 3 files processed, 3 code chunks already up to date."
    assert backend.texts_embedded == 3


def test_estimate_only_renders_a_cost_table(service, backend):
    stats = service.index(estimate_only=True)
    text = format_index_stats(stats)
    assert text.startswith("Indexing estimate")
    assert "Files to index:" in text
    assert "fake-embed" in text
    assert backend.calls == []


def test_search_and_peek_return_plain_dicts(service):
    service.index()
    results = service.search("fibonacci number", k=2)
    assert results[0]["path"] == "math_utils.py"
    assert set(results[0]) >= {"chunk_id", "score", "path", "start_line", "end_line", "kind", "text"}

    text = format_results(results, query="fibonacci number")
    assert text.startswith('Found 2 results for "fibonacci number":')
    assert "math_utils.py:1-" in text

    peek = service.peek(results[0]["chunk_id"])
    rendered = format_peek(peek)
    assert "Incoming calls (" in rendered
    assert "app.py::report line 7 [resolved-unique]" in rendered

    with pytest.raises(ChunkNotFound):
        service.peek("missing")


def test_search_filters(service):
    service.index()
    assert service.search("circle", file_type="txt") == []
    assert {r["path"] for r in service.search("circle", kinds=["class"])} == {"geometry.py"}
    assert all(r["path"] != "app.py" for r in service.find_similar(snippet="circle area", exclude_file="app.py"))


def test_update_applies_one_change(service):
    service.index()
    result = service.update("math_utils.py", MATH_UTILS + "\n\ndef square(n):\n    return n * n\n", mtime=5.0)
    assert result["kind"] == "modified"
    assert result["embedded"] == 1
    assert "app.py" in result["affected"]

    deleted = service.update("geometry.py", None)
    assert deleted["kind"] == "deleted"
    assert deleted["removed"] == 1
    assert service.status()["files"] == 2

    created = service.update("extra.py", "def extra():\n    return 1\n")
    assert created["kind"] == "created"


def test_health_and_metrics_render(service):
    service.index()
    health = service.health_check()
    assert format_health(health).startswith("Index is healthy.")

    text = format_metrics(service.metrics())
    assert "Chunks embedded/cached/failed: 3/0/0" in text
    assert "Resolution rate: 100.0%" in text


def test_logs_capture_indexing(service):
    service.index()
    events = service.logs(category="indexer")
    assert any(e["message"].startswith("Indexed 3 files") for e in events)
    assert all(e["category"] == "indexer" for e in events)
    assert "[INFO] [indexer]" in format_logs(events)


def test_empty_renderings():
    assert format_results([]) == "No matching code found. Try a different query or run `codeindex index` first."
    assert format_logs([]) == "No logs recorded yet. Logs are captured during indexing and search operations."


def test_text_helpers():
    assert format_bytes(0) == "0 B"
    assert format_bytes(2048) == "2 KB"
    assert format_bytes(1536) == "1.5 KB"
    long_text = "\n".join(str(i) for i in range(40))
    truncated = truncate_content(long_text, max_lines=5)
    assert truncated.endswith("# ... (35 more lines)")
    assert truncate_content("short") == "short"


def test_service_is_a_context_manager(repo, settings, provider):
    with CodeIndexService(root=str(repo), settings=settings, provider=provider) as service:
        service.index()
    with CodeIndexService(root=str(repo), settings=settings, provider=provider) as reopened:
        assert reopened.status()["chunks"] == 3


def test_watch_respects_the_watch_files_setting(repo, settings, provider):
    settings = dataclasses.replace(settings, watch_files=False)
    with CodeIndexService(root=str(repo), settings=settings, provider=provider) as service:
        with pytest.raises(ConfigurationError):
            service.watch()
        assert not service.status()["watching"]


def test_watch_picks_up_file_edits(service, repo):
    service.index()
    service.watch()
    assert service.status()["watching"]
    (repo / "extra.py").write_text("def extra():\n    return fibonacci(3)\n", encoding="utf-8")

    deadline = time.time() + 10
    while time.time() < deadline and not service.store.chunk_ids_for_file("extra.py"):
        time.sleep(0.05)
    assert service.store.chunk_ids_for_file("extra.py")
