import json

import pytest

from codeindex import cli
from codeindex.tools import CodeIndexService


@pytest.fixture
def run(monkeypatch, settings, provider, capsys):
    def factory(root=".", config_path=None):
        return CodeIndexService(root=root, settings=settings, provider=provider)

    monkeypatch.setattr(cli, "CodeIndexService", factory)

    def invoke(*argv):
        code = cli.main(list(argv))
        out, err = capsys.readouterr()
        return code, out, err

    return invoke


def test_index_then_search(run, repo):
    code, out, _ = run("index", str(repo))
    assert code == 0
    assert "Indexed." in out

    code, out, _ = run("search", "fibonacci number", "--repo", str(repo), "--json", "--top-k", "1")
    assert code == 0
    (result,) = json.loads(out)
    assert result["path"] == "math_utils.py"


def test_estimate_prints_cost_table(run, repo, backend):
    code, out, _ = run("index", str(repo), "--estimate")
    assert code == 0
    assert "Indexing estimate" in out
    assert backend.calls == []


def test_status_reports_unindexed_repo(run, repo):
    code, out, _ = run("status", "--repo", str(repo))
    assert code == 0
    assert "not indexed" in out


def test_peek_unknown_chunk_exits_2(run, repo):
    run("index", str(repo))
    code, _, err = run("peek", "deadbeef", "--repo", str(repo))
    assert code == 2
    assert "Chunk not found: deadbeef" in err


def test_empty_query_exits_1(run, repo):
    code, _, err = run("search", "  ", "--repo", str(repo))
    assert code == 1
    assert err.startswith("Error:")


def test_similar_requires_a_target(run, repo):
    with pytest.raises(SystemExit):
        run("similar", "--repo", str(repo))


def test_similar_by_chunk_excludes_itself(run, repo):
    run("index", str(repo))
    _, out, _ = run("search", "fibonacci number", "--repo", str(repo), "--json", "--top-k", "1")
    chunk_id = json.loads(out)[0]["chunk_id"]

    code, out, _ = run("similar", "--chunk", chunk_id, "--repo", str(repo), "--json")
    assert code == 0
    assert chunk_id not in {r["chunk_id"] for r in json.loads(out)}


def test_health_and_metrics(run, repo):
    run("index", str(repo))
    code, out, _ = run("health", "--repo", str(repo))
    assert code == 0
    assert "Index is healthy." in out

    code, out, _ = run("metrics", "--repo", str(repo), "--json")
    assert code == 0
    assert "resolution_rate" in json.loads(out)


def test_logs_filter_by_category(run, repo):
    run("index", str(repo))
    code, out, _ = run("logs", "--repo", str(repo), "--category", "indexer", "--json")
    assert code == 0
    assert all(e["category"] == "indexer" for e in json.loads(out))
