from pathlib import Path

from codeindex.crawler import derive_import_edges, discover_sources, iter_files, matches_patterns, read_text
from codeindex.model import SourceFile


def write(root: Path, rel: str, text: str = "x = 1\n"):
    path = root / rel
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(text, encoding="utf-8")
    return path


def test_iter_files_skips_excluded_dirs_and_other_extensions(tmp_path: Path):
    write(tmp_path, "a.py")
    write(tmp_path, "b.txt")
    write(tmp_path, "__pycache__/c.py")
    write(tmp_path, ".codeindex/d.py")

    files = list(iter_files(str(tmp_path), [".py"]))
    assert len(files) == 1
    assert files[0].endswith("a.py")


def test_read_text(tmp_path: Path):
    p = write(tmp_path, "x.py")
    assert read_text(str(p)) == "x = 1\n"


def test_discover_sources_applies_patterns_and_size_limit(tmp_path: Path):
    write(tmp_path, "pkg/mod.py")
    write(tmp_path, "pkg/test_mod.py")
    write(tmp_path, "scripts/tool.py")
    write(tmp_path, "pkg/big.py", "x = 1\n" * 100)

    sources = discover_sources(
        str(tmp_path),
        [".py"],
        include=["pkg/*"],
        exclude=["*/test_*"],
        max_file_size=50,
    )
    assert [s.path for s in sources] == ["pkg/mod.py"]
    assert sources[0].contents == "x = 1\n"
    assert sources[0].mtime > 0


def test_matches_patterns():
    assert matches_patterns("pkg/a.py", ["pkg/*"])
    assert not matches_patterns("pkg/a.py", ["lib/*", "*.txt"])


def test_derive_import_edges_parses_sources(sources):
    edges = derive_import_edges(sources)
    assert edges == {"app.py": ["math_utils.py", "geometry.py"]}


def test_derive_import_edges_from_given_imports():
    sources = [
        SourceFile("pkg/__init__.py", "", 1.0),
        SourceFile("pkg/core.py", "", 1.0),
        SourceFile("pkg/util.py", "", 1.0),
        SourceFile("main.py", "", 1.0),
    ]
    imports = {"pkg/core.py": [".util"], "main.py": ["pkg.core.run", "os"]}
    edges = derive_import_edges(sources, imports)
    assert edges == {"pkg/core.py": ["pkg/util.py"], "main.py": ["pkg/core.py"]}
