from __future__ import annotations

from typing import List, Sequence

import pytest

from codeindex.languages import (
    available_adapters,
    clear_adapters,
    ensure_default_adapters,
    get_adapter,
    get_adapter_for_path,
    register_adapter,
    supported_extensions,
)
from codeindex.languages.base import LanguageAdapter
from codeindex.languages.python_adapter import PythonAdapter, build_module_index
from codeindex.model import ParseResult


class _StubAdapter(LanguageAdapter):
    def __init__(self, name: str, exts: tuple[str, ...]):
        self._name = name
        self._exts = exts

    @property
    def name(self) -> str:  # pragma: no cover - trivial
        return self._name

    @property
    def file_extensions(self) -> tuple[str, ...]:  # pragma: no cover - trivial
        return self._exts

    def extract(self, path: str, source: str) -> ParseResult:  # pragma: no cover
        raise NotImplementedError

    def import_targets(self, path: str, imports: Sequence[str], known_paths: Sequence[str]) -> List[str]:
        return []


@pytest.fixture(autouse=True)
def fresh_registry():
    clear_adapters()
    yield
    clear_adapters()
    ensure_default_adapters()


def test_register_adapter_updates_extension_map():
    stub = _StubAdapter("dummy", (".foo", ".BAR"))
    register_adapter(stub)

    assert get_adapter_for_path("src/example.foo") is stub
    assert get_adapter_for_path("src/example.bar") is stub
    assert get_adapter("dummy") is stub
    assert supported_extensions() == (".bar", ".foo")


def test_default_registry_is_python_only():
    ensure_default_adapters()
    assert {adapter.name for adapter in available_adapters()} == {"python"}
    assert supported_extensions() == (".py",)
    assert get_adapter_for_path("notes.md") is None


def test_unknown_adapter_name():
    with pytest.raises(ValueError):
        get_adapter("cobol")


def test_module_index_maps_dotted_suffixes():
    index = build_module_index(["pkg/__init__.py", "pkg/sub/mod.py"])
    assert index["pkg"] == "pkg/__init__.py"
    assert index["pkg.sub.mod"] == "pkg/sub/mod.py"
    assert index["sub.mod"] == "pkg/sub/mod.py"
    assert index["mod"] == "pkg/sub/mod.py"


def test_import_targets_resolve_absolute_and_relative_imports():
    known = ["pkg/__init__.py", "pkg/a.py", "pkg/b.py", "pkg/sub/__init__.py", "pkg/sub/c.py"]
    adapter = PythonAdapter()

    assert adapter.import_targets("pkg/sub/c.py", ["..a", ".", "pkg.b.helper"], known) == [
        "pkg/a.py",
        "pkg/sub/__init__.py",
        "pkg/b.py",
    ]
    # a package's own __init__ resolves "." siblings inside itself
    assert adapter.import_targets("pkg/__init__.py", [".a", ".sub.c"], known) == ["pkg/a.py", "pkg/sub/c.py"]
    # unknown modules and self imports are dropped
    assert adapter.import_targets("pkg/a.py", ["os", "pkg.a"], known) == []


def test_python_adapter_extracts_symbols():
    result = PythonAdapter().extract("m.py", "def f():\n    return g()\n")
    assert [s.qualname for s in result.symbols] == ["f"]
