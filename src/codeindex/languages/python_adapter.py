from __future__ import annotations

import os
from typing import Dict, List, Sequence

from ..ast_py import parse_python_file
from ..model import ParseResult
from .base import LanguageAdapter


def _module_parts(path: str) -> List[str]:
    stem = os.path.splitext(path)[0].replace("\\", "/")
    parts = [p for p in stem.split("/") if p and p != "."]
    if parts and parts[-1] == "__init__":
        parts = parts[:-1]
    return parts


def build_module_index(paths: Sequence[str]) -> Dict[str, str]:
    """Map every dotted suffix of each path to the path (first path wins)."""
    index: Dict[str, str] = {}
    for path in sorted(paths):
        parts = _module_parts(path)
        for i in range(len(parts)):
            index.setdefault(".".join(parts[i:]), path)
    return index


class PythonAdapter(LanguageAdapter):
    name = "python"
    file_extensions = (".py",)

    def extract(self, path: str, source: str) -> ParseResult:
        return parse_python_file(path, source)

    def import_targets(self, path: str, imports: Sequence[str], known_paths: Sequence[str]) -> List[str]:
        module_index = build_module_index(known_paths)
        package = _module_parts(path)
        # a package's __init__ is its own package; a module's package is its parent
        if os.path.splitext(os.path.basename(path))[0] != "__init__":
            package = package[:-1]
        targets: List[str] = []
        for name in imports:
            dotted = name
            if name.startswith("."):
                level = len(name) - len(name.lstrip("."))
                base = package[: max(0, len(package) - (level - 1))]
                dotted = ".".join(base + [p for p in name.lstrip(".").split(".") if p])
            # "pkg.mod.func" -> try pkg.mod.func, then pkg.mod, then pkg
            parts = dotted.split(".")
            while parts:
                target = module_index.get(".".join(parts))
                if target:
                    if target != path and target not in targets:
                        targets.append(target)
                    break
                parts = parts[:-1]
        return targets
