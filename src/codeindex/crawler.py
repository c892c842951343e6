import fnmatch
import logging
import os
from typing import Dict, Iterable, List, Optional, Sequence

from .model import SourceFile

logger = logging.getLogger(__name__)

EXCLUDE_DIRS = {
    ".git",
    "__pycache__",
    ".venv",
    "env",
    "venv",
    "node_modules",
    ".mypy_cache",
    ".codeindex",
}


def iter_files(root: str, extensions: Sequence[str]) -> Iterable[str]:
    normalized_exts = {ext.lower() for ext in extensions}
    for dirpath, dirnames, filenames in os.walk(root):
        dirnames[:] = sorted(d for d in dirnames if d not in EXCLUDE_DIRS)
        for filename in sorted(filenames):
            _, ext = os.path.splitext(filename)
            if ext.lower() in normalized_exts:
                yield os.path.join(dirpath, filename)


def read_text(path: str) -> str:
    with open(path, "r", encoding="utf-8", errors="ignore") as rf:
        return rf.read()


def matches_patterns(rel_path: str, patterns: Sequence[str]) -> bool:
    return any(fnmatch.fnmatch(rel_path, pattern) for pattern in patterns)


def discover_sources(
    root: str,
    extensions: Sequence[str],
    include: Sequence[str] = (),
    exclude: Sequence[str] = (),
    max_file_size: int = 1024 * 1024,
) -> List[SourceFile]:
    """
    Walk ``root`` and return the files to index as SourceFile tuples, in path
    order. Paths are relative to ``root`` with forward slashes.
    """
    root = os.path.abspath(root)
    sources: List[SourceFile] = []
    for path in iter_files(root, extensions):
        rel = os.path.relpath(path, root).replace(os.sep, "/")
        if include and not matches_patterns(rel, include):
            continue
        if exclude and matches_patterns(rel, exclude):
            continue
        try:
            stat = os.stat(path)
        except OSError as exc:
            logger.warning("Skipping %s: %s", rel, exc)
            continue
        if stat.st_size > max_file_size:
            logger.info("Skipping %s: %d bytes exceeds max file size", rel, stat.st_size)
            continue
        sources.append(SourceFile(path=rel, contents=read_text(path), mtime=stat.st_mtime))
    return sources


def derive_import_edges(sources: Sequence[SourceFile], imports: Optional[Dict[str, Sequence[str]]] = None) -> Dict[str, List[str]]:
    """
    Build the file -> imported files edge list handed to the indexer.

    ``imports`` maps a path to the module names it imports; when omitted the
    sources are parsed with their language adapter to find them.
    """
    from .errors import ParseFailure
    from .languages import get_adapter_for_path

    known = [s.path for s in sources]
    edges: Dict[str, List[str]] = {}
    for source in sources:
        adapter = get_adapter_for_path(source.path)
        if adapter is None:
            continue
        if imports is not None:
            names = imports.get(source.path, ())
        else:
            try:
                names = adapter.extract(source.path, source.contents).imports
            except ParseFailure:
                continue
        targets = adapter.import_targets(source.path, names, known)
        if targets:
            edges[source.path] = targets
    return edges
