"""
Call graph store.

Holds every file's extraction result together with the resolved call edges and
the indexes needed to find which files must be re-resolved when one changes.
The store is owned by whoever builds it and passed to the resolver, the
indexer and the query engine by reference.

Writers take the per-file locks from ``CallGraph.locks`` for the files they
touch. The internal guard only protects the dictionaries themselves and is
never held across resolution work.
"""
from __future__ import annotations

import threading
from collections import defaultdict
from contextlib import contextmanager
from typing import Dict, Iterable, Iterator, List, Optional, Sequence, Set, Tuple

from .model import CallEdge, CallSite, ParseResult, ResolutionStatus, Symbol, SymbolId

SiteKey = Tuple[str, int, int]


class FileLockTable:
    """Lazily created re-entrant lock per file path."""

    def __init__(self):
        self._locks: Dict[str, threading.RLock] = {}
        self._guard = threading.Lock()

    def lock_for(self, path: str) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(path)
            if lock is None:
                lock = self._locks[path] = threading.RLock()
            return lock

    @contextmanager
    def hold(self, paths: Iterable[str]) -> Iterator[List[str]]:
        # sorted acquisition order keeps overlapping updates deadlock free
        ordered = sorted(set(paths))
        acquired: List[threading.RLock] = []
        try:
            for path in ordered:
                lock = self.lock_for(path)
                lock.acquire()
                acquired.append(lock)
            yield ordered
        finally:
            for lock in reversed(acquired):
                lock.release()


class CallGraph:
    def __init__(self):
        self.locks = FileLockTable()
        self._guard = threading.RLock()
        self._results: Dict[str, ParseResult] = {}
        self._versions: Dict[str, int] = {}
        self._by_name: Dict[str, Dict[str, List[Symbol]]] = {}
        self._symbols: Dict[SymbolId, Symbol] = {}
        self._edges: Dict[str, Dict[SiteKey, CallEdge]] = {}
        self._incoming: Dict[SymbolId, Set[SiteKey]] = defaultdict(set)
        # target file -> caller files with an edge candidate in it
        self._dependents: Dict[str, Dict[str, int]] = defaultdict(dict)
        self._imports: Dict[str, List[str]] = {}
        self._importers: Dict[str, Set[str]] = defaultdict(set)

    # files and symbols

    def replace_file(self, result: ParseResult) -> int:
        """Swap in a new extraction result for a file and bump its version."""
        with self._guard:
            self._drop_symbols(result.path)
            self._results[result.path] = result
            by_name: Dict[str, List[Symbol]] = {}
            for sym in result.symbols:
                self._symbols[sym.id] = sym
                by_name.setdefault(sym.name, []).append(sym)
            self._by_name[result.path] = by_name
            version = self._versions.get(result.path, 0) + 1
            self._versions[result.path] = version
            return version

    def remove_file(self, path: str) -> int:
        """Forget a deleted file. Edges that pointed into it are left for re-resolution."""
        with self._guard:
            self._drop_symbols(path)
            self._results.pop(path, None)
            self._by_name.pop(path, None)
            self._set_edges_locked(path, [])
            self._edges.pop(path, None)
            self.set_import_edges(path, [])
            self._imports.pop(path, None)
            version = self._versions.get(path, 0) + 1
            self._versions[path] = version
            return version

    def _drop_symbols(self, path: str):
        old = self._results.get(path)
        if old is None:
            return
        for sym in old.symbols:
            self._symbols.pop(sym.id, None)

    def has_file(self, path: str) -> bool:
        with self._guard:
            return path in self._results

    def files(self) -> List[str]:
        with self._guard:
            return sorted(self._results)

    def version(self, path: str) -> int:
        with self._guard:
            return self._versions.get(path, 0)

    def symbols(self, path: str) -> List[Symbol]:
        with self._guard:
            result = self._results.get(path)
            return list(result.symbols) if result else []

    def calls(self, path: str) -> List[CallSite]:
        with self._guard:
            result = self._results.get(path)
            return list(result.calls) if result else []

    def imported_modules(self, path: str) -> List[str]:
        """Import statements of ``path`` as extracted, before they are mapped onto files."""
        with self._guard:
            result = self._results.get(path)
            return list(result.imports) if result else []

    def symbol(self, sid: SymbolId) -> Optional[Symbol]:
        with self._guard:
            return self._symbols.get(sid)

    def symbols_named(self, path: str, name: str) -> List[Symbol]:
        with self._guard:
            return list(self._by_name.get(path, {}).get(name, ()))

    # import edges (supplied by file discovery)

    def set_import_edges(self, path: str, targets: Sequence[str]):
        with self._guard:
            for old in self._imports.get(path, ()):
                self._importers[old].discard(path)
            ordered: List[str] = []
            for target in targets:
                if target != path and target not in ordered:
                    ordered.append(target)
            self._imports[path] = ordered
            for target in ordered:
                self._importers[target].add(path)

    def import_edges(self, path: str) -> List[str]:
        with self._guard:
            return list(self._imports.get(path, ()))

    def importers(self, path: str) -> Set[str]:
        with self._guard:
            return set(self._importers.get(path, ()))

    # edges

    def set_edges(self, path: str, edges: Sequence[CallEdge]):
        """Replace every edge originating in ``path``."""
        with self._guard:
            self._set_edges_locked(path, edges)

    def _set_edges_locked(self, path: str, edges: Sequence[CallEdge]):
        for key, edge in self._edges.get(path, {}).items():
            for target in edge.candidates:
                keys = self._incoming.get(target)
                if keys is not None:
                    keys.discard(key)
                    if not keys:
                        del self._incoming[target]
                counts = self._dependents.get(target.path)
                if counts is not None and path in counts:
                    counts[path] -= 1
                    if counts[path] <= 0:
                        del counts[path]
        self._edges[path] = {}
        for edge in edges:
            key = edge.site.key
            self._edges[path][key] = edge
            for target in edge.candidates:
                self._incoming[target].add(key)
                counts = self._dependents[target.path]
                counts[path] = counts.get(path, 0) + 1

    def edges_from(self, path: str) -> List[CallEdge]:
        with self._guard:
            return list(self._edges.get(path, {}).values())

    def incoming(self, sid: SymbolId) -> List[CallEdge]:
        with self._guard:
            edges = []
            for key in sorted(self._incoming.get(sid, ())):
                edge = self._edges.get(key[0], {}).get(key)
                if edge is not None:
                    edges.append(edge)
            return edges

    def dependents(self, path: str) -> Set[str]:
        """Files holding at least one edge whose candidates live in ``path``."""
        with self._guard:
            return set(self._dependents.get(path, {}))

    def target_files(self, path: str) -> Set[str]:
        with self._guard:
            return {
                target.path
                for edge in self._edges.get(path, {}).values()
                for target in edge.candidates
            }

    # edge context for chunks

    def outgoing_in_span(self, path: str, start_byte: int, end_byte: int) -> List[CallEdge]:
        with self._guard:
            edges = [
                edge
                for key, edge in self._edges.get(path, {}).items()
                if start_byte <= key[1] and key[2] <= end_byte
            ]
        edges.sort(key=lambda e: (e.site.start_byte, e.site.end_byte))
        return edges

    def incoming_for(self, symbol_ids: Iterable[SymbolId]) -> List[CallEdge]:
        seen: Set[SiteKey] = set()
        edges: List[CallEdge] = []
        for sid in symbol_ids:
            for edge in self.incoming(sid):
                if edge.site.key not in seen:
                    seen.add(edge.site.key)
                    edges.append(edge)
        return edges

    def resolution_counts(self) -> Dict[str, int]:
        counts = {status.value: 0 for status in ResolutionStatus}
        with self._guard:
            for edges in self._edges.values():
                for edge in edges.values():
                    counts[edge.status.value] += 1
        return counts
