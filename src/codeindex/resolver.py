from __future__ import annotations

import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set

from .graph import CallGraph
from .model import CallEdge, CallShape, CallSite, ResolutionStatus, Symbol, SymbolId

logger = logging.getLogger(__name__)

CLASS_KINDS = frozenset({"class"})

# weight of each status when averaging a resolution rate
_STATUS_WEIGHT = {
    ResolutionStatus.RESOLVED_UNIQUE: 1.0,
    ResolutionStatus.RESOLVED_AMBIGUOUS: 0.5,
    ResolutionStatus.UNRESOLVED: 0.0,
}


def make_edge(site: CallSite, candidates: Iterable[Symbol]) -> CallEdge:
    ids: List[SymbolId] = []
    for sym in candidates:
        if sym.id not in ids:
            ids.append(sym.id)
    if not ids:
        status = ResolutionStatus.UNRESOLVED
    elif len(ids) == 1:
        status = ResolutionStatus.RESOLVED_UNIQUE
    else:
        status = ResolutionStatus.RESOLVED_AMBIGUOUS
    return CallEdge(site=site, candidates=tuple(ids), status=status)


def resolution_rate(statuses: Iterable[object]) -> Optional[float]:
    """Average confidence over edge statuses; None when there are no edges."""
    weights = []
    for status in statuses:
        weights.append(_STATUS_WEIGHT[ResolutionStatus(status)])
    if not weights:
        return None
    return sum(weights) / len(weights)


class CallResolver:
    """
    Resolves call sites against the symbol tables held by a CallGraph.

    Resolution is per call site and never walks the graph, so recursive and
    mutually recursive calls need no special handling.
    """

    def __init__(self, graph: CallGraph):
        self.graph = graph

    def resolve_site(self, site: CallSite) -> CallEdge:
        if site.shape is CallShape.PLAIN:
            candidates = self._visible(site.path, site.name, site.enclosing)
        elif site.shape is CallShape.SELF:
            candidates = self._resolve_self(site)
        elif site.shape is CallShape.RECEIVER:
            candidates = self._resolve_receiver(site)
        else:
            candidates = self._resolve_static(site)
        return make_edge(site, candidates)

    def resolve_file(self, path: str) -> List[CallEdge]:
        edges = [self.resolve_site(site) for site in self.graph.calls(path)]
        self.graph.set_edges(path, edges)
        return edges

    def resolve_files(self, paths: Iterable[str]) -> Dict[str, List[CallEdge]]:
        resolved = {}
        for path in sorted(set(paths)):
            resolved[path] = self.resolve_file(path)
        logger.debug(
            "Resolved call sites",
            extra={"data": {"files": len(resolved), "edges": sum(len(e) for e in resolved.values())}},
        )
        return resolved

    def affected_files(self, path: str) -> Set[str]:
        """
        Files whose edges may change when ``path`` changes: the file itself,
        files with an edge candidate inside it and files importing it.
        """
        return {path} | self.graph.dependents(path) | self.graph.importers(path)

    # lookups

    def _lexical_chain(self, enclosing: Optional[SymbolId]) -> List[Optional[SymbolId]]:
        chain: List[Optional[SymbolId]] = []
        if enclosing is not None:
            sym = self.graph.symbol(enclosing)
            owners = [enclosing] + (list(reversed(sym.scope)) if sym else [])
            for i, owner in enumerate(owners):
                # class bodies are not visible from the functions they contain
                if i > 0 and owner.kind == "class":
                    continue
                chain.append(owner)
        chain.append(None)
        return chain

    def _visible(
        self,
        path: str,
        name: str,
        enclosing: Optional[SymbolId],
        kinds: Optional[frozenset] = None,
    ) -> List[Symbol]:
        named = [s for s in self.graph.symbols_named(path, name) if kinds is None or s.kind in kinds]
        for owner in self._lexical_chain(enclosing):
            matches = [s for s in named if s.enclosing == owner]
            if matches:
                return matches
        # first imported file with a module-level match wins
        for target in self.graph.import_edges(path):
            matches = [
                s
                for s in self.graph.symbols_named(target, name)
                if s.enclosing is None and (kinds is None or s.kind in kinds)
            ]
            if matches:
                return matches
        return []

    def _enclosing_class(self, enclosing: Optional[SymbolId]) -> Optional[Symbol]:
        if enclosing is None:
            return None
        sym = self.graph.symbol(enclosing)
        if sym is None:
            return None
        for owner in [enclosing] + list(reversed(sym.scope)):
            if owner.kind == "class":
                return self.graph.symbol(owner)
        return None

    def _members(self, cls: Symbol, name: str, visited: Set[SymbolId], skip_own: bool = False) -> List[Symbol]:
        if cls.id in visited:
            return []
        visited.add(cls.id)
        if not skip_own:
            found = [s for s in self.graph.symbols_named(cls.path, name) if s.enclosing == cls.id]
            if found:
                return found
        for base in cls.bases:
            for base_cls in self._visible(cls.path, base, cls.enclosing, CLASS_KINDS):
                found = self._members(base_cls, name, visited)
                if found:
                    return found
        return []

    def _class_members(self, classes: Sequence[Symbol], name: str) -> List[Symbol]:
        members: List[Symbol] = []
        for cls in classes:
            members.extend(self._members(cls, name, set()))
        return members

    def _resolve_self(self, site: CallSite) -> List[Symbol]:
        cls = self._enclosing_class(site.enclosing)
        if cls is None:
            return []
        return self._members(cls, site.name, set(), skip_own=site.receiver == "super")

    def _resolve_receiver(self, site: CallSite) -> List[Symbol]:
        # unknown origin stays unresolved rather than guessed
        if not site.receiver_class:
            return []
        classes = self._visible(site.path, site.receiver_class, site.enclosing, CLASS_KINDS)
        return self._class_members(classes, site.name)

    def _resolve_static(self, site: CallSite) -> List[Symbol]:
        if not site.receiver:
            return []
        classes = self._visible(site.path, site.receiver, site.enclosing, CLASS_KINDS)
        members = self._class_members(classes, site.name)
        statics = [m for m in members if m.kind == "static-method"]
        return statics or members
