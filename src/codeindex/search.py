import logging
import time
from dataclasses import asdict, dataclass, field
from typing import Dict, List, Optional

import numpy as np

from .cache import EmbeddingCache, LRUCache
from .chunker import attach_edges
from .controller import ConcurrencyController
from .embed import TASK_DOCUMENT, TASK_QUERY, EmbeddingProvider
from .errors import ChunkNotFound, ProviderError
from .graph import CallGraph
from .log import recent_events
from .metrics import Metrics
from .model import Chunk, IndexEntry
from .resolver import resolution_rate
from .store import SearchFilters, VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class SearchResult:
    chunk_id: str
    score: float
    path: str
    start_line: int
    end_line: int
    kind: str
    name: str
    symbols: List[str] = field(default_factory=list)
    text: str = ""
    # share of the chunk's outgoing calls that resolved; None without calls
    resolution_rate: Optional[float] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


def outgoing_rate(chunk: Chunk) -> Optional[float]:
    return resolution_rate(edge["status"] for edge in chunk.outgoing)


class QueryEngine:
    """
    High-level read API over the vector index and the call graph.
    Usage:
        engine = QueryEngine(provider, index, graph, controller)
        results = engine.search("where are embeddings retried?", k=5)
    """

    def __init__(
        self,
        provider: EmbeddingProvider,
        index: VectorIndex,
        graph: CallGraph,
        controller: ConcurrencyController,
        metrics: Optional[Metrics] = None,
        cache: Optional[EmbeddingCache] = None,
        max_results: int = 10,
        min_score: float = 0.0,
    ):
        self.provider = provider
        self.index = index
        self.graph = graph
        self.controller = controller
        self.metrics = metrics or Metrics()
        self.cache = cache
        self.max_results = max_results
        self.min_score = min_score
        self._query_vectors = LRUCache(max_size=256, ttl=3600)

    def _query_vector(self, text: str, task: str = TASK_QUERY) -> np.ndarray:
        key = (self.provider.provider_id, self.provider.model_id, task, text)
        vector = self._query_vectors.get(key)
        if vector is None:
            vector = self.controller.embed_query(text, task=task)
            self._query_vectors.set(key, vector)
        return vector

    def _result(self, entry: IndexEntry, score: float) -> SearchResult:
        chunk = entry.chunk
        return SearchResult(
            chunk_id=chunk.id,
            score=score,
            path=chunk.path,
            start_line=chunk.start_line,
            end_line=chunk.end_line,
            kind=chunk.kind,
            name=chunk.name,
            symbols=[s.qualname for s in chunk.symbols],
            text=chunk.text,
            resolution_rate=outgoing_rate(chunk),
        )

    def search(
        self,
        query: Optional[str] = None,
        k: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
        min_score: Optional[float] = None,
        vector: Optional[np.ndarray] = None,
    ) -> List[SearchResult]:
        """Rank indexed chunks by cosine similarity to a text query or a ready vector."""
        started = time.perf_counter()
        if vector is None:
            if not query or not query.strip():
                raise ValueError("search needs a non-empty query or a vector")
            vector = self._query_vector(query)
        k = self.max_results if k is None else k
        floor = self.min_score if min_score is None else min_score
        hits = self.index.query(vector, k, filters)
        results = [self._result(entry, score) for entry, score in hits if score >= floor]
        self.metrics.observe_search(time.perf_counter() - started)
        logger.debug("Search returned %d results", len(results), extra={"data": {"k": k, "query": query}})
        return results

    def peek(self, chunk_id: str) -> Dict[str, object]:
        """A chunk's text and its call context, without a similarity query."""
        entry = self.index.get(chunk_id)
        if entry is None:
            raise ChunkNotFound(chunk_id)
        chunk = entry.chunk
        # stored edges are a snapshot; prefer the live graph when it knows the file
        if self.graph.has_file(chunk.path):
            attach_edges(chunk, self.graph)
        return {
            "chunk_id": chunk.id,
            "path": chunk.path,
            "start_line": chunk.start_line,
            "end_line": chunk.end_line,
            "kind": chunk.kind,
            "name": chunk.name,
            "symbols": [s.qualname for s in chunk.symbols],
            "text": chunk.text,
            "tokens": chunk.tokens,
            "version": entry.version,
            "outgoing": chunk.outgoing,
            "incoming": chunk.incoming,
            "resolution_rate": outgoing_rate(chunk),
        }

    def find_similar(
        self,
        chunk_id: Optional[str] = None,
        snippet: Optional[str] = None,
        k: Optional[int] = None,
        filters: Optional[SearchFilters] = None,
        min_score: Optional[float] = None,
    ) -> List[SearchResult]:
        """Nearest neighbours of an indexed chunk (never itself) or of an ad hoc snippet."""
        if (chunk_id is None) == (snippet is None):
            raise ValueError("find_similar needs exactly one of chunk_id or snippet")
        started = time.perf_counter()
        exclude: List[str] = []
        if chunk_id is not None:
            entry = self.index.get(chunk_id)
            if entry is None:
                raise ChunkNotFound(chunk_id)
            vector = entry.vector
            exclude.append(chunk_id)
        else:
            if not snippet.strip():
                raise ValueError("find_similar needs a non-empty snippet")
            vector = self._query_vector(snippet, task=TASK_DOCUMENT)
        k = self.max_results if k is None else k
        floor = self.min_score if min_score is None else min_score
        hits = self.index.query(vector, k, filters, exclude_ids=exclude)
        results = [self._result(entry, score) for entry, score in hits if score >= floor]
        self.metrics.observe_search(time.perf_counter() - started)
        return results

    # introspection

    def status(self, pending: int = 0, building: bool = False) -> Dict[str, object]:
        count = self.index.count()
        return {
            "indexed": count > 0,
            "chunks": count,
            "vectors": self.index.vector_count(),
            "files": len(self.index.tracked_files()),
            "pending": pending,
            "building": building,
            "failed_chunks": self.metrics.get("chunks_failed"),
            "last_build": self.index.get_meta("last_build"),
            "provider": self.provider.provider_id,
            "model": self.provider.model_id,
            "dimensions": self.provider.dimensions,
            "index_dir": self.index.index_dir,
            "reset_reason": self.index.reset_reason,
        }

    def health_check(self, repair: bool = False) -> Dict[str, object]:
        provider: Dict[str, object] = {"id": self.provider.provider_id, "model": self.provider.model_id}
        try:
            provider["reachable"] = bool(self.provider.ping())
        except ProviderError as exc:
            provider["reachable"] = False
            provider["error"] = str(exc)

        cache = self.cache.integrity_check() if self.cache is not None else {"ok": True}
        index = self.index.check()
        repaired = False
        if repair and not index["ok"] and index["integrity"] == "ok":
            logger.warning("Rebuilding vector index from stored rows", extra={"data": index})
            self.index.rebuild_vectors()
            self.index.save()
            index = self.index.check()
            repaired = True
        return {
            "healthy": bool(provider["reachable"] and cache["ok"] and index["ok"]),
            "provider": provider,
            "cache": cache,
            "index": index,
            "repaired": repaired,
        }

    def metrics_report(self) -> Dict[str, object]:
        counts = self.graph.resolution_counts()
        statuses = [status for status, n in counts.items() for _ in range(n)]
        report = self.metrics.snapshot()
        report["cache_hit_rate"] = self.metrics.cache_hit_rate()
        report["resolution"] = counts
        report["resolution_rate"] = resolution_rate(statuses)
        if self.cache is not None:
            report["cache"] = self.cache.stats()
        return report

    def logs(self, limit: Optional[int] = 50, level: Optional[str] = None, category: Optional[str] = None) -> List[Dict]:
        return recent_events(limit=limit, level=level, category=category)
