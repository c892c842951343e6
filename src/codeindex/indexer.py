import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from typing import Dict, List, Optional, Sequence, Tuple

from .cache import EmbeddingCache
from .chunker import attach_edges, build_chunks, content_hash
from .config import IndexSettings
from .controller import ConcurrencyController, EmbedOutcome
from .embed import CostEstimate, EmbeddingProvider, create_provider, estimate_cost
from .errors import ParseFailure
from .graph import CallGraph
from .languages import get_adapter_for_path
from .metrics import Metrics
from .model import Chunk, EmbeddingRecord, ParseResult, SourceFile
from .resolver import CallResolver
from .store import VectorIndex

logger = logging.getLogger(__name__)


@dataclass
class IndexStats:
    files_total: int = 0
    files_processed: int = 0
    files_unchanged: int = 0
    files_failed: int = 0
    files_removed: int = 0
    chunks_total: int = 0
    chunks_embedded: int = 0
    chunks_cached: int = 0
    chunks_unchanged: int = 0
    chunks_failed: int = 0
    chunks_removed: int = 0
    tokens: int = 0
    cost: float = 0.0
    duration: float = 0.0
    cancelled: bool = False
    failures: List[Dict[str, str]] = field(default_factory=list)
    reset_reason: Optional[str] = None
    estimate: Optional[CostEstimate] = None

    def to_dict(self) -> Dict[str, object]:
        return asdict(self)


@dataclass
class FilePlan:
    """Chunk diff of one file against the index, before embedding."""

    path: str
    file_hash: str
    mtime: float
    version: int
    parse_failed: bool = False
    # stored hash matched, nothing was re-chunked
    up_to_date: bool = False
    chunk_ids: List[str] = field(default_factory=list)
    pending: List[Chunk] = field(default_factory=list)
    cached: int = 0
    unchanged: int = 0
    removed: List[str] = field(default_factory=list)


class Indexer:
    """
    Full build pipeline: extraction, resolution over the whole file set,
    chunking, cache lookup, embedding and index writes.

    The indexer owns (or is handed) the call graph, vector index and cache and
    exposes the per-file steps the incremental coordinator reuses.
    """

    def __init__(
        self,
        settings: IndexSettings,
        provider: Optional[EmbeddingProvider] = None,
        store: Optional[VectorIndex] = None,
        cache: Optional[EmbeddingCache] = None,
        graph: Optional[CallGraph] = None,
        controller: Optional[ConcurrencyController] = None,
        metrics: Optional[Metrics] = None,
    ):
        self.settings = settings
        self.metrics = metrics or Metrics()
        self.provider = provider or create_provider(settings)
        self.store = store or VectorIndex(
            settings.index_dir,
            self.provider.provider_id,
            self.provider.model_id,
            self.provider.dimensions,
        )
        self.cache = cache or EmbeddingCache(self.store.db_path)
        self.graph = graph or CallGraph()
        self.resolver = CallResolver(self.graph)
        self.controller = controller or ConcurrencyController(
            self.provider,
            self.cache,
            concurrency=settings.concurrency,
            retries=settings.retries,
            retry_delay=settings.retry_delay,
            retry_max_delay=settings.retry_max_delay,
            batch_size=settings.batch_size,
            metrics=self.metrics,
        )
        self.last_stats: Optional[IndexStats] = None
        self._build_lock = threading.Lock()
        self._building = threading.Event()

    @property
    def building(self) -> bool:
        return self._building.is_set()

    # per-file steps

    def extract(self, path: str, contents: str) -> Tuple[ParseResult, Optional[str]]:
        """Extraction result for one file plus the parse failure reason, if any."""
        adapter = get_adapter_for_path(path)
        if adapter is None:
            return ParseResult(path=path), None
        try:
            result = adapter.extract(path, contents)
        except ParseFailure as exc:
            self.metrics.incr("parse_failures")
            logger.warning("Parse failure in %s: %s", path, exc.reason, extra={"data": {"path": path}})
            return ParseResult(path=path), exc.reason
        self.metrics.incr("files_parsed")
        return result, None

    def import_targets(self, path: str, imports: Sequence[str], known: Sequence[str]) -> List[str]:
        adapter = get_adapter_for_path(path)
        if adapter is None:
            return []
        return adapter.import_targets(path, imports, known)

    def plan_file(self, path: str, contents: str, mtime: float = 0.0, parse_failed: bool = False) -> FilePlan:
        """
        Chunk a file, write everything that needs no provider call (edge
        refreshes of unchanged chunks, cache hits, removals) and return the
        chunks still to embed. Caller holds the file's lock.
        """
        version = self.graph.version(path)
        plan = FilePlan(path=path, file_hash=content_hash(contents), mtime=mtime, version=version, parse_failed=parse_failed)
        chunks: List[Chunk] = []
        if not parse_failed:
            chunks = build_chunks(path, contents, self.graph.symbols(path), self.settings.token_budget)
        existing = set(self.store.chunk_ids_for_file(path))
        provider_id, model_id, dims = self.provider.provider_id, self.provider.model_id, self.provider.dimensions

        for chunk in chunks:
            attach_edges(chunk, self.graph)
            plan.chunk_ids.append(chunk.id)
            if chunk.id in existing:
                stored = self.store.get(chunk.id)
                if stored is not None and (stored.chunk.start_byte, stored.chunk.start_line) != (
                    chunk.start_byte,
                    chunk.start_line,
                ):
                    # same text at a new position: keep the vector, rewrite the row
                    self.store.upsert(chunk, stored.vector, version)
                else:
                    self.store.update_edges(chunk.id, chunk.outgoing, chunk.incoming, version)
                plan.unchanged += 1
                continue
            record = self.cache.get(chunk.id, provider_id, model_id, dims)
            if record is not None:
                self.store.upsert(chunk, record.vector, version)
                plan.cached += 1
                self.metrics.incr("chunks_cached")
                continue
            plan.pending.append(chunk)

        live = set(plan.chunk_ids)
        for chunk_id in sorted(existing - live):
            if self.store.delete(chunk_id):
                plan.removed.append(chunk_id)
        if plan.removed:
            self.cache.evict_hashes(plan.removed)
            self.metrics.incr("chunks_removed", len(plan.removed))
        return plan

    def embed_pending(self, plans: Sequence[FilePlan], cancel: Optional[threading.Event] = None) -> EmbedOutcome:
        versions = {plan.path: plan.version for plan in plans}
        pending = [chunk for plan in plans for chunk in plan.pending]

        def on_embedded(chunk: Chunk, record: EmbeddingRecord):
            with self.graph.locks.lock_for(chunk.path):
                self.store.upsert(chunk, record.vector, versions.get(chunk.path, 0))

        return self.controller.embed_chunks(pending, on_embedded, cancel)

    def finish_file(self, plan: FilePlan, outcome: EmbedOutcome) -> int:
        """Record the file hash once every chunk is in the index; returns failed chunk count."""
        embedded = set(outcome.embedded)
        failed = sum(1 for c in plan.pending if c.id in outcome.failed)
        complete = all(c.id in embedded for c in plan.pending)
        if complete and not plan.parse_failed:
            self.store.set_file(plan.path, plan.file_hash, plan.mtime, plan.version)
        else:
            self.store.forget_file(plan.path)
        return failed

    def refresh_edges(self, path: str):
        """Rewrite the edge metadata of a file's stored chunks from the live graph."""
        version = self.graph.version(path)
        for entry in self.store.entries_for_file(path):
            chunk = attach_edges(entry.chunk, self.graph)
            self.store.update_edges(chunk.id, chunk.outgoing, chunk.incoming, version)

    def remove_file(self, path: str) -> List[str]:
        removed = self.store.delete_file(path)
        if removed:
            self.cache.evict_hashes(removed)
            self.metrics.incr("chunks_removed", len(removed))
        return removed

    # full build

    def index(
        self,
        sources: Sequence[SourceFile],
        import_edges: Optional[Dict[str, Sequence[str]]] = None,
        incremental: bool = True,
        force: bool = False,
        cancel: Optional[threading.Event] = None,
        estimate_only: bool = False,
    ) -> IndexStats:
        """
        Build or refresh the index from the discovered files.

        ``import_edges`` maps a file to the files it imports, in import order;
        when omitted it is derived from the extracted imports. With
        ``incremental`` files whose stored hash matches are not re-chunked,
        only their edge metadata is refreshed. ``force`` clears the index
        first (cached embeddings are still reused).
        """
        started = time.time()
        by_path: Dict[str, SourceFile] = {}
        for source in sources:
            by_path[source.path] = source
        ordered = [by_path[p] for p in sorted(by_path)]
        stats = IndexStats(files_total=len(ordered), reset_reason=self.store.reset_reason)

        if estimate_only:
            stats.estimate = estimate_cost([len(s.contents.encode("utf-8")) for s in ordered], self.provider.spec)
            stats.duration = time.time() - started
            return stats

        with self._build_lock:
            self._building.set()
            try:
                self._run(ordered, import_edges, incremental and not force, force, cancel, stats)
            finally:
                self._building.clear()

        stats.duration = time.time() - started
        self.last_stats = stats
        logger.info(
            "Indexed %d files: %d embedded, %d cached, %d unchanged, %d failed, %d removed",
            stats.files_processed,
            stats.chunks_embedded,
            stats.chunks_cached,
            stats.chunks_unchanged,
            stats.chunks_failed,
            stats.chunks_removed,
            extra={"data": {"duration": round(stats.duration, 3), "cancelled": stats.cancelled}},
        )
        return stats

    def _run(
        self,
        sources: List[SourceFile],
        import_edges: Optional[Dict[str, Sequence[str]]],
        incremental: bool,
        force: bool,
        cancel: Optional[threading.Event],
        stats: IndexStats,
    ):
        if force:
            logger.info("Forced rebuild: clearing index")
            self.store.clear()

        known = [s.path for s in sources]
        with ThreadPoolExecutor(max_workers=self.settings.workers, thread_name_prefix="extract") as pool:
            extracted = list(pool.map(lambda s: self.extract(s.path, s.contents), sources))

        present = set(known)
        stale = sorted((set(self.store.tracked_files()) | set(self.graph.files())) - present)
        failures: Dict[str, str] = {}

        with self.graph.locks.hold(list(present) + stale):
            for source, (result, reason) in zip(sources, extracted):
                self.graph.replace_file(result)
                if reason is not None:
                    failures[source.path] = reason
            for source, (result, _reason) in zip(sources, extracted):
                if import_edges is not None:
                    targets = list(import_edges.get(source.path, ()))
                else:
                    targets = self.import_targets(source.path, result.imports, known)
                self.graph.set_import_edges(source.path, targets)
            for path in stale:
                self.graph.remove_file(path)
            self.resolver.resolve_files(self.graph.files())

            for path in stale:
                removed = self.remove_file(path)
                stats.files_removed += 1
                stats.chunks_removed += len(removed)

        for path, reason in failures.items():
            stats.files_failed += 1
            stats.failures.append({"path": path, "reason": reason})

        def plan(source: SourceFile) -> Optional[FilePlan]:
            if cancel is not None and cancel.is_set():
                return None
            with self.graph.locks.lock_for(source.path):
                if incremental and source.path not in failures and self.store.file_hash(source.path) == content_hash(source.contents):
                    self.refresh_edges(source.path)
                    return FilePlan(
                        path=source.path,
                        file_hash=content_hash(source.contents),
                        mtime=source.mtime,
                        version=self.graph.version(source.path),
                        chunk_ids=self.store.chunk_ids_for_file(source.path),
                        up_to_date=True,
                    )
                return self.plan_file(source.path, source.contents, source.mtime, source.path in failures)

        with ThreadPoolExecutor(max_workers=self.settings.workers, thread_name_prefix="chunk") as pool:
            plans = list(pool.map(plan, sources))

        done = [p for p in plans if p is not None]
        stats.cancelled = len(done) < len(plans)

        outcome = self.embed_pending(done, cancel)
        stats.cancelled = stats.cancelled or outcome.cancelled
        stats.tokens = outcome.tokens
        stats.cost = outcome.cost
        stats.chunks_embedded = len(outcome.embedded)

        for p in done:
            if p.up_to_date:
                stats.files_unchanged += 1
                stats.chunks_unchanged += len(p.chunk_ids)
                stats.chunks_total += len(p.chunk_ids)
                stats.files_processed += 1
                continue
            failed = self.finish_file(p, outcome)
            stats.files_processed += 1
            stats.chunks_total += len(p.chunk_ids)
            stats.chunks_cached += p.cached
            stats.chunks_unchanged += p.unchanged
            stats.chunks_failed += failed
            stats.chunks_removed += len(p.removed)
            for chunk in p.pending:
                if chunk.id in outcome.failed:
                    stats.failures.append(
                        {
                            "path": chunk.path,
                            "chunk": chunk.id,
                            "lines": f"{chunk.start_line}-{chunk.end_line}",
                            "reason": outcome.failed[chunk.id],
                        }
                    )

        self.store.save()
        self.store.set_meta("last_build", datetime.now(timezone.utc).isoformat())
