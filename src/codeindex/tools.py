"""
Host tool surface for codeindex.

CodeIndexService wires configuration, provider, cache, index, call graph,
controller, indexer, coordinator and query engine together and exposes the
index/status/health_check/metrics/logs/search/peek/find_similar operations
as plain dictionaries. The format_* helpers render those dictionaries as text.
"""
import json
import logging
import os
import threading
from typing import Dict, List, Optional, Sequence

from .cache import EmbeddingCache
from .config import IndexSettings, get_config
from .controller import ConcurrencyController, ProviderGates
from .coordinator import ChangeKind, FileChange, IncrementalUpdateCoordinator
from .crawler import discover_sources
from .embed import EmbeddingProvider, create_provider
from .errors import ConfigurationError
from .graph import CallGraph
from .indexer import Indexer
from .languages import supported_extensions
from .log import configure_logging
from .metrics import Metrics
from .model import SourceFile
from .search import QueryEngine
from .store import SearchFilters, VectorIndex
from .watcher import IndexFileWatcher

logger = logging.getLogger(__name__)

MAX_CONTENT_LINES = 30


class CodeIndexService:
    def __init__(
        self,
        root: str = ".",
        settings: Optional[IndexSettings] = None,
        config_path: Optional[str] = None,
        provider: Optional[EmbeddingProvider] = None,
    ):
        self.root = os.path.abspath(root)
        self.settings = settings or IndexSettings.from_config(get_config(config_path))
        configure_logging(self.settings.log_level, self.settings.max_events)

        index_dir = self.settings.index_dir
        if not os.path.isabs(index_dir):
            index_dir = os.path.join(self.root, index_dir)

        self.counters = Metrics()
        self.provider = provider or create_provider(self.settings)
        self.store = VectorIndex(index_dir, self.provider.provider_id, self.provider.model_id, self.provider.dimensions)
        self.cache = EmbeddingCache(self.store.db_path)
        self.graph = CallGraph()
        self.gates = ProviderGates()
        self.controller = ConcurrencyController(
            self.provider,
            self.cache,
            concurrency=self.settings.concurrency,
            retries=self.settings.retries,
            retry_delay=self.settings.retry_delay,
            retry_max_delay=self.settings.retry_max_delay,
            batch_size=self.settings.batch_size,
            metrics=self.counters,
            gates=self.gates,
        )
        self.indexer = Indexer(
            self.settings,
            provider=self.provider,
            store=self.store,
            cache=self.cache,
            graph=self.graph,
            controller=self.controller,
            metrics=self.counters,
        )
        self.coordinator = IncrementalUpdateCoordinator(
            self.indexer, queue_size=self.settings.queue_size, workers=self.settings.workers
        )
        self.engine = QueryEngine(
            self.provider,
            self.store,
            self.graph,
            self.controller,
            metrics=self.counters,
            cache=self.cache,
            max_results=self.settings.max_results,
            min_score=self.settings.min_score,
        )
        self.watcher: Optional[IndexFileWatcher] = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()

    # file discovery boundary

    def discover(self) -> List[SourceFile]:
        return discover_sources(
            self.root,
            supported_extensions(),
            include=self.settings.include,
            exclude=self.settings.exclude,
            max_file_size=self.settings.max_file_size,
        )

    # tools

    def index_sources(
        self,
        sources: Sequence[SourceFile],
        import_edges: Optional[Dict[str, Sequence[str]]] = None,
        force: bool = False,
        estimate_only: bool = False,
        incremental: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, object]:
        stats = self.indexer.index(
            sources,
            import_edges=import_edges,
            incremental=incremental,
            force=force,
            cancel=cancel,
            estimate_only=estimate_only,
        )
        return stats.to_dict()

    def index(
        self,
        force: bool = False,
        estimate_only: bool = False,
        incremental: bool = True,
        cancel: Optional[threading.Event] = None,
    ) -> Dict[str, object]:
        return self.index_sources(
            self.discover(), force=force, estimate_only=estimate_only, incremental=incremental, cancel=cancel
        )

    def update(self, path: str, contents: Optional[str] = None, mtime: float = 0.0) -> Dict[str, object]:
        """Apply one file change synchronously; ``contents=None`` means deleted."""
        if contents is None:
            change = FileChange(kind=ChangeKind.DELETED, path=path)
        else:
            kind = ChangeKind.MODIFIED if self.graph.has_file(path) else ChangeKind.CREATED
            change = FileChange(kind=kind, path=path, contents=contents, mtime=mtime)
        result = self.coordinator.apply(change)
        return {
            "path": result.path,
            "kind": result.kind.value,
            "version": result.version,
            "affected": result.affected,
            "embedded": result.embedded,
            "cached": result.cached,
            "unchanged": result.unchanged,
            "removed": result.removed,
            "failed": result.failed,
            "parse_failed": result.parse_failed,
        }

    def status(self) -> Dict[str, object]:
        status = self.engine.status(pending=self.coordinator.pending(), building=self.indexer.building)
        status["watching"] = self.watcher is not None
        status["update_errors"] = list(self.coordinator.errors)
        return status

    def health_check(self, repair: bool = False) -> Dict[str, object]:
        return self.engine.health_check(repair=repair)

    def metrics(self) -> Dict[str, object]:
        return self.engine.metrics_report()

    def logs(self, limit: Optional[int] = 50, level: Optional[str] = None, category: Optional[str] = None) -> List[Dict]:
        return self.engine.logs(limit=limit, level=level, category=category)

    def search(
        self,
        query: str,
        k: Optional[int] = None,
        path_prefix: Optional[str] = None,
        file_type: Optional[str] = None,
        kinds: Optional[Sequence[str]] = None,
        min_score: Optional[float] = None,
    ) -> List[Dict[str, object]]:
        filters = SearchFilters(path_prefix=path_prefix, file_type=file_type, kinds=kinds)
        return [r.to_dict() for r in self.engine.search(query, k=k, filters=filters, min_score=min_score)]

    def peek(self, chunk_id: str) -> Dict[str, object]:
        return self.engine.peek(chunk_id)

    def find_similar(
        self,
        chunk_id: Optional[str] = None,
        snippet: Optional[str] = None,
        k: Optional[int] = None,
        path_prefix: Optional[str] = None,
        exclude_file: Optional[str] = None,
    ) -> List[Dict[str, object]]:
        filters = SearchFilters(path_prefix=path_prefix, exclude_path=exclude_file)
        results = self.engine.find_similar(chunk_id=chunk_id, snippet=snippet, k=k, filters=filters)
        return [r.to_dict() for r in results]

    # watching

    def watch(self):
        if not self.settings.watch_files:
            raise ConfigurationError("File watching is disabled (INDEXING.WATCH_FILES = false)")
        if self.watcher is not None:
            return
        self.coordinator.start()
        self.watcher = IndexFileWatcher(
            self.root,
            self.coordinator,
            extensions=supported_extensions(),
            include=self.settings.include,
            exclude=self.settings.exclude,
            max_file_size=self.settings.max_file_size,
            debounce=self.settings.debounce,
        )
        self.watcher.start_watching()

    def close(self):
        if self.watcher is not None:
            self.watcher.stop_watching()
            self.watcher = None
        self.coordinator.drain(timeout=30)
        self.coordinator.stop(timeout=5)
        self.store.save()
        self.provider.close()


# text rendering


def truncate_content(content: str, max_lines: int = MAX_CONTENT_LINES) -> str:
    lines = content.split("\n")
    if len(lines) <= max_lines:
        return content
    return "\n".join(lines[:max_lines]) + f"\n# ... ({len(lines) - max_lines} more lines)"


def format_bytes(size: int) -> str:
    if size == 0:
        return "0 B"
    value = float(size)
    for unit in ("B", "KB", "MB"):
        if value < 1024:
            return f"{value:.1f}".rstrip("0").rstrip(".") + f" {unit}"
        value /= 1024
    return f"{value:.1f}".rstrip("0").rstrip(".") + " GB"


def format_cost_estimate(estimate: Dict[str, object]) -> str:
    cost = "Free" if estimate["is_free"] else f"~${estimate['cost']:.4f}"
    rows = [
        ("Files to index:", f"{estimate['files']:,} files"),
        ("Total size:", format_bytes(estimate["total_bytes"])),
        ("Estimated chunks:", f"~{estimate['chunks']:,} chunks"),
        ("Estimated tokens:", f"~{estimate['tokens']:,} tokens"),
        ("Provider:", str(estimate["provider"])),
        ("Model:", str(estimate["model"])),
        ("Cost:", cost),
    ]
    lines = ["Indexing estimate", ""]
    lines.extend(f"  {label:<20}{value}" for label, value in rows)
    return "\n".join(lines)


def format_index_stats(stats: Dict[str, object], verbose: bool = False) -> str:
    if stats.get("estimate"):
        return format_cost_estimate(stats["estimate"])

    lines: List[str] = []
    if stats["chunks_embedded"] == 0 and stats["chunks_removed"] == 0:
        lines.append(
            f"Indexed. {stats['files_total']} files processed, "
            f"{stats['chunks_unchanged'] + stats['chunks_cached']} code chunks already up to date."
        )
    elif stats["chunks_embedded"] == 0:
        lines.append(
            f"Indexed. {stats['files_total']} files, removed {stats['chunks_removed']} stale chunks, "
            f"{stats['chunks_total']} chunks remain."
        )
    else:
        main = f"Indexed. {stats['files_total']} files processed, {stats['chunks_embedded']} new chunks embedded."
        skipped = stats["chunks_unchanged"] + stats["chunks_cached"]
        if skipped:
            main += f" {skipped} unchanged chunks skipped."
        lines.append(main)
        if stats["chunks_removed"]:
            lines.append(f"Removed {stats['chunks_removed']} stale chunks.")
        lines.append(f"Tokens: {stats['tokens']:,}, Duration: {stats['duration']:.1f}s")

    if stats["chunks_failed"] or stats["files_failed"]:
        lines.append(f"Failed: {stats['chunks_failed']} chunks, {stats['files_failed']} files could not be parsed.")
    if stats.get("cancelled"):
        lines.append("Cancelled before every file was processed; committed chunks are kept.")
    if stats.get("reset_reason"):
        lines.append(f"Index was rebuilt: {stats['reset_reason']}")

    if verbose and stats.get("failures"):
        lines.append("")
        lines.append(f"Failures ({len(stats['failures'])}):")
        for failure in stats["failures"][:20]:
            where = failure["path"] + (f":{failure['lines']}" if failure.get("lines") else "")
            lines.append(f"  {where} {failure['reason']}")
    return "\n".join(lines)


def format_status(status: Dict[str, object]) -> str:
    if not status["indexed"]:
        return "Codebase is not indexed. Run `codeindex index` to create an index."
    lines = [
        "Index status:",
        f"  Indexed chunks: {status['chunks']:,}",
        f"  Files: {status['files']:,}",
        f"  Provider: {status['provider']}",
        f"  Model: {status['model']} ({status['dimensions']}D)",
        f"  Location: {status['index_dir']}",
        f"  Last build: {status['last_build'] or 'never'}",
    ]
    if status.get("pending"):
        lines.append(f"  Pending updates: {status['pending']}")
    if status.get("building"):
        lines.append("  A build is in progress.")
    if status.get("failed_chunks"):
        lines.append(f"  Failed chunks this session: {status['failed_chunks']}")
    if status.get("reset_reason"):
        lines.append("")
        lines.append(f"COMPATIBILITY WARNING: {status['reset_reason']}")
    return "\n".join(lines)


def format_results(results: Sequence[Dict[str, object]], query: Optional[str] = None, show_text: bool = True) -> str:
    if not results:
        return "No matching code found. Try a different query or run `codeindex index` first."
    blocks = []
    for idx, r in enumerate(results, 1):
        name = f' "{r["name"]}"' if r.get("name") else ""
        header = f"[{idx}] {r['kind']}{name} in {r['path']}:{r['start_line']}-{r['end_line']} (similarity: {r['score'] * 100:.1f}%)"
        if r.get("resolution_rate") is not None:
            header += f" calls resolved: {r['resolution_rate'] * 100:.0f}%"
        header += f"\n    id: {r['chunk_id']}"
        blocks.append(header + ("\n" + truncate_content(str(r["text"])) if show_text else ""))
    title = f'Found {len(results)} results for "{query}":\n\n' if query else ""
    return title + "\n\n".join(blocks)


def _format_edge(edge: Dict[str, object], outgoing: bool) -> str:
    targets = edge.get("targets") or []
    status = edge["status"]
    if outgoing:
        where = ", ".join(targets) if targets else "?"
        return f"  line {edge['line']}: {edge['callee']}() -> {where} [{status}]"
    return f"  {edge['caller']} line {edge['line']} [{status}]"


def format_peek(peek: Dict[str, object]) -> str:
    lines = [
        f"{peek['kind']} \"{peek['name']}\" at {peek['path']}:{peek['start_line']}-{peek['end_line']}",
        f"id: {peek['chunk_id']}",
        "",
        truncate_content(str(peek["text"])),
        "",
        f"Outgoing calls ({len(peek['outgoing'])}):",
    ]
    lines.extend(_format_edge(e, True) for e in peek["outgoing"])
    lines.append(f"Incoming calls ({len(peek['incoming'])}):")
    lines.extend(_format_edge(e, False) for e in peek["incoming"])
    return "\n".join(lines)


def format_health(health: Dict[str, object]) -> str:
    provider = health["provider"]
    lines = ["Index is healthy." if health["healthy"] else "Health check found problems:"]
    reach = "reachable" if provider["reachable"] else f"unreachable ({provider.get('error', 'no response')})"
    lines.append(f"  Provider {provider['id']}/{provider['model']}: {reach}")
    lines.append(f"  Cache: {'ok' if health['cache']['ok'] else health['cache']}")
    index = health["index"]
    lines.append(f"  Index: {index['rows']} rows, {index['vectors']} vectors, integrity {index['integrity']}")
    if health.get("repaired"):
        lines.append("  Vector index rebuilt from stored rows.")
    return "\n".join(lines)


def format_metrics(metrics: Dict[str, object]) -> str:
    def pct(value):
        return "n/a" if value is None else f"{value * 100:.1f}%"

    return "\n".join(
        [
            "Metrics:",
            f"  Cost accrued: ${metrics['cost']:.6f}",
            f"  Tokens used: {metrics['tokens_used']:,}",
            f"  Cache hit rate: {pct(metrics['cache_hit_rate'])}",
            f"  Resolution rate: {pct(metrics['resolution_rate'])}",
            f"  Chunks embedded/cached/failed: {metrics['chunks_embedded']}/{metrics['chunks_cached']}/{metrics['chunks_failed']}",
            f"  Provider requests/retries/errors: "
            f"{metrics['provider_requests']}/{metrics['provider_retries']}/{metrics['provider_errors']}",
            f"  Searches: {metrics['searches']}",
        ]
    )


def format_logs(events: Sequence[Dict[str, object]]) -> str:
    if not events:
        return "No logs recorded yet. Logs are captured during indexing and search operations."
    lines = []
    for e in events:
        data = f" {json.dumps(e['data'], default=str)}" if e.get("data") is not None else ""
        lines.append(f"[{e['timestamp']}] [{str(e['level']).upper()}] [{e['category']}] {e['message']}{data}")
    return "\n".join(lines)
