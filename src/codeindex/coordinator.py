"""
Incremental updates.

A change to one file is applied by re-extracting that file, re-resolving the
call sites of every file whose edges can depend on it and re-embedding only
chunks whose content hash changed. Updates hold the graph locks of their
affected file set, so updates with disjoint sets run in parallel while
overlapping ones are serialized.
"""
import enum
import logging
import threading
from collections import deque
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Set, Tuple

from .errors import CodeIndexError
from .graph import FileLockTable
from .indexer import Indexer

logger = logging.getLogger(__name__)


class ChangeKind(str, enum.Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"


@dataclass(frozen=True)
class FileChange:
    kind: ChangeKind
    path: str
    contents: Optional[str] = None
    mtime: float = 0.0
    # imported files in import order; derived from the source when None
    imports: Optional[Tuple[str, ...]] = None


@dataclass
class UpdateResult:
    path: str
    kind: ChangeKind
    version: int
    affected: List[str] = field(default_factory=list)
    embedded: int = 0
    cached: int = 0
    unchanged: int = 0
    removed: int = 0
    failed: int = 0
    parse_failed: bool = False


class IncrementalUpdateCoordinator:
    def __init__(self, indexer: Indexer, queue_size: int = 1000, workers: int = 2):
        self.indexer = indexer
        self.graph = indexer.graph
        self.resolver = indexer.resolver
        self.metrics = indexer.metrics
        self.queue_size = queue_size
        self.workers = workers
        # end-to-end serialization of updates to the same file
        self._file_updates = FileLockTable()
        self._cond = threading.Condition()
        self._pending: Dict[str, FileChange] = {}
        self._order: deque = deque()
        self._in_flight: Set[str] = set()
        self._threads: List[threading.Thread] = []
        self._stopping = False
        self.errors: deque = deque(maxlen=100)

    # synchronous application

    def apply(self, change: FileChange) -> UpdateResult:
        with self._file_updates.lock_for(change.path):
            if change.kind is ChangeKind.DELETED:
                result = self._apply_delete(change)
            else:
                result = self._apply_update(change)
        self.metrics.incr("updates_applied")
        logger.info(
            "Applied %s of %s",
            change.kind.value,
            change.path,
            extra={"data": {"affected": result.affected, "embedded": result.embedded, "removed": result.removed}},
        )
        return result

    def _targets_of(self, paths: Sequence[str]) -> Set[str]:
        targets: Set[str] = set()
        for path in paths:
            targets |= self.graph.target_files(path)
        return targets

    def _new_importers(self, path: str, known: Sequence[str]) -> Dict[str, List[str]]:
        """Existing files whose imports map onto ``path`` once it exists, with their new import edges."""
        links: Dict[str, List[str]] = {}
        for other in self.graph.files():
            if other == path:
                continue
            targets = self.indexer.import_targets(other, self.graph.imported_modules(other), known)
            if path in targets and path not in self.graph.import_edges(other):
                links[other] = targets
        return links

    @contextmanager
    def _locked_affected(self, path: str, extra: Iterable[str] = ()):
        """
        Hold the locks of every file a change to ``path`` can affect, plus
        ``extra``. The set is read before locking and checked again afterwards;
        if another update grew it in between, the locks are dropped and taken
        again.
        """
        extra = set(extra)
        affected = self.resolver.affected_files(path) | extra
        while True:
            with self.graph.locks.hold(affected) as held:
                current = self.resolver.affected_files(path) | extra
                if current <= set(held):
                    yield held
                    return
            affected = affected | current

    def _apply_update(self, change: FileChange) -> UpdateResult:
        path = change.path
        contents = change.contents or ""
        # parsing is CPU work on private data; no locks needed
        parsed, reason = self.indexer.extract(path, contents)
        known = sorted(set(self.graph.files()) | {path})
        if change.imports is not None:
            targets = list(change.imports)
        else:
            targets = self.indexer.import_targets(path, parsed.imports, known)
        # a new file can satisfy imports that already exist elsewhere
        relinked = {} if self.graph.has_file(path) else self._new_importers(path, known)

        with self._locked_affected(path, relinked) as affected:
            before = self._targets_of(affected)
            version = self.graph.replace_file(parsed)
            self.graph.set_import_edges(path, targets)
            for other, other_targets in relinked.items():
                self.graph.set_import_edges(other, other_targets)
            self.resolver.resolve_files(affected)
            plan = self.indexer.plan_file(path, contents, change.mtime, reason is not None)
            for other in affected:
                if other != path:
                    self.indexer.refresh_edges(other)
            stale_targets = (before | self._targets_of(affected)) - set(affected)

        outcome = self.indexer.embed_pending([plan])
        failed = self.indexer.finish_file(plan, outcome)
        self._refresh(stale_targets)
        return UpdateResult(
            path=path,
            kind=change.kind,
            version=version,
            affected=list(affected),
            embedded=len(outcome.embedded),
            cached=plan.cached,
            unchanged=plan.unchanged,
            removed=len(plan.removed),
            failed=failed,
            parse_failed=reason is not None,
        )

    def _apply_delete(self, change: FileChange) -> UpdateResult:
        path = change.path
        with self._locked_affected(path) as affected:
            before = self._targets_of(affected)
            version = self.graph.remove_file(path)
            others = [p for p in affected if p != path]
            # edges into the deleted file re-resolve to whatever is still visible
            self.resolver.resolve_files(others)
            removed = self.indexer.remove_file(path)
            for other in others:
                self.indexer.refresh_edges(other)
            stale_targets = (before | self._targets_of(others)) - set(affected)

        self._refresh(stale_targets)
        return UpdateResult(
            path=path,
            kind=change.kind,
            version=version,
            affected=list(affected),
            removed=len(removed),
        )

    def _refresh(self, paths: Set[str]):
        # incoming edge metadata of files outside the locked set
        for path in sorted(paths):
            with self.graph.locks.lock_for(path):
                self.indexer.refresh_edges(path)

    # queued application

    def submit(self, change: FileChange, block: bool = True, timeout: Optional[float] = None) -> bool:
        """
        Queue a change. A change for a file that is already waiting replaces
        the waiting one. Returns False if the queue stayed full.
        """
        with self._cond:
            if change.path not in self._pending and len(self._order) >= self.queue_size:
                if not block or not self._cond.wait_for(lambda: len(self._order) < self.queue_size, timeout):
                    logger.warning("Update queue full, dropping %s of %s", change.kind.value, change.path)
                    return False
            if change.path in self._pending:
                self._pending[change.path] = change
                self.metrics.incr("events_collapsed")
                return True
            self._pending[change.path] = change
            self._order.append(change.path)
            self._cond.notify_all()
            return True

    def pending(self) -> int:
        with self._cond:
            return len(self._order) + len(self._in_flight)

    def _next_change(self) -> Optional[FileChange]:
        # caller holds self._cond
        for path in self._order:
            if path not in self._in_flight:
                self._order.remove(path)
                self._in_flight.add(path)
                return self._pending.pop(path)
        return None

    def _work(self):
        while True:
            with self._cond:
                change = self._next_change()
                while change is None:
                    if self._stopping and not self._order:
                        return
                    self._cond.wait()
                    change = self._next_change()
            try:
                self.apply(change)
            except CodeIndexError as exc:
                self.errors.append({"path": change.path, "kind": change.kind.value, "error": str(exc)})
                logger.error("Update of %s failed: %s", change.path, exc, extra={"data": {"path": change.path}})
            finally:
                with self._cond:
                    self._in_flight.discard(change.path)
                    self._cond.notify_all()

    def start(self):
        with self._cond:
            if self._threads:
                return
            self._stopping = False
            for i in range(self.workers):
                thread = threading.Thread(target=self._work, name=f"codeindex-update-{i}", daemon=True)
                self._threads.append(thread)
                thread.start()

    def drain(self, timeout: Optional[float] = None) -> bool:
        """Wait until nothing is queued or in flight."""
        with self._cond:
            return self._cond.wait_for(lambda: not self._order and not self._in_flight, timeout)

    def stop(self, timeout: Optional[float] = None):
        with self._cond:
            self._stopping = True
            self._cond.notify_all()
            threads, self._threads = self._threads, []
        for thread in threads:
            thread.join(timeout)
