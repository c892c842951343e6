"""
File watcher for codeindex.
Turns raw file-system events into debounced FileChange submissions.
"""
import logging
import os
import threading
from typing import Dict, Optional, Sequence

from watchdog.events import FileSystemEventHandler
from watchdog.observers import Observer

from .coordinator import ChangeKind, FileChange, IncrementalUpdateCoordinator
from .crawler import EXCLUDE_DIRS, matches_patterns, read_text

logger = logging.getLogger(__name__)


class IndexFileWatcher(FileSystemEventHandler):
    """Watches a source tree and feeds changes to the update coordinator"""

    def __init__(
        self,
        root: str,
        coordinator: IncrementalUpdateCoordinator,
        extensions: Sequence[str] = (".py",),
        include: Sequence[str] = (),
        exclude: Sequence[str] = (),
        max_file_size: int = 1024 * 1024,
        debounce: float = 0.5,
    ):
        super().__init__()
        self.root = os.path.abspath(root)
        self.coordinator = coordinator
        self.extensions = {ext.lower() for ext in extensions}
        self.include = tuple(include)
        self.exclude = tuple(exclude)
        self.max_file_size = max_file_size
        self.debounce_delay = debounce
        self.observer = Observer()
        # Debounce mechanism to collapse editor save bursts
        self.debounce_timers: Dict[str, threading.Timer] = {}
        self._timers_lock = threading.Lock()

    def _relative(self, abs_path: str) -> Optional[str]:
        """Relative forward-slash path of a watched file, or None to ignore it"""
        abs_path = os.path.abspath(abs_path)
        if not abs_path.startswith(self.root + os.sep):
            return None
        rel = os.path.relpath(abs_path, self.root).replace(os.sep, "/")
        parts = rel.split("/")
        if any(part in EXCLUDE_DIRS for part in parts[:-1]):
            return None
        if os.path.splitext(rel)[1].lower() not in self.extensions:
            return None
        if self.include and not matches_patterns(rel, self.include):
            return None
        if self.exclude and matches_patterns(rel, self.exclude):
            return None
        return rel

    def _schedule(self, abs_path: str):
        rel = self._relative(abs_path)
        if rel is None:
            return
        with self._timers_lock:
            if rel in self.debounce_timers:
                self.debounce_timers[rel].cancel()
            timer = threading.Timer(self.debounce_delay, self._handle_file_change, args=[rel])
            timer.daemon = True
            self.debounce_timers[rel] = timer
            timer.start()

    def on_created(self, event):
        if not event.is_directory:
            self._schedule(event.src_path)

    def on_modified(self, event):
        if not event.is_directory:
            self._schedule(event.src_path)

    def on_deleted(self, event):
        if not event.is_directory:
            self._schedule(event.src_path)

    def on_moved(self, event):
        if event.is_directory:
            return
        self._schedule(event.src_path)
        self._schedule(event.dest_path)

    def _handle_file_change(self, rel: str):
        """Handle the actual file change after debounce"""
        with self._timers_lock:
            self.debounce_timers.pop(rel, None)
        self.coordinator.submit(self.build_change(rel))

    def build_change(self, rel: str) -> FileChange:
        """Describe the current on-disk state of ``rel`` as a FileChange"""
        abs_path = os.path.join(self.root, rel)
        try:
            stat = os.stat(abs_path)
        except OSError:
            return FileChange(kind=ChangeKind.DELETED, path=rel)
        if stat.st_size > self.max_file_size:
            logger.info("Dropping %s from the index: %d bytes exceeds max file size", rel, stat.st_size)
            return FileChange(kind=ChangeKind.DELETED, path=rel)
        try:
            contents = read_text(abs_path)
        except OSError as exc:
            # removed or made unreadable between the stat and the read
            logger.info("Dropping %s from the index: %s", rel, exc)
            return FileChange(kind=ChangeKind.DELETED, path=rel)
        kind = ChangeKind.MODIFIED if self.coordinator.graph.has_file(rel) else ChangeKind.CREATED
        return FileChange(kind=kind, path=rel, contents=contents, mtime=stat.st_mtime)

    def start_watching(self):
        """Start watching for file changes"""
        self.observer.schedule(self, self.root, recursive=True)
        self.observer.start()
        logger.info("Watching %s", self.root)

    def stop_watching(self):
        """Stop watching for file changes"""
        self.observer.stop()
        self.observer.join()

        # Cancel any pending timers
        with self._timers_lock:
            for timer in self.debounce_timers.values():
                timer.cancel()
            self.debounce_timers.clear()
