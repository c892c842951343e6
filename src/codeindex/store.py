import json
import logging
import os
import sqlite3
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

import faiss
import numpy as np

from .errors import StorageFailure
from .model import Chunk, IndexEntry, SymbolId

logger = logging.getLogger(__name__)

DB_NAME = "codeindex.db"
FAISS_INDEX = "index.faiss"

_CHUNK_COLUMNS = (
    "id, chunk_id, path, start_byte, end_byte, start_line, end_line, kind, name, "
    "symbols, outgoing, incoming, text, tokens, version, vector, updated_at"
)


@contextmanager
def db_conn(db_path: str):
    """Short-lived connection that commits on success and rolls back on error."""
    try:
        con = sqlite3.connect(db_path, timeout=30)
    except sqlite3.Error as exc:
        raise StorageFailure(f"Cannot open {db_path}: {exc}") from exc
    try:
        yield con
        con.commit()
    except sqlite3.Error as exc:
        con.rollback()
        raise StorageFailure(f"SQLite error on {db_path}: {exc}") from exc
    except BaseException:
        con.rollback()
        raise
    finally:
        con.close()


def ensure_db(db_path: str):
    with db_conn(db_path) as con:
        cur = con.cursor()
        cur.execute("PRAGMA journal_mode=WAL;")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS chunks (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                chunk_id TEXT NOT NULL UNIQUE,
                path TEXT NOT NULL,
                start_byte INTEGER,
                end_byte INTEGER,
                start_line INTEGER,
                end_line INTEGER,
                kind TEXT,
                name TEXT,
                symbols TEXT,
                outgoing TEXT,
                incoming TEXT,
                text TEXT,
                tokens INTEGER,
                version INTEGER,
                vector BLOB NOT NULL,
                updated_at REAL
            );
            """
        )
        cur.execute("CREATE INDEX IF NOT EXISTS idx_chunks_path ON chunks (path);")
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS files (
                path TEXT PRIMARY KEY,
                hash TEXT NOT NULL,
                mtime REAL,
                version INTEGER
            );
            """
        )
        cur.execute(
            """
            CREATE TABLE IF NOT EXISTS index_meta (
                key TEXT PRIMARY KEY,
                value TEXT
            );
            """
        )


def vector_to_blob(vector: np.ndarray) -> bytes:
    return np.asarray(vector, dtype=np.float32).tobytes()


def blob_to_vector(blob: bytes) -> np.ndarray:
    return np.frombuffer(blob, dtype=np.float32).copy()


def _unit(vectors: np.ndarray) -> np.ndarray:
    vectors = np.asarray(vectors, dtype=np.float32)
    if vectors.ndim == 1:
        vectors = vectors[None, :]
    return vectors / (np.linalg.norm(vectors, axis=1, keepdims=True) + 1e-12)


def _symbols_to_json(symbols: Sequence[SymbolId]) -> str:
    return json.dumps([s.to_dict() for s in symbols])


def _symbols_from_json(raw: Optional[str]) -> Tuple[SymbolId, ...]:
    return tuple(SymbolId(d["path"], d["qualname"], d["kind"]) for d in json.loads(raw or "[]"))


def _row_to_entry(row) -> IndexEntry:
    (
        _rowid, chunk_id, path, start_byte, end_byte, start_line, end_line, kind, name,
        symbols, outgoing, incoming, text, tokens, version, vector, updated_at,
    ) = row
    chunk = Chunk(
        id=chunk_id,
        path=path,
        start_byte=start_byte,
        end_byte=end_byte,
        start_line=start_line,
        end_line=end_line,
        kind=kind,
        name=name,
        symbols=_symbols_from_json(symbols),
        text=text,
        tokens=tokens,
        outgoing=json.loads(outgoing or "[]"),
        incoming=json.loads(incoming or "[]"),
    )
    return IndexEntry(chunk=chunk, vector=blob_to_vector(vector), version=version or 0, updated_at=updated_at or 0.0)


@dataclass
class SearchFilters:
    path_prefix: Optional[str] = None
    file_type: Optional[str] = None
    kinds: Optional[Sequence[str]] = None
    exclude_path: Optional[str] = None

    def active(self) -> bool:
        return bool(self.path_prefix or self.file_type or self.kinds or self.exclude_path)

    def matches(self, chunk: Chunk) -> bool:
        if self.path_prefix and not chunk.path.startswith(self.path_prefix):
            return False
        if self.file_type:
            ext = self.file_type if self.file_type.startswith(".") else f".{self.file_type}"
            if not chunk.path.lower().endswith(ext.lower()):
                return False
        if self.kinds and chunk.kind not in self.kinds:
            return False
        if self.exclude_path and chunk.path == self.exclude_path:
            return False
        return True


class VectorIndex:
    """
    Chunk rows live in SQLite together with the raw stored vector; FAISS holds
    unit-length copies keyed by the row id so inner product is cosine.

    Every upsert and delete commits the row and the FAISS entry inside one
    short critical section, and queries run under the same lock, so a query
    never sees a chunk whose write has not finished.
    """

    def __init__(self, index_dir: str, provider: str, model: str, dimensions: int):
        self.index_dir = os.path.abspath(index_dir)
        self.provider = provider
        self.model = model
        self.dimensions = dimensions
        self.db_path = os.path.join(self.index_dir, DB_NAME)
        self.faiss_path = os.path.join(self.index_dir, FAISS_INDEX)
        self.reset_reason: Optional[str] = None
        self._lock = threading.RLock()
        try:
            os.makedirs(self.index_dir, exist_ok=True)
        except OSError as exc:
            raise StorageFailure(f"Cannot create index directory {self.index_dir}: {exc}") from exc
        ensure_db(self.db_path)
        self._check_configuration()
        self._faiss = self._load_faiss()

    # setup

    def _new_faiss(self):
        return faiss.IndexIDMap2(faiss.IndexFlatIP(self.dimensions))

    def _check_configuration(self):
        current = {"provider": self.provider, "model": self.model, "dimensions": str(self.dimensions)}
        with db_conn(self.db_path) as con:
            stored = dict(con.execute("SELECT key, value FROM index_meta").fetchall())
            previous = {k: stored.get(k) for k in current}
            if stored and any(previous[k] is not None and previous[k] != v for k, v in current.items()):
                self.reset_reason = (
                    f"embedding configuration changed from {previous['provider']}/{previous['model']} "
                    f"({previous['dimensions']}D) to {self.provider}/{self.model} ({self.dimensions}D)"
                )
                logger.warning("Rebuilding index: %s", self.reset_reason)
                con.execute("DELETE FROM chunks")
                con.execute("DELETE FROM files")
                if os.path.exists(self.faiss_path):
                    os.remove(self.faiss_path)
            con.executemany(
                "INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)",
                list(current.items()),
            )

    def _load_faiss(self):
        rows = self._row_count()
        if os.path.exists(self.faiss_path):
            try:
                index = faiss.read_index(self.faiss_path)
            except RuntimeError as exc:
                logger.warning("Unreadable vector file %s (%s); rebuilding from metadata", self.faiss_path, exc)
            else:
                if index.d == self.dimensions and index.ntotal == rows:
                    return index
                logger.warning(
                    "Vector file out of sync (%d vectors, %d rows); rebuilding from metadata",
                    index.ntotal,
                    rows,
                )
        return self._build_from_rows()

    def _build_from_rows(self):
        index = self._new_faiss()
        with db_conn(self.db_path) as con:
            rows = con.execute("SELECT id, vector FROM chunks ORDER BY id").fetchall()
        if rows:
            ids = np.array([r[0] for r in rows], dtype=np.int64)
            vectors = _unit(np.vstack([blob_to_vector(r[1]) for r in rows]))
            try:
                index.add_with_ids(vectors, ids)
            except RuntimeError as exc:
                raise StorageFailure(f"Cannot rebuild vector index: {exc}") from exc
        return index

    def _row_count(self) -> int:
        with db_conn(self.db_path) as con:
            return con.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]

    # writes

    def upsert(self, chunk: Chunk, vector: np.ndarray, version: int = 0) -> None:
        vector = np.asarray(vector, dtype=np.float32).reshape(-1)
        if vector.shape[0] != self.dimensions:
            raise ValueError(f"Vector has {vector.shape[0]} dimensions, index stores {self.dimensions}")
        values = (
            chunk.path,
            chunk.start_byte,
            chunk.end_byte,
            chunk.start_line,
            chunk.end_line,
            chunk.kind,
            chunk.name,
            _symbols_to_json(chunk.symbols),
            json.dumps(chunk.outgoing),
            json.dumps(chunk.incoming),
            chunk.text,
            chunk.tokens,
            version,
            vector_to_blob(vector),
            time.time(),
        )
        with self._lock:
            with db_conn(self.db_path) as con:
                row = con.execute("SELECT id FROM chunks WHERE chunk_id = ?", (chunk.id,)).fetchone()
                if row:
                    rowid = row[0]
                    con.execute(
                        """
                        UPDATE chunks SET path=?, start_byte=?, end_byte=?, start_line=?, end_line=?,
                            kind=?, name=?, symbols=?, outgoing=?, incoming=?, text=?, tokens=?,
                            version=?, vector=?, updated_at=?
                        WHERE id=?
                        """,
                        values + (rowid,),
                    )
                else:
                    cur = con.execute(
                        """
                        INSERT INTO chunks (chunk_id, path, start_byte, end_byte, start_line, end_line,
                            kind, name, symbols, outgoing, incoming, text, tokens, version, vector, updated_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (chunk.id,) + values,
                    )
                    rowid = cur.lastrowid
                ids = np.array([rowid], dtype=np.int64)
                try:
                    self._faiss.remove_ids(ids)
                    self._faiss.add_with_ids(_unit(vector), ids)
                except RuntimeError as exc:
                    raise StorageFailure(f"Vector write failed for chunk {chunk.id}: {exc}") from exc

    def update_edges(self, chunk_id: str, outgoing: List[dict], incoming: List[dict], version: Optional[int] = None) -> bool:
        with self._lock:
            with db_conn(self.db_path) as con:
                if version is None:
                    cur = con.execute(
                        "UPDATE chunks SET outgoing=?, incoming=? WHERE chunk_id=?",
                        (json.dumps(outgoing), json.dumps(incoming), chunk_id),
                    )
                else:
                    cur = con.execute(
                        "UPDATE chunks SET outgoing=?, incoming=?, version=? WHERE chunk_id=?",
                        (json.dumps(outgoing), json.dumps(incoming), version, chunk_id),
                    )
                return cur.rowcount > 0

    def delete(self, chunk_id: str) -> bool:
        with self._lock:
            with db_conn(self.db_path) as con:
                row = con.execute("SELECT id FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
                if not row:
                    return False
                con.execute("DELETE FROM chunks WHERE id = ?", (row[0],))
                try:
                    self._faiss.remove_ids(np.array([row[0]], dtype=np.int64))
                except RuntimeError as exc:
                    raise StorageFailure(f"Vector delete failed for chunk {chunk_id}: {exc}") from exc
                return True

    def delete_file(self, path: str) -> List[str]:
        """Remove every chunk and the file record of ``path``; returns the removed chunk ids."""
        removed = [chunk_id for chunk_id in self.chunk_ids_for_file(path) if self.delete(chunk_id)]
        with self._lock:
            with db_conn(self.db_path) as con:
                con.execute("DELETE FROM files WHERE path = ?", (path,))
        return removed

    def clear(self):
        with self._lock:
            with db_conn(self.db_path) as con:
                con.execute("DELETE FROM chunks")
                con.execute("DELETE FROM files")
            self._faiss = self._new_faiss()

    def save(self):
        with self._lock:
            tmp = self.faiss_path + ".tmp"
            try:
                faiss.write_index(self._faiss, tmp)
                os.replace(tmp, self.faiss_path)
            except (RuntimeError, OSError) as exc:
                raise StorageFailure(f"Cannot write {self.faiss_path}: {exc}") from exc
            self.set_meta("saved_at", str(time.time()))

    # file records

    def file_hash(self, path: str) -> Optional[str]:
        with db_conn(self.db_path) as con:
            row = con.execute("SELECT hash FROM files WHERE path = ?", (path,)).fetchone()
        return row[0] if row else None

    def set_file(self, path: str, file_hash: str, mtime: float = 0.0, version: int = 0):
        with db_conn(self.db_path) as con:
            con.execute(
                "INSERT OR REPLACE INTO files (path, hash, mtime, version) VALUES (?, ?, ?, ?)",
                (path, file_hash, mtime, version),
            )

    def forget_file(self, path: str):
        with db_conn(self.db_path) as con:
            con.execute("DELETE FROM files WHERE path = ?", (path,))

    def tracked_files(self) -> List[str]:
        with db_conn(self.db_path) as con:
            rows = con.execute(
                "SELECT path FROM files UNION SELECT DISTINCT path FROM chunks ORDER BY path"
            ).fetchall()
        return [r[0] for r in rows]

    def get_meta(self, key: str) -> Optional[str]:
        with db_conn(self.db_path) as con:
            row = con.execute("SELECT value FROM index_meta WHERE key = ?", (key,)).fetchone()
        return row[0] if row else None

    def set_meta(self, key: str, value: str):
        with db_conn(self.db_path) as con:
            con.execute("INSERT OR REPLACE INTO index_meta (key, value) VALUES (?, ?)", (key, value))

    # reads

    def get(self, chunk_id: str) -> Optional[IndexEntry]:
        with self._lock:
            with db_conn(self.db_path) as con:
                row = con.execute(f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone()
        return _row_to_entry(row) if row else None

    def contains(self, chunk_id: str) -> bool:
        with db_conn(self.db_path) as con:
            return con.execute("SELECT 1 FROM chunks WHERE chunk_id = ?", (chunk_id,)).fetchone() is not None

    def chunk_ids_for_file(self, path: str) -> List[str]:
        with db_conn(self.db_path) as con:
            rows = con.execute("SELECT chunk_id FROM chunks WHERE path = ? ORDER BY start_byte", (path,)).fetchall()
        return [r[0] for r in rows]

    def entries_for_file(self, path: str) -> List[IndexEntry]:
        with self._lock:
            with db_conn(self.db_path) as con:
                rows = con.execute(
                    f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE path = ? ORDER BY start_byte", (path,)
                ).fetchall()
        return [_row_to_entry(r) for r in rows]

    def count(self) -> int:
        return self._row_count()

    def vector_count(self) -> int:
        with self._lock:
            return int(self._faiss.ntotal)

    def query(
        self,
        vector: np.ndarray,
        k: int,
        filters: Optional[SearchFilters] = None,
        exclude_ids: Iterable[str] = (),
    ) -> List[Tuple[IndexEntry, float]]:
        """
        k nearest chunks by cosine similarity, best first. Equal scores are
        ordered by file path and then byte offset.
        """
        if k <= 0:
            return []
        excluded = set(exclude_ids)
        filters = filters or SearchFilters()
        query = _unit(vector)
        with self._lock:
            total = int(self._faiss.ntotal)
            if total == 0:
                return []
            fetch = min(total, (k * 4 if filters.active() else k) + len(excluded))
            while True:
                try:
                    scores, ids = self._faiss.search(query, fetch)
                except RuntimeError as exc:
                    raise StorageFailure(f"Vector search failed: {exc}") from exc
                pairs = [(int(i), float(s)) for s, i in zip(scores[0], ids[0]) if i >= 0]
                entries = self._entries_by_rowid([i for i, _ in pairs])
                hits = []
                for rowid, score in pairs:
                    entry = entries.get(rowid)
                    if entry is None or entry.chunk.id in excluded or not filters.matches(entry.chunk):
                        continue
                    hits.append((entry, score))
                hits.sort(key=lambda h: (-round(h[1], 6), h[0].chunk.path, h[0].chunk.start_byte))
                # stop once k hits are in hand and the cut does not split a tie
                enough = len(hits) >= k and (not pairs or round(pairs[-1][1], 6) < round(hits[k - 1][1], 6))
                if fetch >= total or enough:
                    return hits[:k]
                fetch = min(total, fetch * 2)

    def _entries_by_rowid(self, rowids: Sequence[int]) -> Dict[int, IndexEntry]:
        if not rowids:
            return {}
        placeholders = ",".join("?" for _ in rowids)
        with db_conn(self.db_path) as con:
            rows = con.execute(
                f"SELECT {_CHUNK_COLUMNS} FROM chunks WHERE id IN ({placeholders})", list(rowids)
            ).fetchall()
        return {row[0]: _row_to_entry(row) for row in rows}

    # maintenance

    def check(self) -> Dict[str, object]:
        with self._lock:
            with db_conn(self.db_path) as con:
                integrity = con.execute("PRAGMA integrity_check").fetchone()[0]
                rows = con.execute("SELECT COUNT(*) FROM chunks").fetchone()[0]
            vectors = int(self._faiss.ntotal)
        return {
            "integrity": integrity,
            "rows": rows,
            "vectors": vectors,
            "ok": integrity == "ok" and rows == vectors,
        }

    def rebuild_vectors(self) -> int:
        with self._lock:
            self._faiss = self._build_from_rows()
            return int(self._faiss.ntotal)
