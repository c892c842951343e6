import hashlib
import math
import os
from typing import Iterable, List, Optional, Sequence, Set

from .graph import CallGraph
from .model import MODULE_KIND, Chunk, Symbol, SymbolId

CHARS_PER_TOKEN = 4


def estimate_tokens(text: str) -> int:
    return math.ceil(len(text) / CHARS_PER_TOKEN)


def normalize_text(text: str) -> str:
    """LF line endings, no trailing whitespace, no leading/trailing blank lines."""
    lines = text.replace("\r\n", "\n").replace("\r", "\n").split("\n")
    return "\n".join(line.rstrip() for line in lines).strip("\n")


def content_hash(text: str) -> str:
    return hashlib.sha256(text.encode("utf-8")).hexdigest()


def chunk_header(path: str, names: Sequence[str]) -> str:
    return f"# file: {path}\n# symbol: {', '.join(names)}\n"


class _ChunkBuilder:
    def __init__(self, path: str, data: bytes, symbols: Sequence[Symbol], budget: int):
        self.path = path
        self.data = data
        self.symbols = symbols
        self.budget = budget
        self.chunks: List[Chunk] = []
        self._seen: Set[str] = set()

    def render(self, names: Sequence[str], start: int, end: int) -> str:
        body = self.data[start:end].decode("utf-8", errors="replace")
        return normalize_text(chunk_header(self.path, names) + body)

    def fits(self, names: Sequence[str], start: int, end: int) -> bool:
        return estimate_tokens(self.render(names, start, end)) <= self.budget

    def _line(self, offset: int) -> int:
        return self.data.count(b"\n", 0, offset) + 1

    def emit(
        self,
        start: int,
        end: int,
        names: Sequence[str],
        kind: str,
        name: str,
        parents: Sequence[SymbolId] = (),
    ):
        if not self.data[start:end].strip():
            return
        text = self.render(names, start, end)
        chunk_id = content_hash(text)
        if chunk_id in self._seen:
            return
        self._seen.add(chunk_id)
        covered = list(parents)
        for sym in self.symbols:
            if start <= sym.start_byte < end and sym.id not in covered:
                covered.append(sym.id)
        self.chunks.append(
            Chunk(
                id=chunk_id,
                path=self.path,
                start_byte=start,
                end_byte=end,
                start_line=self._line(start),
                end_line=self._line(max(start, end - 1)),
                kind=kind,
                name=name,
                symbols=tuple(covered),
                text=text,
                tokens=estimate_tokens(text),
            )
        )

    def emit_group(self, group: Sequence[Symbol]):
        names = [s.qualname for s in group]
        self.emit(
            group[0].start_byte,
            group[-1].end_byte,
            names,
            group[0].kind,
            ", ".join(s.name for s in group),
        )

    def _farthest(self, names: Sequence[str], cur: int, end: int, cuts: Iterable[int]) -> Optional[int]:
        best = None
        for cut in sorted({c for c in cuts if cur < c < end} | {end}):
            if not self.fits(names, cur, cut):
                break
            best = cut
        return best

    def _hard_cut(self, names: Sequence[str], cur: int, end: int) -> int:
        allowed = self.budget * CHARS_PER_TOKEN - len(chunk_header(self.path, names))
        cut = min(end, cur + max(1, allowed))
        # stay on a UTF-8 character boundary
        while cut < end and cut > cur + 1 and (self.data[cut] & 0xC0) == 0x80:
            cut -= 1
        return cut

    def split(
        self,
        start: int,
        end: int,
        names: Sequence[str],
        kind: str,
        name: str,
        statements: Sequence[int] = (),
        parents: Sequence[SymbolId] = (),
    ):
        """Cut [start, end) at statement boundaries, then lines, then bytes."""
        line_starts = [i + 1 for i in range(start, end - 1) if self.data[i] == 0x0A]
        cur = start
        while cur < end:
            cut = self._farthest(names, cur, end, statements)
            if cut is None:
                cut = self._farthest(names, cur, end, line_starts)
            if cut is None:
                cut = self._hard_cut(names, cur, end)
            self.emit(cur, cut, names, kind, name, parents)
            cur = cut


def build_chunks(path: str, source: str, symbols: Sequence[Symbol], budget: int) -> List[Chunk]:
    """
    Pack top-level symbols, in source order, into chunks that stay within the
    token budget. A symbol that does not fit on its own is split and every
    part carries its identity. Files without symbols become module chunks.
    """
    data = source.encode("utf-8")
    if not data.strip():
        return []

    builder = _ChunkBuilder(path, data, symbols, budget)
    top = sorted((s for s in symbols if not s.scope), key=lambda s: (s.start_byte, s.end_byte))
    if not top:
        module = os.path.splitext(os.path.basename(path))[0]
        builder.split(0, len(data), [module], MODULE_KIND, module)
        return builder.chunks

    group: List[Symbol] = []
    for sym in top:
        candidate = group + [sym]
        if builder.fits([s.qualname for s in candidate], candidate[0].start_byte, sym.end_byte):
            group = candidate
            continue
        if group:
            builder.emit_group(group)
            group = []
        if builder.fits([sym.qualname], sym.start_byte, sym.end_byte):
            group = [sym]
        else:
            builder.split(
                sym.start_byte,
                sym.end_byte,
                [sym.qualname],
                sym.kind,
                sym.name,
                statements=sym.statements,
                parents=[sym.id],
            )
    if group:
        builder.emit_group(group)
    return builder.chunks


def attach_edges(chunk: Chunk, graph: CallGraph) -> Chunk:
    """Fill in the chunk's outgoing and incoming call edges from the live graph."""
    chunk.outgoing = [e.to_dict() for e in graph.outgoing_in_span(chunk.path, chunk.start_byte, chunk.end_byte)]
    chunk.incoming = [e.to_dict() for e in graph.incoming_for(chunk.symbols)]
    return chunk
