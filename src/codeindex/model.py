from __future__ import annotations

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

import numpy as np


MODULE_KIND = "module"


class CallShape(str, enum.Enum):
    PLAIN = "plain"  # foo()
    SELF = "self"  # self.foo() / cls.foo()
    RECEIVER = "receiver"  # obj.foo()
    STATIC = "static"  # ClassName.foo()


class ResolutionStatus(str, enum.Enum):
    RESOLVED_UNIQUE = "resolved-unique"
    RESOLVED_AMBIGUOUS = "resolved-ambiguous"
    UNRESOLVED = "unresolved"


@dataclass(frozen=True, order=True)
class SymbolId:
    path: str
    qualname: str
    kind: str

    def __str__(self) -> str:
        return f"{self.path}::{self.qualname}"

    def to_dict(self) -> Dict[str, str]:
        return {"path": self.path, "qualname": self.qualname, "kind": self.kind}


@dataclass(frozen=True)
class Symbol:
    id: SymbolId
    name: str
    start_byte: int
    end_byte: int
    start_line: int
    end_line: int
    # enclosing symbols, innermost last
    scope: Tuple[SymbolId, ...] = ()
    bases: Tuple[str, ...] = ()
    # byte offsets where the body statements start
    statements: Tuple[int, ...] = ()

    @property
    def path(self) -> str:
        return self.id.path

    @property
    def qualname(self) -> str:
        return self.id.qualname

    @property
    def kind(self) -> str:
        return self.id.kind

    @property
    def enclosing(self) -> Optional[SymbolId]:
        return self.scope[-1] if self.scope else None


@dataclass(frozen=True)
class CallSite:
    path: str
    start_byte: int
    end_byte: int
    line: int
    shape: CallShape
    name: str
    # receiver expression text for self/receiver/static shapes
    receiver: Optional[str] = None
    # constructor that produced the receiver in the same scope, when known
    receiver_class: Optional[str] = None
    enclosing: Optional[SymbolId] = None
    depth: int = 0

    @property
    def key(self) -> Tuple[str, int, int]:
        return (self.path, self.start_byte, self.end_byte)


@dataclass(frozen=True)
class CallEdge:
    site: CallSite
    candidates: Tuple[SymbolId, ...]
    status: ResolutionStatus

    def to_dict(self) -> Dict[str, object]:
        return {
            "callee": self.site.name,
            "shape": self.site.shape.value,
            "line": self.site.line,
            "caller": str(self.site.enclosing) if self.site.enclosing else self.site.path,
            "status": self.status.value,
            "targets": [str(c) for c in self.candidates],
        }


@dataclass
class ParseResult:
    path: str
    symbols: List[Symbol] = field(default_factory=list)
    calls: List[CallSite] = field(default_factory=list)
    imports: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SourceFile:
    """One discovered file as handed over by file discovery."""

    path: str
    contents: str
    mtime: float = 0.0


@dataclass
class Chunk:
    id: str  # sha256 of the normalized text
    path: str
    start_byte: int
    end_byte: int
    start_line: int
    end_line: int
    kind: str
    name: str
    symbols: Tuple[SymbolId, ...]
    text: str
    tokens: int
    outgoing: List[Dict[str, object]] = field(default_factory=list)
    incoming: List[Dict[str, object]] = field(default_factory=list)


@dataclass(frozen=True)
class EmbeddingRecord:
    content_hash: str
    provider: str
    model: str
    vector: np.ndarray
    tokens: int = 0
    cost: float = 0.0

    @property
    def dimensions(self) -> int:
        return int(self.vector.shape[0])


@dataclass
class IndexEntry:
    chunk: Chunk
    vector: np.ndarray
    version: int = 0
    updated_at: float = 0.0
