from __future__ import annotations

from abc import ABC, abstractmethod
from typing import List, Sequence

from ..model import ParseResult


class LanguageAdapter(ABC):
    """Abstract interface for language-specific symbol extraction."""

    @property
    @abstractmethod
    def name(self) -> str:
        """Lowercase identifier for the language (e.g. 'python')."""

    @property
    @abstractmethod
    def file_extensions(self) -> Sequence[str]:
        """File extensions (including leading dot) supported by this adapter."""

    @abstractmethod
    def extract(self, path: str, source: str) -> ParseResult:
        """
        Produce the ordered symbol table and call sites for a single file.
        Implementations raise ParseFailure when the source cannot be parsed.
        """
        raise NotImplementedError

    def import_targets(self, path: str, imports: Sequence[str], known_paths: Sequence[str]) -> List[str]:
        """Map the imports of ``path`` onto files among ``known_paths``, in import order."""
        return []
