"""Exception hierarchy shared by the indexing pipeline."""
from typing import Optional


class CodeIndexError(RuntimeError):
    """Base class for every error raised by codeindex."""


class ConfigurationError(CodeIndexError):
    """Raised at construction time when settings are inconsistent."""


class ParseFailure(CodeIndexError):
    """A single file could not be parsed. Never fatal to a run."""

    def __init__(self, path: str, reason: str):
        super().__init__(f"{path}: {reason}")
        self.path = path
        self.reason = reason


class ProviderError(CodeIndexError):
    """An embedding backend request failed."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class ProviderTransientFailure(ProviderError):
    """Rate limits, timeouts and server errors. Retried with backoff."""


class ProviderPermanentFailure(ProviderError):
    """Client errors and malformed responses. The chunk is marked failed."""


class StorageFailure(CodeIndexError):
    """Read or write fault on the embedding cache or the vector index."""


class ChunkNotFound(CodeIndexError):
    def __init__(self, chunk_id: str):
        super().__init__(f"Chunk '{chunk_id}' is not in the index")
        self.chunk_id = chunk_id
