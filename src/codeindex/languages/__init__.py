from __future__ import annotations

import os
import threading
from typing import Dict, Sequence

from .base import LanguageAdapter

# adapters by language name, and lowercase extension -> language name
_ADAPTERS: Dict[str, LanguageAdapter] = {}
_BY_EXTENSION: Dict[str, str] = {}
# extraction runs on worker threads; registration and lazy defaults share this lock
_registry_lock = threading.RLock()


def register_adapter(adapter: LanguageAdapter) -> None:
    """Register an adapter; a later adapter claiming the same extension wins."""
    with _registry_lock:
        _ADAPTERS[adapter.name] = adapter
        for ext in adapter.file_extensions:
            _BY_EXTENSION[ext.lower()] = adapter.name


def clear_adapters() -> None:
    """Empty the registry (tests use this to install stub adapters)."""
    with _registry_lock:
        _ADAPTERS.clear()
        _BY_EXTENSION.clear()


def ensure_default_adapters() -> None:
    """Install the built-in Python adapter unless something is registered already."""
    with _registry_lock:
        if _ADAPTERS:
            return
        from .python_adapter import PythonAdapter  # deferred: python_adapter imports ast_py

        register_adapter(PythonAdapter())


def available_adapters() -> Sequence[LanguageAdapter]:
    with _registry_lock:
        return tuple(_ADAPTERS.values())


def get_adapter(name: str) -> LanguageAdapter:
    with _registry_lock:
        adapter = _ADAPTERS.get(name)
    if adapter is None:
        raise ValueError(f"Unknown language adapter '{name}'")
    return adapter


def get_adapter_for_path(path: str) -> LanguageAdapter | None:
    ensure_default_adapters()
    ext = os.path.splitext(path)[1].lower()
    with _registry_lock:
        name = _BY_EXTENSION.get(ext)
        return _ADAPTERS.get(name) if name else None


def supported_extensions() -> Sequence[str]:
    ensure_default_adapters()
    with _registry_lock:
        return tuple(sorted(_BY_EXTENSION))


__all__ = [
    "LanguageAdapter",
    "available_adapters",
    "clear_adapters",
    "ensure_default_adapters",
    "get_adapter",
    "get_adapter_for_path",
    "register_adapter",
    "supported_extensions",
]
