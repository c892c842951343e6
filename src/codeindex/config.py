"""
Configuration module for codeindex
Handles loading and accessing configuration from config.toml file
"""
import copy
import logging
import os
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Optional

import toml

from .embed import ModelSpec, get_model_spec, resolve_target_dimensions
from .errors import ConfigurationError

logger = logging.getLogger(__name__)

_API_KEY_ENV = {
    "openai": ("OPENAI_API_KEY",),
    "google": ("GOOGLE_API_KEY", "GEMINI_API_KEY"),
    "github-copilot": ("GITHUB_TOKEN",),
    "custom": ("CODEINDEX_API_KEY",),
}


class Config:
    """Configuration class for loading and accessing settings from config.toml"""

    def __init__(self, config_path: Optional[str] = None):
        self.config_path = config_path or self._find_config_file()
        self.config_data = self._load_config()

    def _find_config_file(self) -> Optional[str]:
        """Find the config.toml file in common locations"""
        possible_paths = [
            "config.toml",
            ".codeindex/config.toml",
            str(Path.home() / ".codeindex" / "config.toml"),
        ]
        for path in possible_paths:
            if Path(path).exists():
                return path
        return None

    def _get_default_config(self) -> Dict[str, Any]:
        """Get default configuration values"""
        return {
            "EMBEDDING": {
                "PROVIDER": "openai",
                "MODEL": "",
                "DIMENSIONS": 0,
                "API_KEY": "",
                "BASE_URL": "",
                "TIMEOUT": 30,
                "CUSTOM": {
                    "DIMENSIONS": 0,
                    "MAX_TOKENS": 8191,
                    "COST_PER_1M_TOKENS": 0.0,
                    "TRUNCATION_SAFE": False,
                },
            },
            "INDEXING": {
                "WORKERS": 4,
                "CONCURRENCY": 4,
                "RETRIES": 3,
                "RETRY_DELAY_MS": 1000,
                "RETRY_MAX_DELAY_MS": 30000,
                "BATCH_SIZE": 16,
                "CHUNK_TOKEN_BUDGET": 0,
                "WATCH_FILES": True,
                "MAX_FILE_SIZE": 1048576,
                "QUEUE_SIZE": 1000,
                "DEBOUNCE_MS": 500,
                "INCLUDE": [],
                "EXCLUDE": [],
            },
            "SEARCH": {
                "MAX_RESULTS": 10,
                "MIN_SCORE": 0.0,
            },
            "LOGGING": {
                "LEVEL": "INFO",
                "MAX_EVENTS": 1000,
            },
            "STORAGE": {
                "INDEX_DIR": ".codeindex",
            },
        }

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from the TOML file"""
        default_config = self._get_default_config()

        if not self.config_path or not os.path.exists(self.config_path):
            logger.debug("No config file found, using defaults")
            return default_config

        try:
            with open(self.config_path, "r", encoding="utf-8") as f:
                loaded_config = toml.load(f)
        except (OSError, toml.TomlDecodeError) as exc:
            raise ConfigurationError(f"Cannot read config file {self.config_path}: {exc}") from exc

        return self._merge_configs(default_config, loaded_config)

    def _merge_configs(self, default: Dict[str, Any], loaded: Dict[str, Any]) -> Dict[str, Any]:
        """Merge default config with loaded config, with loaded taking precedence"""
        merged = copy.deepcopy(default)
        for key, value in loaded.items():
            if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
                merged[key] = self._merge_configs(merged[key], value)
            else:
                merged[key] = value
        return merged

    def save_config(self, config_data: Optional[Dict[str, Any]] = None, path: Optional[str] = None) -> None:
        """Save configuration to a TOML file"""
        save_path = path or self.config_path or "config.toml"
        with open(save_path, "w", encoding="utf-8") as f:
            toml.dump(config_data if config_data is not None else self.config_data, f)

    def get(self, key_path: str, default: Any = None) -> Any:
        """
        Get a configuration value using a dot-separated path
        Example: get("EMBEDDING.PROVIDER")
        """
        value = self.config_data
        for key in key_path.split("."):
            if isinstance(value, dict) and key in value:
                value = value[key]
            else:
                return default
        return value

    def set(self, key_path: str, value: Any) -> None:
        """
        Set a configuration value using a dot-separated path
        Example: set("EMBEDDING.MODEL", "text-embedding-3-large")
        """
        keys = key_path.split(".")
        config_ref = self.config_data
        for key in keys[:-1]:
            if key not in config_ref:
                config_ref[key] = {}
            config_ref = config_ref[key]
        config_ref[keys[-1]] = value


# Global configuration instance (for default config without specific path)
_config_instance = None


def get_config(config_path: Optional[str] = None) -> Config:
    """Get the global configuration instance"""
    global _config_instance
    if config_path is not None:
        return Config(config_path)
    if _config_instance is None:
        _config_instance = Config()
    return _config_instance


def _int(config: Config, key: str, minimum: Optional[int] = None) -> int:
    raw = config.get(key)
    try:
        value = int(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be an integer, got {raw!r}") from exc
    if minimum is not None and value < minimum:
        raise ConfigurationError(f"{key} must be >= {minimum}, got {value}")
    return value


def _float(config: Config, key: str) -> float:
    raw = config.get(key)
    try:
        return float(raw)
    except (TypeError, ValueError) as exc:
        raise ConfigurationError(f"{key} must be a number, got {raw!r}") from exc


@dataclass(frozen=True)
class IndexSettings:
    """Typed, validated view of the configuration used by the core."""

    provider: str
    model_spec: ModelSpec
    dimensions: int
    api_key: str = ""
    base_url: str = ""
    timeout: float = 30.0
    workers: int = 4
    concurrency: int = 4
    retries: int = 3
    retry_delay: float = 1.0
    retry_max_delay: float = 30.0
    batch_size: int = 16
    chunk_token_budget: int = 0
    watch_files: bool = True
    max_file_size: int = 1048576
    queue_size: int = 1000
    debounce: float = 0.5
    include: tuple = ()
    exclude: tuple = ()
    max_results: int = 10
    min_score: float = 0.0
    log_level: str = "INFO"
    max_events: int = 1000
    index_dir: str = ".codeindex"

    @property
    def model(self) -> str:
        return self.model_spec.model

    @property
    def token_budget(self) -> int:
        return self.chunk_token_budget or self.model_spec.max_tokens

    @classmethod
    def from_config(cls, config: Optional[Config] = None, **overrides: Any) -> "IndexSettings":
        """
        Validate cross-field constraints and fail fast. ``overrides`` replace
        individual dataclass fields after the config has been read.
        """
        config = config or get_config()
        provider = os.environ.get("CODEINDEX_PROVIDER") or str(config.get("EMBEDDING.PROVIDER", "openai"))
        model = os.environ.get("CODEINDEX_MODEL") or str(config.get("EMBEDDING.MODEL") or "")
        spec = get_model_spec(provider, model or None, config.get("EMBEDDING.CUSTOM", {}))
        dimensions = resolve_target_dimensions(spec, _int(config, "EMBEDDING.DIMENSIONS", 0))

        api_key = str(config.get("EMBEDDING.API_KEY") or "")
        if not api_key:
            for var in _API_KEY_ENV.get(provider, ()):
                if os.environ.get(var):
                    api_key = os.environ[var]
                    break

        budget = _int(config, "INDEXING.CHUNK_TOKEN_BUDGET", 0)
        if budget and budget > spec.max_tokens:
            raise ConfigurationError(
                f"INDEXING.CHUNK_TOKEN_BUDGET {budget} exceeds the {spec.max_tokens} token input limit of {spec.model}"
            )
        if budget and budget < 32:
            raise ConfigurationError("INDEXING.CHUNK_TOKEN_BUDGET must be at least 32 tokens")

        min_score = _float(config, "SEARCH.MIN_SCORE")
        if not -1.0 <= min_score <= 1.0:
            raise ConfigurationError(f"SEARCH.MIN_SCORE must be within [-1, 1], got {min_score}")

        level = str(config.get("LOGGING.LEVEL", "INFO")).upper()
        if level not in {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}:
            raise ConfigurationError(f"LOGGING.LEVEL must be a logging level name, got {level!r}")

        settings = cls(
            provider=provider,
            model_spec=spec,
            dimensions=dimensions,
            api_key=api_key,
            base_url=str(config.get("EMBEDDING.BASE_URL") or ""),
            timeout=_float(config, "EMBEDDING.TIMEOUT"),
            workers=_int(config, "INDEXING.WORKERS", 1),
            concurrency=_int(config, "INDEXING.CONCURRENCY", 1),
            retries=_int(config, "INDEXING.RETRIES", 0),
            retry_delay=_int(config, "INDEXING.RETRY_DELAY_MS", 0) / 1000.0,
            retry_max_delay=_int(config, "INDEXING.RETRY_MAX_DELAY_MS", 0) / 1000.0,
            batch_size=_int(config, "INDEXING.BATCH_SIZE", 1),
            chunk_token_budget=budget,
            watch_files=bool(config.get("INDEXING.WATCH_FILES", True)),
            max_file_size=_int(config, "INDEXING.MAX_FILE_SIZE", 1),
            queue_size=_int(config, "INDEXING.QUEUE_SIZE", 1),
            debounce=_int(config, "INDEXING.DEBOUNCE_MS", 0) / 1000.0,
            include=tuple(config.get("INDEXING.INCLUDE") or ()),
            exclude=tuple(config.get("INDEXING.EXCLUDE") or ()),
            max_results=_int(config, "SEARCH.MAX_RESULTS", 1),
            min_score=min_score,
            log_level=level,
            max_events=_int(config, "LOGGING.MAX_EVENTS", 1),
            index_dir=str(config.get("STORAGE.INDEX_DIR") or ".codeindex"),
        )
        if overrides:
            settings = settings.with_overrides(**overrides)
        return settings

    def with_overrides(self, **changes: Any) -> "IndexSettings":
        if "dimensions" in changes:
            changes["dimensions"] = resolve_target_dimensions(self.model_spec, changes["dimensions"])
        return replace(self, **changes)
