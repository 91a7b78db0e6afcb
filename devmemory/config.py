"""
Configuration — loads settings from .devmemory.yaml, environment variables,
and built-in defaults (in that priority order: CLI args > env > YAML > defaults).
"""

from __future__ import annotations

import os

import yaml


_DEFAULTS = {
    "db_path": os.path.join("~", ".devmemory", "memory.db"),
    "embedding_model": "sentence-transformers/all-MiniLM-L6-v2",
    "embedding_cache_dir": os.path.join("~", ".devmemory", "models"),
    "duplicate_threshold": 0.9,
    "same_repo_boost": 0.15,
    "similar_stack_boost": 0.08,
    "stack_similarity_threshold": 0.7,
    "similarity_weight": 0.7,
    "recall_limit": 5,
    "recall_min_score": 0.3,
    "merge_threshold": 0.8,
    "index_max_file_size": 1024 * 1024,
    "index_include_tests": False,
    "index_exclude": [],
    "index_workers": 4,
    "watch_debounce": 0.5,
    "log_level": "WARNING",
}

# Config file search locations
_CONFIG_FILENAMES = [".devmemory.yaml", ".devmemory.yml"]


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

    # Search CWD first, then home directory
    search_dirs = [os.getcwd(), os.path.expanduser("~")]
    for d in search_dirs:
        for name in _CONFIG_FILENAMES:
            path = os.path.join(d, name)
            if os.path.isfile(path):
                return path
    return None


def _load_yaml(path: str) -> dict:
    """Load YAML file, returns empty dict on failure."""
    try:
        with open(path, "r", encoding="utf-8") as f:
            data = yaml.safe_load(f)
        return data if isinstance(data, dict) else {}
    except (OSError, yaml.YAMLError):
        return {}


class Config:
    """Application configuration.

    Settings are resolved in priority order:
    1. CLI arguments (handled by caller)
    2. Environment variables (``DEVMEM_*``)
    3. .devmemory.yaml config file
    4. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = yaml_data or {}

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, default, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return default

        def _get_bool(env_key: str, yaml_key: str, default: bool) -> bool:
            env_val = os.getenv(env_key)
            if env_val is not None:
                return env_val.lower() == "true"
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return bool(yaml_val)
            return default

        # Storage
        self.DB_PATH = os.path.expanduser(
            _get("DEVMEM_DB_PATH", "db_path", _DEFAULTS["db_path"]))

        # Embedding model
        self.EMBEDDING_MODEL = _get("DEVMEM_EMBEDDING_MODEL", "embedding_model",
                                    _DEFAULTS["embedding_model"])
        self.EMBEDDING_CACHE_DIR = os.path.expanduser(
            _get("DEVMEM_EMBEDDING_CACHE_DIR", "embedding_cache_dir",
                 _DEFAULTS["embedding_cache_dir"]))

        # Store / recall tuning
        self.DUPLICATE_THRESHOLD = _get("DEVMEM_DUPLICATE_THRESHOLD", "duplicate_threshold",
                                        _DEFAULTS["duplicate_threshold"], cast=float)
        self.SAME_REPO_BOOST = _get("DEVMEM_SAME_REPO_BOOST", "same_repo_boost",
                                    _DEFAULTS["same_repo_boost"], cast=float)
        self.SIMILAR_STACK_BOOST = _get("DEVMEM_SIMILAR_STACK_BOOST", "similar_stack_boost",
                                        _DEFAULTS["similar_stack_boost"], cast=float)
        self.STACK_SIMILARITY_THRESHOLD = _get(
            "DEVMEM_STACK_SIMILARITY_THRESHOLD", "stack_similarity_threshold",
            _DEFAULTS["stack_similarity_threshold"], cast=float)
        self.SIMILARITY_WEIGHT = _get("DEVMEM_SIMILARITY_WEIGHT", "similarity_weight",
                                      _DEFAULTS["similarity_weight"], cast=float)
        self.RECALL_LIMIT = _get("DEVMEM_RECALL_LIMIT", "recall_limit",
                                 _DEFAULTS["recall_limit"], cast=int)
        self.RECALL_MIN_SCORE = _get("DEVMEM_RECALL_MIN_SCORE", "recall_min_score",
                                     _DEFAULTS["recall_min_score"], cast=float)
        self.MERGE_THRESHOLD = _get("DEVMEM_MERGE_THRESHOLD", "merge_threshold",
                                    _DEFAULTS["merge_threshold"], cast=float)

        # Code index
        self.INDEX_MAX_FILE_SIZE = _get("DEVMEM_INDEX_MAX_FILE_SIZE", "index_max_file_size",
                                        _DEFAULTS["index_max_file_size"], cast=int)
        self.INDEX_INCLUDE_TESTS = _get_bool("DEVMEM_INDEX_INCLUDE_TESTS",
                                             "index_include_tests",
                                             _DEFAULTS["index_include_tests"])
        self.INDEX_WORKERS = _get("DEVMEM_INDEX_WORKERS", "index_workers",
                                  _DEFAULTS["index_workers"], cast=int)
        self.WATCH_DEBOUNCE = _get("DEVMEM_WATCH_DEBOUNCE", "watch_debounce",
                                   _DEFAULTS["watch_debounce"], cast=float)

        self.INDEX_EXCLUDE: list[str] = yd.get("index_exclude", _DEFAULTS["index_exclude"])
        if not isinstance(self.INDEX_EXCLUDE, list):
            self.INDEX_EXCLUDE = []
        env_exclude = os.getenv("DEVMEM_INDEX_EXCLUDE")
        if env_exclude:
            self.INDEX_EXCLUDE = [p.strip() for p in env_exclude.split(",") if p.strip()]

        self.LOG_LEVEL = _get("DEVMEM_LOG_LEVEL", "log_level",
                              _DEFAULTS["log_level"]).upper()

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
