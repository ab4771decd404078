"""
Configuration: loads settings from .hybridkb.yaml, environment variables,
and built-in defaults (in that priority order: env > YAML > defaults).
"""

import os

import yaml


_DEFAULTS = {
    "data_dir": "database",
    "db_filename": "knowledge_base.sqlite3",
    "log_dir": ".hybridkb/logs",
    "vector_backend": "bruteforce",
    "vector_dimensions": 768,
    "vector_flush_delay": 1.0,
    "hnsw_m": 16,
    "hnsw_ef_construction": 200,
    "hnsw_ef_search": 100,
    "hnsw_max_elements": 100000,
    "embedding_provider": "ollama",
    "embedding_model": "nomic-embed-text",
    "embedding_batch_size": 100,
    "embedding_max_retries": 3,
    "ollama_base_url": "http://localhost:11434",
    "openai_api_key": "",
    "openai_base_url": "https://api.openai.com/v1",
    "default_namespace": "notes",
    "default_top_k": 20,
}

# Config file search locations
_CONFIG_FILENAMES = [".hybridkb.yaml", ".hybridkb.yml"]

_VECTOR_BACKENDS = ("bruteforce", "hnsw")
_EMBEDDING_PROVIDERS = ("ollama", "openai")


def _find_config_file(explicit_path: str | None = None) -> str | None:
    """Find the config file. Checks explicit path, CWD, then user home."""
    if explicit_path:
        if os.path.isfile(explicit_path):
            return explicit_path
        return None

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
    """Knowledge base configuration.

    Settings are resolved in priority order:
    1. Environment variables (``HYBRIDKB_*``)
    2. .hybridkb.yaml config file
    3. Built-in defaults
    """

    def __init__(self, yaml_data: dict | None = None):
        yd = dict(yaml_data or {})

        # Helper: env var > yaml > default
        def _get(env_key: str, yaml_key: str, cast=str):
            env_val = os.getenv(env_key)
            if env_val is not None:
                return cast(env_val)
            yaml_val = yd.get(yaml_key)
            if yaml_val is not None:
                return cast(yaml_val)
            return _DEFAULTS[yaml_key]

        self.DATA_DIR = _get("HYBRIDKB_DATA_DIR", "data_dir")
        self.DB_FILENAME = _get("HYBRIDKB_DB_FILENAME", "db_filename")
        self.LOG_DIR = _get("HYBRIDKB_LOG_DIR", "log_dir")

        self.VECTOR_BACKEND = _get("HYBRIDKB_VECTOR_BACKEND",
                                   "vector_backend").lower()
        if self.VECTOR_BACKEND not in _VECTOR_BACKENDS:
            raise ValueError(
                f"Unknown vector_backend {self.VECTOR_BACKEND!r}; "
                f"expected one of {', '.join(_VECTOR_BACKENDS)}"
            )
        self.VECTOR_DIMENSIONS = _get("HYBRIDKB_VECTOR_DIMENSIONS",
                                      "vector_dimensions", cast=int)
        self.VECTOR_FLUSH_DELAY = _get("HYBRIDKB_VECTOR_FLUSH_DELAY",
                                       "vector_flush_delay", cast=float)

        # HNSW graph parameters
        hnsw_section = yd.get("hnsw", {}) if isinstance(yd.get("hnsw"), dict) else {}
        for key in ("m", "ef_construction", "ef_search", "max_elements"):
            if key in hnsw_section and f"hnsw_{key}" not in yd:
                yd[f"hnsw_{key}"] = hnsw_section[key]
        self.HNSW_M = _get("HYBRIDKB_HNSW_M", "hnsw_m", cast=int)
        self.HNSW_EF_CONSTRUCTION = _get("HYBRIDKB_HNSW_EF_CONSTRUCTION",
                                         "hnsw_ef_construction", cast=int)
        self.HNSW_EF_SEARCH = _get("HYBRIDKB_HNSW_EF_SEARCH",
                                   "hnsw_ef_search", cast=int)
        self.HNSW_MAX_ELEMENTS = _get("HYBRIDKB_HNSW_MAX_ELEMENTS",
                                      "hnsw_max_elements", cast=int)

        self.EMBEDDING_PROVIDER = _get("HYBRIDKB_EMBEDDING_PROVIDER",
                                       "embedding_provider").lower()
        if self.EMBEDDING_PROVIDER not in _EMBEDDING_PROVIDERS:
            raise ValueError(
                f"Unknown embedding_provider {self.EMBEDDING_PROVIDER!r}; "
                f"expected one of {', '.join(_EMBEDDING_PROVIDERS)}"
            )
        self.EMBEDDING_MODEL = _get("EMBEDDING_MODEL", "embedding_model")
        self.EMBEDDING_BATCH_SIZE = _get("HYBRIDKB_EMBEDDING_BATCH_SIZE",
                                         "embedding_batch_size", cast=int)
        self.EMBEDDING_MAX_RETRIES = _get("HYBRIDKB_EMBEDDING_MAX_RETRIES",
                                          "embedding_max_retries", cast=int)
        self.OLLAMA_BASE_URL = _get("OLLAMA_BASE_URL", "ollama_base_url")

        # OpenAI / cloud provider
        openai_section = yd.get("openai", {}) if isinstance(yd.get("openai"), dict) else {}
        self.OPENAI_API_KEY = os.getenv("OPENAI_API_KEY") or openai_section.get(
            "api_key", _DEFAULTS["openai_api_key"])
        self.OPENAI_BASE_URL = os.getenv("OPENAI_BASE_URL") or openai_section.get(
            "base_url", _DEFAULTS["openai_base_url"])

        self.DEFAULT_NAMESPACE = _get("HYBRIDKB_DEFAULT_NAMESPACE",
                                      "default_namespace")
        self.DEFAULT_TOP_K = _get("HYBRIDKB_DEFAULT_TOP_K", "default_top_k",
                                  cast=int)

    @property
    def db_path(self) -> str:
        """Full path of the relational store file."""
        return os.path.join(self.DATA_DIR, self.DB_FILENAME)

    @classmethod
    def load(cls, config_path: str | None = None) -> "Config":
        """Load config from YAML file (if found) + env vars + defaults."""
        path = _find_config_file(config_path)
        yaml_data = _load_yaml(path) if path else {}
        return cls(yaml_data)
