from __future__ import annotations

import json
import os
from collections.abc import Mapping
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

"""Configuration loader.

Responsibilities:
- Load the YAML config file (default ``config/ingest.yml``)
- Validate it against ``contracts/config_schema.json``
- Apply defaults per section (every section and key is optional)
- Apply environment overrides (``WBS_*``), which take precedence over the file
"""

__all__ = [
    "ConfigError",
    "StorageConfig",
    "IngestionConfig",
    "RetrievalConfig",
    "QueueConfig",
    "AppConfig",
    "load_config",
    "config_from_dict",
    "DEFAULT_CONFIG_PATH",
]

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "contracts" / "config_schema.json"
DEFAULT_CONFIG_PATH = Path("config/ingest.yml")

DEFAULT_SHEET_PATTERNS = ("03 Desglose f", "Desglose f", "03 Desglose", "Desglose")
DEFAULT_STATUS_KEYWORDS = ("estado", "estatus", "status", "situacion", "situación")
DEFAULT_CURRENCY_KEYWORDS = (
    "importe", "precio", "costo", "coste", "monto", "total", "subtotal",
    "p.u.", "amount", "price", "cost",
)


class ConfigError(Exception):
    pass


@dataclass(frozen=True)
class StorageConfig:
    backend: str = "local"  # local | memory
    root: str = "./blobstore"
    signing_secret: str = "change-me-in-production"
    public_base_url: str = "http://localhost:8000/blobs"


@dataclass(frozen=True)
class IngestionConfig:
    sheet_patterns: tuple[str, ...] = DEFAULT_SHEET_PATTERNS
    chunk_size: int = 2000
    inline_row_limit: int = 5000  # main-data.json carries rows up to this count
    upload_concurrency: int = 5
    max_retries: int = 3
    retry_base_delay: float = 1.0  # seconds; exponential from here
    max_tree_depth: int = 10
    type_sample_size: int = 100
    numeric_threshold: float = 0.9
    webp_quality: int = 85
    max_image_dimension: int = 2048
    status_keywords: tuple[str, ...] = DEFAULT_STATUS_KEYWORDS
    currency_keywords: tuple[str, ...] = DEFAULT_CURRENCY_KEYWORDS


@dataclass(frozen=True)
class RetrievalConfig:
    signed_url_ttl: int = 3600
    default_limit: int = 20
    max_limit: int = 100
    max_tree_depth: int = 10


@dataclass(frozen=True)
class QueueConfig:
    redis_url: str = "redis://localhost:6379/0"
    name: str = "excel-processing"
    job_timeout: int = 1800
    result_ttl: int = 86400


@dataclass(frozen=True)
class AppConfig:
    storage: StorageConfig = field(default_factory=StorageConfig)
    ingestion: IngestionConfig = field(default_factory=IngestionConfig)
    retrieval: RetrievalConfig = field(default_factory=RetrievalConfig)
    queue: QueueConfig = field(default_factory=QueueConfig)


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the JSON schema.

    Raises:
        ConfigError: If the schema file is missing or invalid, or the data fails validation
    """
    if not SCHEMA_PATH.exists():
        raise ConfigError(f"config schema not found: {SCHEMA_PATH}")
    try:
        schema = json.loads(SCHEMA_PATH.read_text(encoding="utf-8"))
        jsonschema.validate(data, schema)
    except json.JSONDecodeError as e:
        raise ConfigError(f"invalid schema file: {e}") from e
    except ValidationError as e:
        raise ConfigError(f"config validation failed: {e.message}") from e


def _section(data: Mapping[str, Any], name: str) -> dict[str, Any]:
    raw = data.get(name) or {}
    # list -> tuple (frozen dataclass fields)
    return {k: tuple(v) if isinstance(v, list) else v for k, v in raw.items()}


def _apply_env_overrides(cfg: AppConfig, env: Mapping[str, str]) -> AppConfig:
    storage = cfg.storage
    if env.get("WBS_STORAGE_ROOT"):
        storage = replace(storage, root=env["WBS_STORAGE_ROOT"])
    if env.get("WBS_SIGNING_SECRET"):
        storage = replace(storage, signing_secret=env["WBS_SIGNING_SECRET"])
    if env.get("WBS_PUBLIC_BASE_URL"):
        storage = replace(storage, public_base_url=env["WBS_PUBLIC_BASE_URL"])
    queue = cfg.queue
    if env.get("WBS_REDIS_URL"):
        queue = replace(queue, redis_url=env["WBS_REDIS_URL"])
    return replace(cfg, storage=storage, queue=queue)


def config_from_dict(data: Mapping[str, Any], env: Mapping[str, str] | None = None) -> AppConfig:
    """Validate a raw mapping and build an AppConfig (defaults + env overrides)."""
    _validate_config_schema(dict(data))
    try:
        cfg = AppConfig(
            storage=StorageConfig(**_section(data, "storage")),
            ingestion=IngestionConfig(**_section(data, "ingestion")),
            retrieval=RetrievalConfig(**_section(data, "retrieval")),
            queue=QueueConfig(**_section(data, "queue")),
        )
    except TypeError as e:  # pragma: no cover (schema rejects unknown keys first)
        raise ConfigError(f"invalid config: {e}") from e
    if cfg.retrieval.default_limit > cfg.retrieval.max_limit:
        raise ConfigError("retrieval.default_limit must not exceed retrieval.max_limit")
    return _apply_env_overrides(cfg, os.environ if env is None else env)


def load_config(path: Path | None = None, env: Mapping[str, str] | None = None) -> AppConfig:
    """Load configuration from a YAML file.

    Args:
        path: Config file path. None -> ``$WBS_CONFIG`` or ``config/ingest.yml``; a missing
            default file yields the built-in defaults, a missing explicit file is an error.
        env: Environment mapping for overrides (defaults to ``os.environ``)

    Raises:
        ConfigError: File missing (explicit path), invalid YAML, or schema violation
    """
    environ = os.environ if env is None else env
    explicit = path is not None or bool(environ.get("WBS_CONFIG"))
    if path is None:
        path = Path(environ.get("WBS_CONFIG") or DEFAULT_CONFIG_PATH)
    if not path.exists():
        if explicit:
            raise ConfigError(f"config file not found: {path}")
        return config_from_dict({}, env=environ)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping: {path}")
    return config_from_dict(data, env=environ)
