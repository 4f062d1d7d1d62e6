from __future__ import annotations

import json
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any

import jsonschema
import yaml
from jsonschema.exceptions import ValidationError

from ..errors import ImportPipelineError

"""Config loader.

Responsibilities:
- Load YAML config (config/import.yml by default)
- Validate against the bundled JSON schema (additionalProperties: false everywhere)
- Apply defaults for every missing key
- Check threshold ordering that the schema cannot express
"""

__all__ = [
    "ConfigError",
    "IngestConfig",
    "AnalysisConfig",
    "MappingConfig",
    "SemanticServiceConfig",
    "ExecutionConfig",
    "SessionConfig",
    "DatabaseConfig",
    "PipelineConfig",
    "default_config",
    "load_config",
    "SCHEMA_PATH",
]

SCHEMA_PATH = Path(__file__).with_name("config_schema.json")

MB = 1024 * 1024


class ConfigError(ImportPipelineError):
    pass


@dataclass(frozen=True)
class IngestConfig:
    max_file_size: int = 100 * MB
    streaming_threshold: int = 10 * MB
    preview_rows: int = 10
    sample_rows: int = 5
    chunk_rows: int = 5000  # streaming 時の 1 チャンク行数
    temp_dir: str | None = None


@dataclass(frozen=True)
class AnalysisConfig:
    max_sample_size: int = 100
    type_threshold: float = 0.8
    required_null_pct: float = 10.0
    expand_abbreviations: bool = True
    analyze_patterns: bool = True
    include_statistics: bool = True


@dataclass(frozen=True)
class MappingConfig:
    """Acceptance thresholds per cascade stage (0-100)."""
    fuzzy_candidate: float = 60
    fuzzy_accept: float = 70
    historical_accept: float = 60
    statistical_accept: float = 50
    semantic_min: float = 60
    semantic_cap: float = 95
    low_confidence: float = 70
    semantic_timeout: float = 10.0
    domain_hint: str = "Product data import field mapping"


@dataclass(frozen=True)
class SemanticServiceConfig:
    endpoint: str | None = None
    api_key_env: str | None = None


@dataclass(frozen=True)
class ExecutionConfig:
    batch_size: int = 100
    max_workers: int = 4
    max_retry_attempts: int = 3
    batch_timeout: float = 60.0


@dataclass(frozen=True)
class SessionConfig:
    ttl_seconds: float = 3600.0


@dataclass(frozen=True)
class DatabaseConfig:
    """Database fallback configuration. Environment variables take precedence."""
    host: str | None = None
    port: int | None = None
    user: str | None = None
    password: str | None = None
    database: str | None = None
    dsn: str | None = None
    products_table: str = "products"
    cache_table: str = "field_mapping_cache"


@dataclass(frozen=True)
class PipelineConfig:
    ingest: IngestConfig = field(default_factory=IngestConfig)
    analysis: AnalysisConfig = field(default_factory=AnalysisConfig)
    mapping: MappingConfig = field(default_factory=MappingConfig)
    semantic_service: SemanticServiceConfig = field(default_factory=SemanticServiceConfig)
    execution: ExecutionConfig = field(default_factory=ExecutionConfig)
    sessions: SessionConfig = field(default_factory=SessionConfig)
    database: DatabaseConfig = field(default_factory=DatabaseConfig)


def default_config() -> PipelineConfig:
    return PipelineConfig()


def _validate_config_schema(data: dict[str, Any]) -> None:
    """Validate config data against the bundled JSON schema.

    Raises:
        ConfigError: schema file missing / not valid JSON, or the data violates the schema
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


def _section(cls: type, raw: dict[str, Any] | None) -> Any:
    raw = raw or {}
    known = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in raw.items() if k in known})


def _check_ordering(cfg: PipelineConfig) -> None:
    m = cfg.mapping
    if m.fuzzy_accept < m.fuzzy_candidate:
        raise ConfigError("mapping.fuzzy_accept must be >= mapping.fuzzy_candidate")
    if m.semantic_cap < m.semantic_min:
        raise ConfigError("mapping.semantic_cap must be >= mapping.semantic_min")
    if cfg.ingest.streaming_threshold > cfg.ingest.max_file_size:
        raise ConfigError("ingest.streaming_threshold must not exceed ingest.max_file_size")


def build_config(data: dict[str, Any]) -> PipelineConfig:
    """Build a PipelineConfig from an already-parsed mapping (validated first)."""
    _validate_config_schema(data)
    cfg = PipelineConfig(
        ingest=_section(IngestConfig, data.get("ingest")),
        analysis=_section(AnalysisConfig, data.get("analysis")),
        mapping=_section(MappingConfig, data.get("mapping")),
        semantic_service=_section(SemanticServiceConfig, data.get("semantic_service")),
        execution=_section(ExecutionConfig, data.get("execution")),
        sessions=_section(SessionConfig, data.get("sessions")),
        database=_section(DatabaseConfig, data.get("database")),
    )
    _check_ordering(cfg)
    return cfg


def load_config(path: Path) -> PipelineConfig:
    if not path.exists():
        raise ConfigError(f"config file not found: {path}")
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as e:
        raise ConfigError(f"invalid yaml: {e}") from e
    if not isinstance(data, dict):
        raise ConfigError(f"config root must be a mapping, got {type(data).__name__}")
    return build_config(data)
