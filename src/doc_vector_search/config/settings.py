"""Project settings for Doc Vector Search.

Values are resolved in this order (later wins):
1. Field defaults (see ``config/defaults.py``)
2. ``.doc-vector-search/config.json`` under the project root
3. Environment variables with the ``DOC_VECTOR_SEARCH_`` prefix
"""

import json
from pathlib import Path
from typing import Any

from loguru import logger
from pydantic import Field, ValidationError, field_validator, model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from ..core.exceptions import ConfigError
from .defaults import (
    CONFIG_FILE,
    DEFAULT_AUTOSAVE_INTERVAL,
    DEFAULT_BATCH_SIZE,
    DEFAULT_DEBOUNCE_SECONDS,
    DEFAULT_DOCUMENT_TYPES,
    DEFAULT_DOWNGRADE_THRESHOLD,
    DEFAULT_EMBED_TIMEOUT,
    DEFAULT_EMBEDDING_BACKENDS,
    DEFAULT_EMBEDDING_MODELS,
    DEFAULT_EXCLUDE_PATHS,
    DEFAULT_FILE_EXTENSIONS,
    DEFAULT_MAX_CHUNK_CHARS,
    DEFAULT_MAX_CONSECUTIVE_FAILURES,
    DEFAULT_MIN_SCORE,
    DEFAULT_OLLAMA_URL,
    DEFAULT_PROXIMITY_WEIGHT,
    DEFAULT_TEXT_WEIGHT,
    DEFAULT_THROTTLE_MS,
    DEFAULT_VECTOR_WEIGHT,
    EMBEDDING_BACKENDS,
    get_data_dir,
)


class ProjectConfig(BaseSettings):
    """Typed configuration for one indexed document root."""

    model_config = SettingsConfigDict(
        env_prefix="DOC_VECTOR_SEARCH_",
        extra="ignore",
        validate_assignment=True,
    )

    # ── Corpus ───────────────────────────────────
    project_root: Path = Field(default_factory=Path.cwd)
    file_extensions: list[str] = Field(
        default_factory=lambda: list(DEFAULT_FILE_EXTENSIONS)
    )
    exclude_paths: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EXCLUDE_PATHS)
    )
    document_types: dict[str, str] = Field(
        default_factory=lambda: dict(DEFAULT_DOCUMENT_TYPES),
        description="Path prefix to document type, first match wins",
    )

    # ── Embeddings ───────────────────────────────
    embedding_model: str = DEFAULT_EMBEDDING_MODELS["default"]
    embedding_dimensions: int | None = None
    embedding_backends: list[str] = Field(
        default_factory=lambda: list(DEFAULT_EMBEDDING_BACKENDS)
    )
    device: str | None = Field(
        default=None, description="Force compute device: cpu, cuda or mps"
    )
    ollama_url: str = DEFAULT_OLLAMA_URL
    ollama_model: str = DEFAULT_EMBEDDING_MODELS["ollama"]
    batch_size: int = Field(default=DEFAULT_BATCH_SIZE, ge=1)
    throttle_ms: int = Field(default=DEFAULT_THROTTLE_MS, ge=0)
    embed_timeout: float = Field(default=DEFAULT_EMBED_TIMEOUT, gt=0)
    max_consecutive_failures: int = Field(
        default=DEFAULT_MAX_CONSECUTIVE_FAILURES, ge=1
    )
    downgrade_threshold: int = Field(default=DEFAULT_DOWNGRADE_THRESHOLD, ge=1)
    embedding_cache: bool = Field(
        default=True, description="Cache vectors on disk, keyed by model and text"
    )

    # ── Chunking ─────────────────────────────────
    max_chunk_chars: int = Field(default=DEFAULT_MAX_CHUNK_CHARS, ge=100)

    # ── Ranking ──────────────────────────────────
    vector_weight: float = Field(default=DEFAULT_VECTOR_WEIGHT, gt=0)
    text_weight: float = Field(default=DEFAULT_TEXT_WEIGHT, gt=0)
    proximity_weight: float = Field(default=DEFAULT_PROXIMITY_WEIGHT, ge=0)
    default_min_score: float = Field(default=DEFAULT_MIN_SCORE, ge=0, le=1)

    # ── Reconciliation / persistence ─────────────
    debounce_seconds: float = Field(default=DEFAULT_DEBOUNCE_SECONDS, ge=0)
    autosave_interval: float = Field(default=DEFAULT_AUTOSAVE_INTERVAL, ge=0)

    # ── Logging ──────────────────────────────────
    log_level: str = "WARNING"

    @classmethod
    def settings_customise_sources(
        cls,
        settings_cls,
        init_settings,
        env_settings,
        dotenv_settings,
        file_secret_settings,
    ):
        # Environment beats values passed in from config.json
        return env_settings, init_settings, dotenv_settings, file_secret_settings

    @field_validator("file_extensions")
    @classmethod
    def _normalize_extensions(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("file_extensions must not be empty")
        return [ext if ext.startswith(".") else f".{ext}" for ext in value]

    @field_validator("exclude_paths")
    @classmethod
    def _normalize_excludes(cls, value: list[str]) -> list[str]:
        return [p.replace("\\", "/").removeprefix("./") for p in value]

    @field_validator("embedding_backends")
    @classmethod
    def _check_backends(cls, value: list[str]) -> list[str]:
        if not value:
            raise ValueError("at least one embedding backend is required")
        unknown = [name for name in value if name not in EMBEDDING_BACKENDS]
        if unknown:
            raise ValueError(
                f"unknown embedding backends {unknown}; expected {list(EMBEDDING_BACKENDS)}"
            )
        return value

    @field_validator("device")
    @classmethod
    def _check_device(cls, value: str | None) -> str | None:
        if value is None or value == "":
            return None
        value = value.lower()
        if value not in ("cpu", "cuda", "mps"):
            raise ValueError("device must be one of cpu, cuda, mps")
        return value

    @field_validator("log_level")
    @classmethod
    def _check_log_level(cls, value: str) -> str:
        return value.upper()

    @model_validator(mode="after")
    def _check_weights(self) -> "ProjectConfig":
        if self.vector_weight + self.text_weight <= 0:
            raise ValueError("hybrid weights must sum to a positive value")
        return self

    # ── Derived ──────────────────────────────────

    @property
    def index_path(self) -> Path:
        """Private data directory holding the snapshot and metadata."""
        return get_data_dir(self.project_root)

    @property
    def hybrid_weights(self) -> tuple[float, float]:
        """(vector, text) weights normalized to sum to 1."""
        total = self.vector_weight + self.text_weight
        return self.vector_weight / total, self.text_weight / total

    # ── Persistence ──────────────────────────────

    @classmethod
    def load(cls, project_root: Path, **overrides: Any) -> "ProjectConfig":
        """Load configuration for a project root.

        Args:
            project_root: Root directory of the document corpus
            **overrides: Explicit values (e.g. from CLI flags)

        Returns:
            Resolved configuration

        Raises:
            ConfigError: If the config file or any value is invalid
        """
        project_root = Path(project_root).resolve()
        values: dict[str, Any] = {}

        config_file = get_data_dir(project_root) / CONFIG_FILE
        if config_file.exists():
            try:
                values = json.loads(config_file.read_text(encoding="utf-8"))
            except (OSError, json.JSONDecodeError) as e:
                raise ConfigError(
                    f"Failed to read {config_file}: {e}",
                    {"path": str(config_file)},
                ) from e
            logger.debug(f"Loaded {len(values)} settings from {config_file}")

        values.update({k: v for k, v in overrides.items() if v is not None})
        values["project_root"] = project_root

        try:
            return cls(**values)
        except ValidationError as e:
            raise ConfigError(f"Invalid configuration: {e}") from e

    def save(self) -> Path:
        """Persist non-default settings to ``config.json``."""
        config_file = self.index_path / CONFIG_FILE
        config_file.parent.mkdir(parents=True, exist_ok=True)
        data = self.model_dump(mode="json", exclude={"project_root"}, exclude_defaults=True)
        config_file.write_text(json.dumps(data, indent=2), encoding="utf-8")
        logger.debug(f"Saved configuration to {config_file}")
        return config_file
