"""Core functionality for Doc Vector Search."""

from .exceptions import (
    ConfigError,
    DatabaseError,
    DocumentReadError,
    DocVectorSearchError,
    EmbeddingError,
    EmbeddingRetryExhaustedError,
    IndexCorruptionError,
    IndexingError,
    IndexingInProgressError,
    InitializationError,
    InvalidEmbeddingError,
    ModelMismatchError,
    ProviderUnavailableError,
    SchemaVersionError,
    SearchError,
    TransientProviderError,
    ValidationError,
)

__all__ = [
    "ConfigError",
    "DatabaseError",
    "DocVectorSearchError",
    "DocumentReadError",
    "EmbeddingError",
    "EmbeddingRetryExhaustedError",
    "IndexCorruptionError",
    "IndexingError",
    "IndexingInProgressError",
    "InitializationError",
    "InvalidEmbeddingError",
    "ModelMismatchError",
    "ProviderUnavailableError",
    "SchemaVersionError",
    "SearchError",
    "TransientProviderError",
    "ValidationError",
]
