"""Typed exception hierarchy for doc-vector-search.

Hierarchy
---------
DocVectorSearchError (base)
├── EmbeddingError             – embedding generation errors
│   ├── TransientProviderError – network / timeout / worker hiccup (retryable)
│   ├── InvalidEmbeddingError  – wrong vector count or dimensionality
│   ├── EmbeddingRetryExhaustedError – failure after reinitialize-and-retry
│   └── ProviderUnavailableError     – no backend could be loaded
├── DatabaseError              – index store / snapshot errors
│   ├── SchemaVersionError     – snapshot version differs, reindex required
│   ├── ModelMismatchError     – stored vectors from a different model
│   └── IndexCorruptionError   – unreadable snapshot
├── IndexingError              – indexing-time failures
│   ├── DocumentReadError      – document could not be read
│   └── IndexingInProgressError – a bulk run is already active
├── SearchError                – search-time failures
│   └── ValidationError        – malformed query parameters
├── ConfigError                – configuration errors
└── InitializationError        – component startup errors

Every error carries an optional ``context`` dict with structured details
(path, backend, versions) that callers can log or surface.
"""

from typing import Any


class DocVectorSearchError(Exception):
    """Base exception for Doc Vector Search."""

    def __init__(self, message: str, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.context = context or {}


# Convenience alias
DVSError = DocVectorSearchError


# ── Embedding layer ─────────────────────────────────────────────────────


class EmbeddingError(DocVectorSearchError):
    """Embedding generation errors."""

    pass


class TransientProviderError(EmbeddingError):
    """Backend hiccup: timeout, connection error, worker reset.

    Retried by ``EmbeddingProvider`` before it is surfaced to callers.
    """

    pass


class InvalidEmbeddingError(EmbeddingError):
    """Backend returned the wrong number of vectors or a wrong dimension."""

    pass


class EmbeddingRetryExhaustedError(EmbeddingError):
    """The single reinitialize-and-retry attempt also failed."""

    pass


class ProviderUnavailableError(EmbeddingError):
    """No configured backend could be initialized."""

    pass


# ── Index store layer ───────────────────────────────────────────────────


class DatabaseError(DocVectorSearchError):
    """Index store and snapshot errors."""

    pass


class SchemaVersionError(DatabaseError):
    """Snapshot schema version differs from the supported one.

    Never migrated in place: the caller must rebuild with
    ``index_all(force=True)``.
    """

    def __init__(
        self,
        found: int,
        expected: int,
        context: dict[str, Any] | None = None,
    ) -> None:
        self.found = found
        self.expected = expected
        ctx = {"found": found, "expected": expected, "reindex_required": True}
        ctx.update(context or {})
        super().__init__(
            f"Index schema v{found} does not match v{expected}: reindex required",
            ctx,
        )


class ModelMismatchError(DatabaseError):
    """Vector dimensionality differs from the index's embedding model."""

    pass


class IndexCorruptionError(DatabaseError):
    """Snapshot could not be parsed."""

    pass


# ── Indexing layer ──────────────────────────────────────────────────────


class IndexingError(DocVectorSearchError):
    """Indexing operation failed.

    Named ``IndexingError`` (not ``IndexError``) to avoid shadowing
    the Python built-in ``IndexError``.
    """

    pass


class DocumentReadError(IndexingError):
    """Document content or modification time could not be read."""

    pass


class IndexingInProgressError(IndexingError):
    """``index_all`` was called while another run is active."""

    pass


# ── Search layer ────────────────────────────────────────────────────────


class SearchError(DocVectorSearchError):
    """Search operation failed."""

    pass


class ValidationError(SearchError):
    """Malformed query parameters, rejected before any index work."""

    pass


# ── Configuration layer ─────────────────────────────────────────────────


class ConfigError(DocVectorSearchError):
    """Configuration / validation errors."""

    pass


# ── Initialization layer ────────────────────────────────────────────────


class InitializationError(DocVectorSearchError):
    """Component startup errors."""

    pass
