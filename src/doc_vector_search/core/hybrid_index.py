"""Hybrid index: per-document chunk records with lexical, vector and hybrid search.

The record store is a mapping of document path to ``DocumentRecord``; a
document's chunks are always replaced as a whole. Derived search structures
(BM25 model, stacked vector matrices) live in a ``SearchCache`` that is
dropped on every mutation and rebuilt on the next query.
"""

import os
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import aiofiles
import numpy as np
import orjson
from loguru import logger

from ..config.defaults import (
    DEFAULT_MIN_SCORE,
    DEFAULT_PROXIMITY_WEIGHT,
    DEFAULT_SEARCH_LIMIT,
    DEFAULT_TEXT_WEIGHT,
    DEFAULT_VECTOR_WEIGHT,
    MAX_SEARCH_LIMIT,
)
from .bm25_backend import BM25Backend
from .exceptions import (
    DatabaseError,
    DocVectorSearchError,
    EmbeddingError,
    IndexCorruptionError,
    ModelMismatchError,
    SearchError,
    ValidationError,
)
from .models import (
    Chunk,
    DocumentRecord,
    IndexStats,
    MatchType,
    ModelInfo,
    SearchMode,
    SearchResponse,
    SearchResult,
)
from .schema import unwrap_snapshot, wrap_snapshot
from .text_utils import make_snippet


class SearchCache:
    """Search structures derived from the record store.

    Holds the flattened chunk list, the BM25 model over it and one
    L2-normalized vector matrix per vector dimension present.
    """

    def __init__(self, proximity_weight: float = DEFAULT_PROXIMITY_WEIGHT) -> None:
        self.bm25 = BM25Backend(proximity_weight=proximity_weight)
        self.chunks: list[Chunk] = []
        # dimension -> (chunk positions, normalized matrix)
        self.matrices: dict[int, tuple[list[int], np.ndarray]] = {}
        self.built = False
        self.build_count = 0

    def invalidate(self) -> None:
        if self.built:
            logger.debug("Search cache invalidated")
        self.bm25.invalidate()
        self.chunks = []
        self.matrices = {}
        self.built = False

    def ensure(self, records: list[DocumentRecord]) -> None:
        """Build the cache if it was invalidated."""
        if self.built:
            return

        self.chunks = [chunk for record in records for chunk in record.chunks]
        self.bm25.build_index(self.chunks)

        rows_by_dims: dict[int, list[int]] = {}
        for idx, chunk in enumerate(self.chunks):
            if chunk.has_vector:
                rows_by_dims.setdefault(len(chunk.vector), []).append(idx)

        self.matrices = {}
        for dims, rows in rows_by_dims.items():
            matrix = np.asarray([self.chunks[i].vector for i in rows], dtype=np.float32)
            norms = np.linalg.norm(matrix, axis=1, keepdims=True)
            norms[norms == 0] = 1.0
            self.matrices[dims] = (rows, matrix / norms)

        self.built = True
        self.build_count += 1
        logger.debug(
            f"Search cache built: {len(self.chunks)} chunks, "
            f"vector dimensions {sorted(self.matrices)}"
        )

    def vector_scores(self, query_vector: list[float]) -> tuple[dict[int, float], int]:
        """Cosine similarity of the query against every compatible chunk.

        Returns:
            Tuple of (chunk position -> cosine, number of chunks skipped
            because their vector dimension differs from the query's)
        """
        dims = len(query_vector)
        skipped = sum(
            len(rows) for d, (rows, _) in self.matrices.items() if d != dims
        )
        if dims not in self.matrices:
            return {}, skipped

        rows, matrix = self.matrices[dims]
        query = np.asarray(query_vector, dtype=np.float32)
        norm = float(np.linalg.norm(query))
        if norm == 0.0:
            return {}, skipped

        similarities = matrix @ (query / norm)
        return {idx: float(sim) for idx, sim in zip(rows, similarities, strict=True)}, skipped


class HybridIndex:
    """Persisted chunk store supporting lexical, vector and hybrid queries.

    Example:
        index = HybridIndex(embedding_provider=provider)
        index.upsert_document(record)
        response = await index.search("carbon accounting", mode="hybrid")
        snapshot = index.save()
    """

    def __init__(
        self,
        embedding_provider: Any = None,
        vector_weight: float = DEFAULT_VECTOR_WEIGHT,
        text_weight: float = DEFAULT_TEXT_WEIGHT,
        proximity_weight: float = DEFAULT_PROXIMITY_WEIGHT,
        default_min_score: float = DEFAULT_MIN_SCORE,
    ) -> None:
        """Initialize hybrid index.

        Args:
            embedding_provider: Provider used for query embeddings (optional;
                without one, vector and hybrid queries degrade to lexical)
            vector_weight: Hybrid weight of the cosine score
            text_weight: Hybrid weight of the normalized lexical score
            proximity_weight: Lexical adjacent-pair bonus weight
            default_min_score: Score floor for vector and hybrid queries

        Raises:
            ValidationError: If the hybrid weights are not positive
        """
        if vector_weight <= 0 or text_weight <= 0:
            raise ValidationError("Hybrid weights must both be positive")

        total = vector_weight + text_weight
        self.vector_weight = vector_weight / total
        self.text_weight = text_weight / total
        self.default_min_score = default_min_score
        self.embedding_provider = embedding_provider

        self.model: ModelInfo | None = None
        self.model_mismatch = False
        self.last_updated: str | None = None

        self._records: dict[str, DocumentRecord] = {}
        self._dimensions: int | None = None
        self._cache = SearchCache(proximity_weight=proximity_weight)

    # ── Record store ──────────────────────────────────────────────────

    @property
    def document_count(self) -> int:
        return len(self._records)

    @property
    def chunk_count(self) -> int:
        return sum(len(record.chunks) for record in self._records.values())

    @property
    def dimensions(self) -> int | None:
        if self.model is not None and self.model.dimensions:
            return self.model.dimensions
        return self._dimensions

    @property
    def cache(self) -> SearchCache:
        return self._cache

    def paths(self) -> list[str]:
        return sorted(self._records)

    def has_document(self, path: str) -> bool:
        return path in self._records

    def get_record(self, path: str) -> DocumentRecord | None:
        return self._records.get(path)

    def records(self) -> list[DocumentRecord]:
        return [self._records[path] for path in sorted(self._records)]

    def set_model(self, info: ModelInfo) -> bool:
        """Record the embedding model identity.

        A different model on a non-empty index strips the stored vectors
        (their documents stay searchable lexically) and flags the index
        until ``mark_rebuilt`` is called after a full rebuild.

        Returns:
            True if the model changed on a non-empty index
        """
        if info.same_model(self.model):
            self.model = info
            return False

        previous = self.model
        self.model = info
        if previous is None and self._dimensions in (None, info.dimensions):
            # First identity for vectors already compatible with it
            self._dimensions = info.dimensions or self._dimensions
            return False
        self._dimensions = info.dimensions or None

        has_vectors = any(
            chunk.has_vector for record in self._records.values() for chunk in record.chunks
        )
        if not has_vectors:
            return False

        logger.warning(
            f"Embedding model changed ({previous.name if previous else 'unknown'} -> "
            f"{info.name}); stored vectors discarded, reindex to restore vector search"
        )
        for record in self._records.values():
            for chunk in record.chunks:
                chunk.vector = None
        self.model_mismatch = True
        self._cache.invalidate()
        return True

    def mark_rebuilt(self) -> None:
        """Clear the model-mismatch flag after a full rebuild."""
        self.model_mismatch = False

    def upsert_document(self, record: DocumentRecord) -> None:
        """Replace every chunk of ``record.path`` with ``record.chunks``.

        Raises:
            ModelMismatchError: If any vector's dimension differs from the
                index model; nothing is modified in that case
        """
        expected = self.dimensions
        for chunk in record.chunks:
            if not chunk.has_vector:
                continue
            if expected is None:
                expected = len(chunk.vector)
            elif len(chunk.vector) != expected:
                raise ModelMismatchError(
                    f"Vector dimension {len(chunk.vector)} does not match index "
                    f"dimension {expected}",
                    {"path": record.path, "chunk_id": chunk.chunk_id},
                )

        if expected is not None and self._dimensions is None:
            self._dimensions = expected

        self._records[record.path] = record
        self._touch()
        logger.debug(f"Upserted {record.path} ({len(record.chunks)} chunks)")

    def remove_document(self, path: str) -> int:
        """Remove a document's record.

        Returns:
            Number of chunks removed (0 when the path was not indexed)
        """
        record = self._records.pop(path, None)
        if record is None:
            return 0
        self._touch()
        logger.debug(f"Removed {path} ({len(record.chunks)} chunks)")
        return len(record.chunks)

    def clear(self) -> None:
        self._records.clear()
        self._dimensions = self.model.dimensions if self.model else None
        self.model_mismatch = False
        self._touch()

    def _touch(self) -> None:
        self.last_updated = datetime.now(UTC).isoformat()
        self._cache.invalidate()

    def stats(self) -> IndexStats:
        return IndexStats(
            document_count=self.document_count,
            chunk_count=self.chunk_count,
            model_name=self.model.name if self.model else None,
            dimensions=self.dimensions,
            last_updated=self.last_updated,
        )

    # ── Search ────────────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        mode: SearchMode | str = SearchMode.HYBRID,
        limit: int = DEFAULT_SEARCH_LIMIT,
        min_score: float | None = None,
        tags: list[str] | None = None,
        include_paths: list[str] | None = None,
        exclude_paths: list[str] | None = None,
    ) -> SearchResponse:
        """Search the index.

        Args:
            query: Free-text query
            mode: "lexical", "vector" or "hybrid"
            limit: Maximum number of results (1..1000)
            min_score: Score floor; defaults to 0.3 for vector and hybrid
                and 0.0 for lexical
            tags: Tags every result must carry (case-insensitive)
            include_paths: Path prefixes; a result must match at least one
            exclude_paths: Path prefixes a result must not match

        Returns:
            SearchResponse; ``degraded`` is set when a vector or hybrid query
            ran lexically because embeddings were unavailable

        Raises:
            ValidationError: If any parameter is malformed
            SearchError: If the search fails unexpectedly
        """
        requested = self._validate(query, mode, limit, min_score, tags, include_paths, exclude_paths)

        if not query.strip() or not self._records:
            return SearchResponse(results=[], mode=requested, requested_mode=requested)

        try:
            return await self._search(
                query, requested, limit, min_score, tags, include_paths, exclude_paths
            )
        except DocVectorSearchError:
            raise
        except Exception as e:
            logger.error(f"Search failed for query '{query}': {e}")
            raise SearchError(f"Search failed: {e}", {"query": query}) from e

    async def _search(
        self,
        query: str,
        requested: SearchMode,
        limit: int,
        min_score: float | None,
        tags: list[str] | None,
        include_paths: list[str] | None,
        exclude_paths: list[str] | None,
    ) -> SearchResponse:
        warnings: list[str] = []
        mode = requested

        query_vector: list[float] | None = None
        if mode != SearchMode.LEXICAL:
            query_vector, reason = await self._embed_query(query)
            if query_vector is None:
                message = f"Vector search unavailable ({reason}); using keyword search"
                logger.warning(message)
                warnings.append(message)
                mode = SearchMode.LEXICAL

        self._cache.ensure(self.records())
        chunks = self._cache.chunks

        lexical: dict[int, float] = {}
        if mode != SearchMode.VECTOR:
            lexical = dict(self._cache.bm25.search(query))

        cosine: dict[int, float] = {}
        if query_vector is not None:
            cosine, skipped = self._cache.vector_scores(query_vector)
            if skipped:
                message = (
                    f"{skipped} chunks have vectors from a different model and were "
                    f"skipped; reindex required"
                )
                logger.warning(message)
                warnings.append(message)
        if self.model_mismatch and mode != SearchMode.LEXICAL:
            warnings.append("Embedding model changed; vector results are partial until reindexed")

        scores = self._combine(mode, lexical, cosine)

        floor = min_score
        if floor is None:
            floor = 0.0 if mode == SearchMode.LEXICAL else self.default_min_score

        wanted_tags = {t.lower().lstrip("#") for t in tags or []}
        best: dict[tuple[str, MatchType], tuple[float, Chunk]] = {}
        for idx, score in scores.items():
            if score < floor:
                continue
            chunk = chunks[idx]
            if not self._passes_filters(chunk, wanted_tags, include_paths, exclude_paths):
                continue
            key = (chunk.path, chunk.chunk_type)
            if key not in best or score > best[key][0]:
                best[key] = (score, chunk)

        ranked = sorted(
            best.values(), key=lambda item: (-item[0], item[1].path, item[1].chunk_type.value)
        )[:limit]

        results = [self._to_result(chunk, score) for score, chunk in ranked]
        logger.debug(
            f"{mode.value} search for '{query}' returned {len(results)} results"
        )
        return SearchResponse(
            results=results,
            mode=mode,
            requested_mode=requested,
            degraded=mode != requested,
            warnings=warnings,
        )

    def _combine(
        self, mode: SearchMode, lexical: dict[int, float], cosine: dict[int, float]
    ) -> dict[int, float]:
        if mode == SearchMode.LEXICAL:
            top = max(lexical.values(), default=0.0)
            if top > 1.0:
                return {idx: score / top for idx, score in lexical.items()}
            return lexical

        if mode == SearchMode.VECTOR:
            return cosine

        top = max(lexical.values(), default=0.0)
        combined: dict[int, float] = {}
        for idx in set(lexical) | set(cosine):
            text_score = lexical.get(idx, 0.0) / top if top > 0 else 0.0
            vector_score = max(cosine.get(idx, 0.0), 0.0)
            combined[idx] = self.vector_weight * vector_score + self.text_weight * text_score
        return combined

    async def _embed_query(self, query: str) -> tuple[list[float] | None, str]:
        provider = self.embedding_provider
        if provider is None:
            return None, "no embedding provider configured"
        try:
            if not await provider.is_available():
                return None, "embedding provider not available"
            return await provider.embed_query(query), ""
        except EmbeddingError as e:
            return None, str(e)

    @staticmethod
    def _passes_filters(
        chunk: Chunk,
        wanted_tags: set[str],
        include_paths: list[str] | None,
        exclude_paths: list[str] | None,
    ) -> bool:
        if wanted_tags and not wanted_tags <= {t.lower() for t in chunk.tags}:
            return False
        if include_paths and not any(chunk.path.startswith(p) for p in include_paths):
            return False
        if exclude_paths and any(chunk.path.startswith(p) for p in exclude_paths):
            return False
        return True

    @staticmethod
    def _to_result(chunk: Chunk, score: float) -> SearchResult:
        return SearchResult(
            path=chunk.path,
            title=chunk.title,
            score=score,
            match_type=chunk.chunk_type,
            heading=chunk.heading,
            line=chunk.line,
            snippet=make_snippet(chunk.text),
            tags=list(chunk.tags),
            doc_type=chunk.doc_type,
            chunk_id=chunk.chunk_id,
        )

    @staticmethod
    def _validate(
        query: Any,
        mode: Any,
        limit: Any,
        min_score: Any,
        tags: Any,
        include_paths: Any,
        exclude_paths: Any,
    ) -> SearchMode:
        if not isinstance(query, str):
            raise ValidationError("Query must be a string", {"query": repr(query)})
        try:
            search_mode = SearchMode(mode)
        except ValueError as e:
            raise ValidationError(
                f"Unknown search mode {mode!r}; expected one of "
                f"{[m.value for m in SearchMode]}"
            ) from e
        if isinstance(limit, bool) or not isinstance(limit, int) or not 1 <= limit <= MAX_SEARCH_LIMIT:
            raise ValidationError(f"Limit must be an integer between 1 and {MAX_SEARCH_LIMIT}")
        if min_score is not None and (
            isinstance(min_score, bool)
            or not isinstance(min_score, int | float)
            or not 0.0 <= min_score <= 1.0
        ):
            raise ValidationError("min_score must be between 0 and 1")
        for name, value in (
            ("tags", tags),
            ("include_paths", include_paths),
            ("exclude_paths", exclude_paths),
        ):
            if value is not None and (
                not isinstance(value, list | tuple)
                or not all(isinstance(item, str) for item in value)
            ):
                raise ValidationError(f"{name} must be a list of strings")
        return search_mode

    # ── Persistence ───────────────────────────────────────────────────

    def save(self) -> dict[str, Any]:
        """Serialize the index into a versioned snapshot envelope."""
        return wrap_snapshot(
            {
                "model": self.model.to_dict() if self.model else None,
                "model_mismatch": self.model_mismatch,
                "last_updated": self.last_updated,
                "documents": [record.to_dict() for record in self.records()],
            }
        )

    def load(self, snapshot: Any) -> None:
        """Replace the index state with a snapshot.

        Raises:
            SchemaVersionError: If the snapshot version is not current
            IndexCorruptionError: If the payload cannot be parsed
        """
        data = unwrap_snapshot(snapshot)
        try:
            records = [DocumentRecord.from_dict(item) for item in data.get("documents", [])]
            model_data = data.get("model")
            model = (
                ModelInfo(
                    name=model_data["name"],
                    dimensions=int(model_data["dimensions"]),
                    backend=model_data.get("backend", ""),
                )
                if model_data
                else None
            )
        except (KeyError, TypeError, ValueError) as e:
            raise IndexCorruptionError(f"Snapshot payload is malformed: {e}") from e

        self._records = {record.path: record for record in records}
        self.model = model
        self.model_mismatch = bool(data.get("model_mismatch", False))
        self.last_updated = data.get("last_updated")
        self._dimensions = next(
            (
                len(chunk.vector)
                for record in records
                for chunk in record.chunks
                if chunk.has_vector
            ),
            model.dimensions if model else None,
        )
        self._cache.invalidate()
        logger.info(f"Loaded index with {len(self._records)} documents")

    async def save_to(self, path: Path) -> None:
        """Write the snapshot atomically (temporary file, then replace)."""
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = path.with_name(path.name + ".tmp")
        try:
            payload = orjson.dumps(self.save())
        except orjson.JSONEncodeError as e:
            raise DatabaseError(f"Index state is not serializable: {e}") from e
        try:
            async with aiofiles.open(tmp_path, "wb") as f:
                await f.write(payload)
            os.replace(tmp_path, path)
        except OSError as e:
            raise DatabaseError(f"Failed to write snapshot {path}: {e}") from e
        logger.debug(f"Saved snapshot to {path} ({len(payload)} bytes)")

    async def load_from(self, path: Path) -> bool:
        """Load a snapshot file.

        Returns:
            False if the file does not exist

        Raises:
            SchemaVersionError: If the snapshot version is not current
            IndexCorruptionError: If the file is not valid JSON
        """
        if not path.exists():
            return False
        async with aiofiles.open(path, "rb") as f:
            raw = await f.read()
        try:
            snapshot = orjson.loads(raw)
        except orjson.JSONDecodeError as e:
            raise IndexCorruptionError(f"Snapshot {path} is not valid JSON: {e}") from e
        self.load(snapshot)
        return True
