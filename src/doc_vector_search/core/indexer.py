"""Document indexer: read, chunk, embed and upsert documents."""

import asyncio
import time
from collections.abc import AsyncIterator, Callable
from contextlib import asynccontextmanager
from datetime import UTC, datetime
from pathlib import Path

from loguru import logger

from .chunker import MarkdownChunker
from .document_store import DocumentStore
from .embeddings import EmbeddingProvider
from .exceptions import (
    DatabaseError,
    DocumentReadError,
    EmbeddingError,
    IndexingInProgressError,
    ProviderUnavailableError,
)
from .hybrid_index import HybridIndex
from .index_metadata import IndexMetadata
from .models import (
    Chunk,
    ChunkDraft,
    Document,
    DocumentRecord,
    IndexingPhase,
    IndexingProgress,
    IndexingSummary,
    MatchType,
)
from .text_utils import estimate_tokens

ProgressCallback = Callable[[IndexingProgress], None]


class PathLocks:
    """Registry of per-path ``asyncio.Lock`` objects.

    ``asyncio.Lock`` wakes waiters in FIFO order, so for any path the most
    recently issued operation runs last. Locks are dropped once no task
    holds or waits on them.
    """

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}
        self._users: dict[str, int] = {}

    @asynccontextmanager
    async def hold(self, path: str) -> AsyncIterator[None]:
        lock = self._locks.setdefault(path, asyncio.Lock())
        self._users[path] = self._users.get(path, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._users[path] -= 1
            if self._users[path] == 0:
                del self._users[path]
                del self._locks[path]

    def __len__(self) -> int:
        return len(self._locks)


class DocumentIndexer:
    """Keeps the hybrid index in step with the document store.

    Example:
        indexer = DocumentIndexer(store, index, provider)
        summary = await indexer.index_all()
        print(f"{summary.indexed} indexed, {summary.skipped} unchanged")
    """

    def __init__(
        self,
        store: DocumentStore,
        index: HybridIndex,
        embedding_provider: EmbeddingProvider | None = None,
        chunker: MarkdownChunker | None = None,
        metadata: IndexMetadata | None = None,
        snapshot_path: Path | None = None,
    ) -> None:
        """Initialize document indexer.

        Args:
            store: Source of documents
            index: Hybrid index to write to
            embedding_provider: Provider for chunk vectors; without one (or
                while it is unavailable) chunks are stored lexical-only
            chunker: Markdown chunker (default settings when omitted)
            metadata: Metadata record written after bulk runs
            snapshot_path: Snapshot file flushed after bulk runs (in-memory
                index when None)
        """
        self.store = store
        self.index = index
        self.embedding_provider = embedding_provider
        self.chunker = chunker or MarkdownChunker()
        self.metadata = metadata
        self.snapshot_path = snapshot_path

        self.locks = PathLocks()
        self._subscribers: list[ProgressCallback] = []
        self._running = False
        self._cancel_requested = False
        self.last_summary: IndexingSummary | None = None

    # ── Progress subscribers ──────────────────────────────────────────

    def subscribe(self, callback: ProgressCallback) -> Callable[[], None]:
        """Register a progress callback.

        Returns:
            Function that removes the callback again
        """
        self._subscribers.append(callback)
        return lambda: self.unsubscribe(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        if callback in self._subscribers:
            self._subscribers.remove(callback)

    def _notify(self, progress: IndexingProgress) -> None:
        logger.debug(
            f"[{progress.phase.value}] {progress.current}/{progress.total} "
            f"{progress.current_path or ''}"
        )
        for callback in list(self._subscribers):
            try:
                callback(progress)
            except Exception as e:
                logger.warning(f"Progress subscriber failed: {e}")

    # ── Change detection ──────────────────────────────────────────────

    def needs_reindex(self, path: str, mtime: float, content_hash: str | None = None) -> bool:
        """Whether a document differs from its indexed record.

        Args:
            path: Store path
            mtime: Current modification time
            content_hash: Current content hash, compared when given

        Returns:
            True if never indexed, modified since, or the content changed
        """
        record = self.index.get_record(path)
        if record is None:
            return True
        if mtime > record.mtime:
            return True
        return content_hash is not None and content_hash != record.content_hash

    # ── Single documents ──────────────────────────────────────────────

    async def index_file(self, path: str, document: Document | None = None) -> bool:
        """Index one document, replacing any previous record.

        Args:
            path: Store path
            document: Already-read document (read from the store when None)

        Returns:
            True if the record was written; False on read or embedding
            failure (the previous record, if any, is left untouched)
        """
        async with self.locks.hold(path):
            if document is None:
                try:
                    document = await self.store.read(path)
                except DocumentReadError as e:
                    logger.error(f"Failed to read {path}: {e}")
                    return False
            return await self._write_record(path, document) == "indexed"

    async def _write_record(
        self, path: str, document: Document, discard_if_cancelled: bool = False
    ) -> str:
        """Build and store a record. The caller holds the path lock.

        Returns:
            "indexed", "cancelled", or an error message
        """
        try:
            record = await self._build_record(document)
            if discard_if_cancelled and self._cancel_requested:
                logger.debug(f"Discarding {path}: indexing was cancelled")
                return "cancelled"
            self.index.upsert_document(record)
        except EmbeddingError as e:
            logger.error(f"Failed to embed {path}: {e}")
            return f"Failed to embed {path}: {e}"
        except DatabaseError as e:
            logger.error(f"Failed to store {path}: {e}")
            return f"Failed to store {path}: {e}"

        logger.debug(f"Indexed {path} ({len(record.chunks)} chunks)")
        return "indexed"

    async def remove_file(self, path: str) -> int:
        """Remove a document's record.

        Returns:
            Number of chunks removed
        """
        async with self.locks.hold(path):
            removed = self.index.remove_document(path)
        if removed:
            logger.debug(f"Removed {removed} chunks for {path}")
        return removed

    async def _build_record(self, document: Document) -> DocumentRecord:
        parsed = self.chunker.parse(document.text, document.path)
        vectors = await self._embed_drafts(parsed.drafts)

        metadata = parsed.metadata
        chunks: list[Chunk] = []
        for position, draft in enumerate(parsed.drafts):
            chunks.append(
                Chunk(
                    chunk_id=self._chunk_id(document.path, position, draft),
                    path=document.path,
                    chunk_type=draft.kind,
                    heading=draft.heading,
                    line=draft.line,
                    text=draft.content,
                    token_count=estimate_tokens(draft.content),
                    vector=vectors[position] if vectors is not None else None,
                    title=metadata.title,
                    tags=list(metadata.tags),
                    folder=document.folder,
                    mtime=document.mtime,
                    doc_type=metadata.doc_type,
                )
            )

        return DocumentRecord(
            path=document.path,
            mtime=document.mtime,
            content_hash=document.content_hash,
            metadata=metadata,
            chunks=chunks,
            indexed_at=datetime.now(UTC).isoformat(),
        )

    async def _embed_drafts(self, drafts: list[ChunkDraft]) -> list[list[float]] | None:
        """Embed all drafts of one document in a single batched call.

        Returns:
            Vectors, or None when no provider can serve (lexical-only)
        """
        provider = self.embedding_provider
        if provider is None or not drafts:
            return None
        if not await provider.is_available():
            logger.debug("Embedding provider unavailable; storing lexical-only chunks")
            return None

        try:
            vectors = await provider.embed([draft.content for draft in drafts])
        except ProviderUnavailableError as e:
            logger.warning(f"No embedding backend could load ({e}); storing lexical-only chunks")
            return None

        self.index.set_model(provider.model_info())
        return vectors

    @staticmethod
    def _chunk_id(path: str, position: int, draft: ChunkDraft) -> str:
        if draft.kind == MatchType.DOCUMENT:
            return f"{path}#doc"
        return f"{path}#{position}:{draft.heading}"

    # ── Bulk indexing ─────────────────────────────────────────────────

    @property
    def is_running(self) -> bool:
        return self._running

    def cancel(self) -> None:
        """Request cancellation.

        Honoured before the next document; a document whose embedding is in
        flight is discarded instead of written.
        """
        if self._running:
            logger.info("Indexing cancellation requested")
            self._cancel_requested = True

    async def index_all(self, force: bool = False) -> IndexingSummary:
        """Index every eligible document that changed since it was indexed.

        Args:
            force: Reindex everything, ignoring change detection

        Returns:
            IndexingSummary with per-outcome counts

        Raises:
            IndexingInProgressError: If a bulk run is already active
        """
        if self._running:
            raise IndexingInProgressError("Indexing already in progress")

        self._running = True
        self._cancel_requested = False
        start_time = time.monotonic()
        summary = IndexingSummary()

        try:
            paths = self.store.list_documents()
            summary.total = len(paths)
            self._notify(IndexingProgress(IndexingPhase.SCANNING, 0, summary.total))

            vectors_possible = await self._prepare_provider()

            for position, path in enumerate(paths, start=1):
                if self._cancel_requested:
                    summary.cancelled = True
                    logger.info(f"Indexing cancelled after {position - 1}/{summary.total} documents")
                    break

                self._notify(
                    IndexingProgress(IndexingPhase.INDEXING, position, summary.total, path)
                )
                outcome = await self._index_one(path, force, vectors_possible)
                if outcome == "cancelled":
                    summary.cancelled = True
                    logger.info(f"Indexing cancelled after {position - 1}/{summary.total} documents")
                    break
                if outcome == "indexed":
                    summary.indexed += 1
                elif outcome == "skipped":
                    summary.skipped += 1
                else:
                    summary.errors += 1
                    self._notify(
                        IndexingProgress(
                            IndexingPhase.INDEXING, position, summary.total, path, error=outcome
                        )
                    )

            if not summary.cancelled:
                summary.removed = await self._prune(set(paths))
                if force and summary.errors == 0:
                    self.index.mark_rebuilt()

            try:
                await self.flush()
            except DatabaseError as e:
                logger.error(f"Failed to persist index: {e}")
            summary.duration_seconds = time.monotonic() - start_time
            self._notify(IndexingProgress(IndexingPhase.COMPLETE, summary.total, summary.total))
        finally:
            self._running = False
            self._cancel_requested = False

        logger.info(
            f"Indexing finished: {summary.indexed} indexed, {summary.skipped} unchanged, "
            f"{summary.errors} errors, {summary.removed} removed "
            f"in {summary.duration_seconds:.1f}s"
        )
        self.last_summary = summary
        return summary

    async def _prepare_provider(self) -> bool:
        provider = self.embedding_provider
        if provider is None:
            return False
        try:
            if not await provider.is_available():
                logger.warning("Embedding provider unavailable; indexing lexical-only")
                return False
            await provider.initialize()
        except ProviderUnavailableError as e:
            logger.warning(f"Embedding provider failed to start ({e}); indexing lexical-only")
            return False
        return True

    async def _index_one(self, path: str, force: bool, vectors_possible: bool) -> str:
        """Index one path of a bulk run.

        The read and the write happen under the path lock so a watcher
        reindex issued meanwhile lands after this one.

        Returns:
            "indexed", "skipped", "cancelled", or an error message
        """
        async with self.locks.hold(path):
            record = self.index.get_record(path)
            lacks_vectors = (
                vectors_possible
                and record is not None
                and not any(chunk.has_vector for chunk in record.chunks)
            )

            if not force and record is not None and not lacks_vectors:
                try:
                    mtime = self.store.stat_mtime(path)
                except DocumentReadError as e:
                    logger.error(str(e))
                    return str(e)
                if not self.needs_reindex(path, mtime):
                    return "skipped"

            try:
                document = await self.store.read(path)
            except DocumentReadError as e:
                logger.error(str(e))
                return str(e)

            if not force and record is not None and not lacks_vectors:
                if not self.needs_reindex(path, record.mtime, document.content_hash):
                    # Touched but unchanged
                    record.mtime = document.mtime
                    return "skipped"

            return await self._write_record(path, document, discard_if_cancelled=True)

    async def _prune(self, present: set[str]) -> int:
        """Remove records for documents no longer in the store."""
        removed = 0
        for path in self.index.paths():
            if path not in present:
                await self.remove_file(path)
                removed += 1
        if removed:
            logger.info(f"Pruned {removed} documents no longer in the store")
        return removed

    # ── Persistence ───────────────────────────────────────────────────

    async def flush(self) -> None:
        """Write metadata and the snapshot (when configured)."""
        if self.snapshot_path is not None:
            await self.index.save_to(self.snapshot_path)
        if self.metadata is not None:
            model = self.index.model
            self.metadata.save(
                document_count=self.index.document_count,
                embedding_model=model.name if model else None,
                embedding_dimensions=model.dimensions if model else None,
                exclude_paths=self.store.exclude_paths,
            )
