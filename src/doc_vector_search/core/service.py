"""Index service: the single entry point consumers and the CLI talk to."""

import asyncio
from pathlib import Path
from typing import Any

from loguru import logger

from ..config.defaults import DEFAULT_SEARCH_LIMIT
from .embeddings import EmbeddingProvider
from .exceptions import DatabaseError, IndexCorruptionError, SchemaVersionError
from .factory import ComponentBundle, ComponentFactory
from .indexer import ProgressCallback
from .models import (
    IndexHealth,
    IndexingSummary,
    IndexStatus,
    SearchMode,
    SearchResponse,
)
from .watcher import FileWatcher


class IndexService:
    """Owns one index session: snapshot load, search, indexing, watching, saving.

    Example:
        async with IndexService.create(Path("~/notes").expanduser()) as service:
            await service.index_all()
            response = await service.search("carbon accounting")
    """

    def __init__(self, components: ComponentBundle) -> None:
        self.components = components
        self.config = components.config
        self.index = components.index
        self.indexer = components.indexer
        self.controller = components.controller
        self.embedding_provider: EmbeddingProvider | None = components.embedding_provider

        self.load_error: str | None = None
        self._watcher: FileWatcher | None = None
        self._autosave_task: asyncio.Task | None = None
        self._saved_marker: str | None = None
        self._started = False

    @classmethod
    def create(
        cls,
        project_root: Path,
        embedding_provider: EmbeddingProvider | None = None,
        with_embeddings: bool = True,
        persist: bool = True,
        **overrides: Any,
    ) -> "IndexService":
        """Build a service for a document root.

        Args:
            project_root: Root directory of the corpus
            embedding_provider: Provider to use instead of one built from config
            with_embeddings: Build a provider from config when none is given
            persist: Load and write ``.doc-vector-search/index.json``
            **overrides: Configuration overrides (see ``ProjectConfig``)
        """
        config = ComponentFactory.load_config(project_root, **overrides)
        components = ComponentFactory.create_components(
            config,
            embedding_provider=embedding_provider,
            with_embeddings=with_embeddings,
            persist=persist,
        )
        return cls(components)

    # ── Lifecycle ─────────────────────────────────────────────────────

    async def start(self) -> None:
        """Load the persisted snapshot and start the autosave loop."""
        if self._started:
            return
        self._started = True

        snapshot_path = self.components.snapshot_path
        if snapshot_path is not None:
            try:
                if await self.index.load_from(snapshot_path):
                    logger.info(
                        f"Loaded snapshot with {self.index.document_count} documents"
                    )
            except SchemaVersionError as e:
                self.load_error = str(e)
                logger.warning(f"{e}; run 'doc-vector-search index --force'")
            except IndexCorruptionError as e:
                self.load_error = f"Index snapshot is corrupt: {e}"
                logger.warning(f"{self.load_error}; it will be rebuilt on the next index run")
            self._saved_marker = self.index.last_updated

        metadata = self.components.metadata
        if metadata.needs_reindex_for_version():
            logger.warning("Index was built by an incompatible version; reindex recommended")
        if metadata.excludes_changed(self.config.exclude_paths):
            logger.info("Exclusion prefixes changed; the next index run prunes excluded documents")

        if self.config.autosave_interval > 0 and snapshot_path is not None:
            self._autosave_task = asyncio.create_task(
                self._autosave_loop(), name="doc-vector-search-autosave"
            )

    async def close(self) -> None:
        """Stop watching, flush pending state and release the provider."""
        await self.stop_watching()
        if self._autosave_task is not None:
            self._autosave_task.cancel()
            await asyncio.gather(self._autosave_task, return_exceptions=True)
            self._autosave_task = None
        await self.controller.close()
        await self.save()
        if self.embedding_provider is not None:
            await self.embedding_provider.close()
        self._started = False

    async def __aenter__(self) -> "IndexService":
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    # ── Search ────────────────────────────────────────────────────────

    async def search(
        self,
        query: str,
        mode: SearchMode | str = SearchMode.HYBRID,
        limit: int = DEFAULT_SEARCH_LIMIT,
        min_score: float | None = None,
        tags: list[str] | None = None,
        paths: list[str] | None = None,
        exclude_paths: list[str] | None = None,
    ) -> SearchResponse:
        """Search the index (see ``HybridIndex.search``).

        ``paths`` restricts results to documents under any of the prefixes.
        """
        response = await self.index.search(
            query,
            mode=mode,
            limit=limit,
            min_score=min_score,
            tags=tags,
            include_paths=paths,
            exclude_paths=exclude_paths,
        )
        if self.load_error:
            response.warnings.append(self.load_error)
        return response

    # ── Indexing ──────────────────────────────────────────────────────

    async def index_all(self, force: bool = False) -> IndexingSummary:
        """Bring the index up to date with the document store."""
        summary = await self.indexer.index_all(force=force)
        if not summary.cancelled:
            self.load_error = None
        self._saved_marker = self.index.last_updated
        return summary

    def subscribe(self, callback: ProgressCallback):
        """Register an indexing progress callback; returns an unsubscribe function."""
        return self.indexer.subscribe(callback)

    def unsubscribe(self, callback: ProgressCallback) -> None:
        self.indexer.unsubscribe(callback)

    def cancel_indexing(self) -> None:
        self.indexer.cancel()

    # ── Watching ──────────────────────────────────────────────────────

    @property
    def is_watching(self) -> bool:
        return self._watcher is not None and self._watcher.is_running

    async def watch(self) -> None:
        """Start applying file changes to the index."""
        if self.is_watching:
            return
        self._watcher = FileWatcher(self.controller)
        await self._watcher.start()

    async def stop_watching(self) -> None:
        if self._watcher is not None:
            await self._watcher.stop()
            self._watcher = None

    # ── Persistence ───────────────────────────────────────────────────

    @property
    def has_unsaved_changes(self) -> bool:
        return self.index.last_updated != self._saved_marker

    async def save(self) -> bool:
        """Checkpoint the snapshot and metadata if anything changed.

        Returns:
            True if a write happened
        """
        if self.components.snapshot_path is None or not self.has_unsaved_changes:
            return False
        await self.indexer.flush()
        self._saved_marker = self.index.last_updated
        logger.debug("Index checkpoint written")
        return True

    async def _autosave_loop(self) -> None:
        while True:
            await asyncio.sleep(self.config.autosave_interval)
            if self.indexer.is_running:
                continue
            try:
                await self.save()
            except (OSError, DatabaseError) as e:
                logger.error(f"Autosave failed: {e}")

    # ── Status ────────────────────────────────────────────────────────

    def get_stats(self) -> dict[str, Any]:
        """``{"documentCount", "modelName", "lastUpdated"}``."""
        return self.index.stats().to_dict()

    async def get_status(self) -> IndexHealth:
        """Index state for callers deciding whether to trust results."""
        count = self.index.document_count
        updated = self.index.last_updated

        if self.indexer.is_running:
            return IndexHealth(IndexStatus.REBUILDING, count, updated, "Indexing in progress")
        if self.load_error:
            return IndexHealth(IndexStatus.ERROR, count, updated, self.load_error)
        if self.index.model_mismatch:
            return IndexHealth(
                IndexStatus.ERROR,
                count,
                updated,
                "Embedding model changed; reindex required for vector search",
            )
        if self.embedding_provider is None or not await self.embedding_provider.is_available():
            return IndexHealth(
                IndexStatus.NEEDS_PROVIDER,
                count,
                updated,
                "No embedding provider available; keyword search only",
            )
        return IndexHealth(IndexStatus.READY, count, updated)
