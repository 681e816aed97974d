"""Component factory wiring configuration into runnable components."""

from dataclasses import dataclass
from pathlib import Path

from loguru import logger

from ..config.defaults import get_embedding_cache_dir, get_snapshot_path
from ..config.settings import ProjectConfig
from .chunker import MarkdownChunker
from .document_store import DocumentStore
from .embeddings import EmbeddingProvider, create_embedding_provider
from .hybrid_index import HybridIndex
from .index_metadata import IndexMetadata
from .indexer import DocumentIndexer
from .watcher import ReconciliationController


@dataclass
class ComponentBundle:
    """Bundle of commonly used components."""

    config: ProjectConfig
    store: DocumentStore
    index: HybridIndex
    indexer: DocumentIndexer
    controller: ReconciliationController
    metadata: IndexMetadata
    embedding_provider: EmbeddingProvider | None = None
    snapshot_path: Path | None = None


class ComponentFactory:
    """Factory for creating commonly used components."""

    @staticmethod
    def load_config(project_root: Path, **overrides) -> ProjectConfig:
        """Load project configuration."""
        return ProjectConfig.load(project_root, **overrides)

    @staticmethod
    def create_store(config: ProjectConfig) -> DocumentStore:
        return DocumentStore(
            root=config.project_root,
            file_extensions=config.file_extensions,
            exclude_paths=config.exclude_paths,
        )

    @staticmethod
    def create_embedding_provider(
        config: ProjectConfig, persist: bool = True
    ) -> EmbeddingProvider:
        """Create the embedding provider for the configured backends.

        Vectors are cached under the data directory when ``embedding_cache``
        is on and the session persists.
        """
        cache_dir = None
        if config.embedding_cache and persist:
            cache_dir = get_embedding_cache_dir(config.project_root)
        return create_embedding_provider(config, cache_dir=cache_dir)

    @staticmethod
    def create_index(
        config: ProjectConfig, embedding_provider: EmbeddingProvider | None
    ) -> HybridIndex:
        return HybridIndex(
            embedding_provider=embedding_provider,
            vector_weight=config.vector_weight,
            text_weight=config.text_weight,
            proximity_weight=config.proximity_weight,
            default_min_score=config.default_min_score,
        )

    @staticmethod
    def create_components(
        config: ProjectConfig,
        embedding_provider: EmbeddingProvider | None = None,
        with_embeddings: bool = True,
        persist: bool = True,
    ) -> ComponentBundle:
        """Create the standard set of components.

        Args:
            config: Project configuration
            embedding_provider: Provider to use instead of building one
            with_embeddings: Build a provider from config when none is given
            persist: Flush the snapshot to ``.doc-vector-search/index.json``

        Returns:
            ComponentBundle with every component wired together
        """
        if embedding_provider is None and with_embeddings:
            embedding_provider = ComponentFactory.create_embedding_provider(config, persist)

        store = ComponentFactory.create_store(config)
        index = ComponentFactory.create_index(config, embedding_provider)
        metadata = IndexMetadata(config.project_root)
        snapshot_path = get_snapshot_path(config.project_root) if persist else None

        indexer = DocumentIndexer(
            store=store,
            index=index,
            embedding_provider=embedding_provider,
            chunker=MarkdownChunker(
                max_chars=config.max_chunk_chars,
                document_types=config.document_types,
            ),
            metadata=metadata,
            snapshot_path=snapshot_path,
        )
        controller = ReconciliationController(indexer, debounce_seconds=config.debounce_seconds)

        logger.debug(
            f"Created components for {config.project_root} "
            f"(embeddings: {'on' if embedding_provider else 'off'}, persist: {persist})"
        )
        return ComponentBundle(
            config=config,
            store=store,
            index=index,
            indexer=indexer,
            controller=controller,
            metadata=metadata,
            embedding_provider=embedding_provider,
            snapshot_path=snapshot_path,
        )
