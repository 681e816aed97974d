"""Tests for the index service: lifecycle, status and persistence."""

import asyncio
import json

import pytest

from doc_vector_search.config.defaults import get_snapshot_path
from doc_vector_search.core.models import IndexingPhase, IndexStatus, ModelInfo, SearchMode
from doc_vector_search.core.service import IndexService


def _service(root, provider=None, **overrides) -> IndexService:
    overrides.setdefault("debounce_seconds", 0.05)
    overrides.setdefault("autosave_interval", 0)
    return IndexService.create(
        root,
        embedding_provider=provider,
        with_embeddings=provider is not None,
        **overrides,
    )


class TestStatus:
    @pytest.mark.asyncio
    async def test_needs_provider_without_embeddings(self, corpus):
        async with _service(corpus) as service:
            await service.index_all()
            health = await service.get_status()

        assert health.status == IndexStatus.NEEDS_PROVIDER
        assert health.document_count == 2

    @pytest.mark.asyncio
    async def test_ready_with_provider(self, corpus, make_provider):
        async with _service(corpus, make_provider()) as service:
            await service.index_all()
            health = await service.get_status()

        assert health.status == IndexStatus.READY
        assert health.last_updated is not None

    @pytest.mark.asyncio
    async def test_needs_provider_when_backend_unavailable(self, corpus, make_provider, backend_factory):
        backend = backend_factory()
        backend.available = False

        async with _service(corpus, make_provider([backend])) as service:
            health = await service.get_status()

        assert health.status == IndexStatus.NEEDS_PROVIDER

    @pytest.mark.asyncio
    async def test_rebuilding_while_indexing(self, corpus):
        service = _service(corpus)
        observed = []

        def check_status(progress):
            if progress.phase == IndexingPhase.INDEXING and not observed:
                observed.append(asyncio.ensure_future(service.get_status()))

        async with service:
            service.subscribe(check_status)
            await service.index_all()
            health = await observed[0]

        assert health.status == IndexStatus.REBUILDING

    @pytest.mark.asyncio
    async def test_error_after_model_change(self, corpus, make_provider):
        async with _service(corpus, make_provider()) as service:
            await service.index_all()
            service.index.set_model(ModelInfo("another-model", 13))

            health = await service.get_status()
            assert health.status == IndexStatus.ERROR

            await service.index_all(force=True)
            assert (await service.get_status()).status == IndexStatus.READY


class TestIncompatibleSnapshot:
    @pytest.fixture
    def old_snapshot(self, corpus):
        snapshot = get_snapshot_path(corpus)
        snapshot.parent.mkdir(parents=True, exist_ok=True)
        snapshot.write_text(json.dumps({"schemaVersion": 2, "data": {"documents": []}}))
        return snapshot

    @pytest.mark.asyncio
    async def test_old_schema_reports_error(self, corpus, old_snapshot):
        async with _service(corpus) as service:
            health = await service.get_status()
            response = await service.search("carbon", mode=SearchMode.LEXICAL)

        assert health.status == IndexStatus.ERROR
        assert "reindex required" in health.message
        assert response.results == []
        assert health.message in response.warnings

    @pytest.mark.asyncio
    async def test_index_all_clears_load_error(self, corpus, old_snapshot):
        async with _service(corpus) as service:
            await service.index_all(force=True)
            health = await service.get_status()
            response = await service.search("carbon", mode=SearchMode.LEXICAL)

        assert service.load_error is None
        assert health.status == IndexStatus.NEEDS_PROVIDER
        assert response.paths == ["carbon.md"]
        assert response.warnings == []

    @pytest.mark.asyncio
    async def test_corrupt_snapshot_reports_error(self, corpus):
        snapshot = get_snapshot_path(corpus)
        snapshot.parent.mkdir(parents=True, exist_ok=True)
        snapshot.write_text("{not json")

        async with _service(corpus) as service:
            health = await service.get_status()

        assert health.status == IndexStatus.ERROR
        assert "corrupt" in health.message


class TestPersistence:
    @pytest.mark.asyncio
    async def test_index_survives_restart(self, corpus, make_provider):
        async with _service(corpus, make_provider()) as service:
            await service.index_all()

        async with _service(corpus, make_provider()) as restarted:
            assert restarted.index.document_count == 2
            assert restarted.get_stats()["modelName"] == "fake-bow"
            summary = await restarted.index_all()

        assert summary.skipped == 2

    @pytest.mark.asyncio
    async def test_save_only_when_changed(self, corpus):
        async with _service(corpus) as service:
            await service.index_all()
            assert await service.save() is False

            await service.indexer.remove_file("carbon.md")
            assert service.has_unsaved_changes
            assert await service.save() is True
            assert await service.save() is False

    @pytest.mark.asyncio
    async def test_in_memory_service_never_writes(self, corpus):
        service = IndexService.create(corpus, with_embeddings=False, persist=False)
        async with service:
            await service.index_all()
            assert await service.save() is False

        assert not get_snapshot_path(corpus).exists()

    @pytest.mark.asyncio
    async def test_autosave_loop_checkpoints(self, corpus):
        async with _service(corpus, autosave_interval=0.05) as service:
            await service.index_all()
            await service.indexer.remove_file("quantum.md")
            await asyncio.sleep(0.2)
            assert not service.has_unsaved_changes


class TestSurface:
    @pytest.mark.asyncio
    async def test_stats_shape(self, corpus):
        async with _service(corpus) as service:
            await service.index_all()
            stats = service.get_stats()

        assert set(stats) == {"documentCount", "modelName", "lastUpdated"}
        assert stats["documentCount"] == 2
        assert stats["modelName"] is None

    @pytest.mark.asyncio
    async def test_search_path_filter(self, corpus, doc_writer):
        doc_writer(corpus, "notes/carbon-notes.md", "More carbon accounting notes")

        async with _service(corpus) as service:
            await service.index_all()
            response = await service.search("carbon", mode="lexical", paths=["notes/"])

        assert response.paths == ["notes/carbon-notes.md"]

    @pytest.mark.asyncio
    async def test_cancel_indexing(self, corpus):
        async with _service(corpus) as service:
            service.subscribe(
                lambda p: service.cancel_indexing()
                if p.phase == IndexingPhase.INDEXING and p.current == 2
                else None
            )
            summary = await service.index_all()

        assert summary.cancelled
        assert summary.indexed == 1

    @pytest.mark.asyncio
    async def test_watch_toggles(self, corpus):
        async with _service(corpus) as service:
            await service.watch()
            assert service.is_watching
            await service.stop_watching()
            assert not service.is_watching
