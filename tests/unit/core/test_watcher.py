"""Tests for debounced reconciliation of file events."""

import asyncio
from unittest.mock import AsyncMock

import pytest
from watchdog.events import (
    DirModifiedEvent,
    FileCreatedEvent,
    FileDeletedEvent,
    FileModifiedEvent,
    FileMovedEvent,
)

from doc_vector_search.core.document_store import DocumentStore
from doc_vector_search.core.hybrid_index import HybridIndex
from doc_vector_search.core.indexer import DocumentIndexer
from doc_vector_search.core.watcher import (
    DocumentFileHandler,
    FileWatcher,
    ReconciliationController,
)

DEBOUNCE = 0.05


@pytest.fixture
def indexer(corpus):
    return DocumentIndexer(
        store=DocumentStore(corpus, exclude_paths=["archive/"]),
        index=HybridIndex(),
    )


@pytest.fixture
def controller(indexer):
    indexer.index_file = AsyncMock(wraps=indexer.index_file)
    return ReconciliationController(indexer, debounce_seconds=DEBOUNCE)


async def _settle(seconds: float = DEBOUNCE * 4) -> None:
    await asyncio.sleep(seconds)


class TestDebounce:
    @pytest.mark.asyncio
    async def test_burst_of_saves_reindexes_once(self, controller, indexer):
        controller.on_created("carbon.md")
        controller.on_modified("carbon.md")
        controller.on_modified("carbon.md")

        assert controller.pending_paths == ["carbon.md"]
        await _settle()

        assert indexer.index_file.await_count == 1
        assert indexer.index.has_document("carbon.md")
        assert controller.pending_paths == []

    @pytest.mark.asyncio
    async def test_new_event_restarts_timer(self, controller, indexer):
        controller.on_modified("carbon.md")
        await asyncio.sleep(DEBOUNCE * 0.6)
        controller.on_modified("carbon.md")
        await asyncio.sleep(DEBOUNCE * 0.6)

        # The first timer would have fired by now
        assert indexer.index_file.await_count == 0

        await _settle()
        assert indexer.index_file.await_count == 1

    @pytest.mark.asyncio
    async def test_paths_are_debounced_independently(self, controller, indexer):
        controller.on_modified("carbon.md")
        controller.on_modified("quantum.md")

        await _settle()

        assert indexer.index_file.await_count == 2
        assert indexer.index.paths() == ["carbon.md", "quantum.md"]

    @pytest.mark.asyncio
    async def test_ineligible_paths_are_ignored(self, controller, doc_writer, corpus):
        doc_writer(corpus, "archive/old.md", "archived")

        controller.on_modified("notes.txt")
        controller.on_created("archive/old.md")

        assert controller.pending_paths == []

    @pytest.mark.asyncio
    async def test_file_gone_before_timer_fires_is_removed(self, controller, indexer, corpus):
        await indexer.index_file("carbon.md")
        indexer.index_file.reset_mock()

        controller.on_modified("carbon.md")
        (corpus / "carbon.md").unlink()
        await _settle()

        assert indexer.index_file.await_count == 0
        assert not indexer.index.has_document("carbon.md")

    @pytest.mark.asyncio
    async def test_flush_runs_pending_work_now(self, controller, indexer):
        controller.debounce_seconds = 60
        controller.on_modified("carbon.md")

        await controller.flush()

        assert indexer.index.has_document("carbon.md")
        assert controller.pending_paths == []

    @pytest.mark.asyncio
    async def test_close_cancels_timers(self, controller, indexer):
        controller.on_modified("carbon.md")

        await controller.close()
        await _settle()

        assert indexer.index_file.await_count == 0


class TestDeleteAndRename:
    @pytest.mark.asyncio
    async def test_delete_is_immediate_and_cancels_timer(self, controller, indexer, corpus):
        await indexer.index_file("carbon.md")
        indexer.index_file.reset_mock()

        controller.on_modified("carbon.md")
        (corpus / "carbon.md").unlink()
        removed = await controller.on_deleted("carbon.md")

        assert removed == 2
        assert not indexer.index.has_document("carbon.md")
        assert controller.pending_paths == []
        await _settle()
        assert indexer.index_file.await_count == 0

    @pytest.mark.asyncio
    async def test_rename_relocates_document(self, controller, indexer, corpus):
        await indexer.index_file("carbon.md")
        (corpus / "carbon.md").rename(corpus / "climate.md")

        assert await controller.on_renamed("carbon.md", "climate.md") is True

        assert indexer.index.paths() == ["climate.md"]
        response = await indexer.index.search("carbon", mode="lexical")
        assert response.paths == ["climate.md"]

    @pytest.mark.asyncio
    async def test_rename_into_excluded_folder(self, controller, indexer, corpus):
        await indexer.index_file("carbon.md")
        (corpus / "archive").mkdir()
        (corpus / "carbon.md").rename(corpus / "archive" / "carbon.md")

        assert await controller.on_renamed("carbon.md", "archive/carbon.md") is False

        assert indexer.index.paths() == []

    @pytest.mark.asyncio
    async def test_rename_cancels_pending_timer_for_old_path(self, controller, indexer, corpus):
        controller.on_modified("carbon.md")
        (corpus / "carbon.md").rename(corpus / "renamed.md")

        await controller.on_renamed("carbon.md", "renamed.md")
        await _settle()

        assert indexer.index.paths() == ["renamed.md"]
        assert [call.args[0] for call in indexer.index_file.await_args_list] == ["renamed.md"]


class TestDocumentFileHandler:
    @pytest.mark.asyncio
    async def test_modified_event_schedules_reindex(self, controller, corpus):
        handler = DocumentFileHandler(controller, asyncio.get_running_loop())

        handler.on_modified(FileModifiedEvent(str(corpus / "carbon.md")))
        handler.on_created(FileCreatedEvent(str(corpus / "quantum.md")))
        await asyncio.sleep(0)

        assert controller.pending_paths == ["carbon.md", "quantum.md"]
        await controller.close()

    @pytest.mark.asyncio
    async def test_directory_and_outside_events_are_ignored(self, controller, corpus, tmp_path_factory):
        handler = DocumentFileHandler(controller, asyncio.get_running_loop())
        outside = tmp_path_factory.mktemp("elsewhere") / "note.md"

        handler.on_modified(DirModifiedEvent(str(corpus)))
        handler.on_modified(FileModifiedEvent(str(outside)))
        await asyncio.sleep(0)

        assert controller.pending_paths == []

    @pytest.mark.asyncio
    async def test_deleted_event_removes_document(self, controller, indexer, corpus):
        await indexer.index_file("carbon.md")
        handler = DocumentFileHandler(controller, asyncio.get_running_loop())
        (corpus / "carbon.md").unlink()

        handler.on_deleted(FileDeletedEvent(str(corpus / "carbon.md")))
        await _settle()

        assert not indexer.index.has_document("carbon.md")

    @pytest.mark.asyncio
    async def test_moved_event_renames_document(self, controller, indexer, corpus):
        await indexer.index_file("quantum.md")
        handler = DocumentFileHandler(controller, asyncio.get_running_loop())
        (corpus / "quantum.md").rename(corpus / "physics.md")

        handler.on_moved(FileMovedEvent(str(corpus / "quantum.md"), str(corpus / "physics.md")))
        await _settle()

        assert indexer.index.paths() == ["physics.md"]


class TestFileWatcher:
    @pytest.mark.asyncio
    async def test_start_stop(self, controller):
        watcher = FileWatcher(controller)

        async with watcher:
            assert watcher.is_running
            await watcher.start()  # second start is a no-op

        assert not watcher.is_running
        assert watcher.observer is None
