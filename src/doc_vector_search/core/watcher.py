"""File system watcher and reconciliation of lifecycle events into index updates."""

import asyncio
from pathlib import Path

from loguru import logger
from watchdog.events import FileSystemEvent, FileSystemEventHandler
from watchdog.observers import Observer

from ..config.defaults import DEFAULT_DEBOUNCE_SECONDS
from .document_store import DocumentStore
from .indexer import DocumentIndexer


class ReconciliationController:
    """Turns create/modify/delete/rename events into indexer calls.

    Creates and modifications are debounced per path: each new event for a
    path cancels its pending timer and starts a fresh one, so a burst of
    saves produces one reindex. Deletions and renames act immediately.
    """

    def __init__(
        self,
        indexer: DocumentIndexer,
        debounce_seconds: float = DEFAULT_DEBOUNCE_SECONDS,
    ) -> None:
        self.indexer = indexer
        self.store: DocumentStore = indexer.store
        self.debounce_seconds = debounce_seconds
        self._timers: dict[str, asyncio.Task] = {}
        self._inflight: set[asyncio.Task] = set()

    @property
    def pending_paths(self) -> list[str]:
        return sorted(self._timers)

    def on_created(self, path: str) -> None:
        self._schedule(path, "created")

    def on_modified(self, path: str) -> None:
        self._schedule(path, "modified")

    async def on_deleted(self, path: str) -> int:
        """Cancel pending work for the path and remove it now."""
        self._cancel_timer(path)
        removed = await self.indexer.remove_file(path)
        logger.info(f"Deleted {path} from index ({removed} chunks)")
        return removed

    async def on_renamed(self, old_path: str, new_path: str) -> bool:
        """Relocate a document: remove the old path, then index the new one.

        Returns:
            True if the new path was indexed
        """
        self._cancel_timer(old_path)
        self._cancel_timer(new_path)
        await self.indexer.remove_file(old_path)

        if not self.store.is_eligible(new_path):
            logger.debug(f"Renamed {old_path} -> {new_path}; new path is not indexed")
            return False

        logger.info(f"Renamed {old_path} -> {new_path}")
        return await self.indexer.index_file(new_path)

    def _schedule(self, path: str, reason: str) -> None:
        if not self.store.is_eligible(path):
            return
        self._cancel_timer(path)
        self._timers[path] = asyncio.create_task(
            self._debounced_index(path, reason), name=f"reindex:{path}"
        )

    def _cancel_timer(self, path: str) -> None:
        task = self._timers.pop(path, None)
        if task is not None and not task.done():
            task.cancel()

    async def _debounced_index(self, path: str, reason: str) -> None:
        await asyncio.sleep(self.debounce_seconds)
        # Past this point the timer no longer owns the path; a new event
        # schedules a new timer whose work queues behind this one.
        self._timers.pop(path, None)
        task = asyncio.current_task()
        self._inflight.add(task)
        try:
            await self._index(path, reason)
        finally:
            self._inflight.discard(task)

    async def _index(self, path: str, reason: str) -> None:
        if not self.store.exists(path):
            # Deleted before the timer fired
            await self.indexer.remove_file(path)
            return
        if await self.indexer.index_file(path):
            logger.info(f"Reindexed {path} ({reason})")
        else:
            logger.warning(f"Could not reindex {path} ({reason})")

    async def flush(self) -> None:
        """Run all pending debounced work now and wait for it."""
        timers, self._timers = self._timers, {}
        for task in timers.values():
            task.cancel()
        for path in sorted(timers):
            await self._index(path, "flush")
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)

    async def close(self) -> None:
        """Cancel pending debounced work."""
        timers, self._timers = self._timers, {}
        for task in timers.values():
            task.cancel()
        if timers:
            await asyncio.gather(*timers.values(), return_exceptions=True)
            logger.debug(f"Cancelled {len(timers)} pending reindex timers")


class DocumentFileHandler(FileSystemEventHandler):
    """Forwards watchdog events from the observer thread onto the event loop."""

    def __init__(
        self,
        controller: ReconciliationController,
        loop: asyncio.AbstractEventLoop,
    ):
        """Initialize file handler.

        Args:
            controller: Controller receiving the events
            loop: Event loop the controller runs on
        """
        super().__init__()
        self.controller = controller
        self.store = controller.store
        self.loop = loop

    def _relative(self, src_path: str | bytes) -> str | None:
        if isinstance(src_path, bytes):
            src_path = src_path.decode()
        try:
            return self.store.relative_path(Path(src_path))
        except ValueError:
            return None

    def on_modified(self, event: FileSystemEvent) -> None:
        path = self._relative(event.src_path)
        if not event.is_directory and path:
            self.loop.call_soon_threadsafe(self.controller.on_modified, path)

    def on_created(self, event: FileSystemEvent) -> None:
        path = self._relative(event.src_path)
        if not event.is_directory and path:
            self.loop.call_soon_threadsafe(self.controller.on_created, path)

    def on_deleted(self, event: FileSystemEvent) -> None:
        path = self._relative(event.src_path)
        if not event.is_directory and path and self.store.is_supported(path):
            self.loop.call_soon_threadsafe(self._spawn, self.controller.on_deleted(path))

    def on_moved(self, event: FileSystemEvent) -> None:
        if event.is_directory:
            return
        old_path = self._relative(event.src_path)
        new_path = self._relative(event.dest_path)
        if old_path and new_path:
            self.loop.call_soon_threadsafe(
                self._spawn, self.controller.on_renamed(old_path, new_path)
            )

    def _spawn(self, coro) -> None:
        task = self.loop.create_task(coro)
        task.add_done_callback(_log_task_error)


def _log_task_error(task: asyncio.Task) -> None:
    if not task.cancelled() and task.exception() is not None:
        logger.error(f"Error processing file change: {task.exception()}")


class FileWatcher:
    """File system watcher for incremental indexing."""

    def __init__(self, controller: ReconciliationController):
        """Initialize file watcher.

        Args:
            controller: Reconciliation controller for the watched store
        """
        self.controller = controller
        self.root = controller.store.root
        self.observer: Observer | None = None
        self.handler: DocumentFileHandler | None = None
        self.is_running = False

    async def start(self) -> None:
        """Start watching for file changes."""
        if self.is_running:
            logger.warning("File watcher is already running")
            return

        logger.info(f"Starting file watcher for {self.root}")

        self.handler = DocumentFileHandler(self.controller, asyncio.get_running_loop())
        self.observer = Observer()
        self.observer.schedule(self.handler, str(self.root), recursive=True)

        # Observer runs in its own thread
        self.observer.start()
        self.is_running = True

        logger.info("File watcher started successfully")

    async def stop(self) -> None:
        """Stop watching for file changes."""
        if not self.is_running:
            return

        logger.info("Stopping file watcher")

        if self.observer:
            self.observer.stop()
            await asyncio.to_thread(self.observer.join)
            self.observer = None

        self.handler = None
        self.is_running = False
        await self.controller.close()

        logger.info("File watcher stopped")

    async def __aenter__(self):
        """Async context manager entry."""
        await self.start()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        """Async context manager exit."""
        await self.stop()
