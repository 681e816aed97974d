"""Print-based progress display for indexing runs.

Avoids Rich background threads (Progress, Live): indexing callbacks arrive
on the event loop and the embedding worker runs its own thread, so output is
plain ``console.print`` plus an in-place bar on stderr.
"""

import sys
import time

from rich.console import Console

from .models import IndexingPhase, IndexingProgress, IndexingSummary


class ProgressTracker:
    """Renders ``IndexingProgress`` notifications.

    Example:
        tracker = ProgressTracker(console)
        unsubscribe = indexer.subscribe(tracker.handle)
        summary = await indexer.index_all()
        tracker.summary(summary)
        unsubscribe()
    """

    def __init__(self, console: Console, verbose: bool = False, width: int = 40):
        """Initialize progress tracker.

        Args:
            console: Rich Console instance for formatted output
            verbose: Print every document path and per-file errors
            width: Progress bar width in characters
        """
        self.console = console
        self.verbose = verbose
        self.width = width
        self.errors: list[str] = []
        self._start_time: float | None = None
        self._bar_open = False

    def handle(self, progress: IndexingProgress) -> None:
        """Subscriber callback for ``DocumentIndexer.subscribe``."""
        if progress.phase == IndexingPhase.SCANNING:
            self._start_time = time.time()
            self.errors = []
            self.console.print(f"\n[bold]Indexing {progress.total:,} documents[/bold]")
            self.console.print("━" * 50)
        elif progress.phase == IndexingPhase.INDEXING:
            if progress.error:
                self.errors.append(f"{progress.current_path}: {progress.error}")
                if self.verbose:
                    self._end_bar()
                    self.console.print(f"  [yellow]⚠[/yellow] {progress.current_path}")
                return
            if self.verbose and progress.current_path:
                self._end_bar()
                self.console.print(f"  [dim]→ {progress.current_path}[/dim]")
            else:
                self.progress_bar(progress.current, progress.total, prefix="Indexing")
        elif progress.phase == IndexingPhase.COMPLETE:
            self._end_bar()

    def progress_bar(self, current: int, total: int, prefix: str = "") -> None:
        """Display an inline progress bar that updates in place.

        Example:
            tracker.progress_bar(328, 730, prefix="Indexing")
            # Output: Indexing... ━━━━━━━━━━━━━━━━━━                  44% 328/730
        """
        if total == 0:
            return

        percentage = min(100, int((current / total) * 100))
        filled_width = int((current / total) * self.width)
        bar = "━" * filled_width + " " * (self.width - filled_width)

        # Write directly to stderr (avoids buffering issues)
        sys.stderr.write(f"\r  {prefix}... {bar} {percentage}% {current:,}/{total:,}")
        sys.stderr.flush()
        self._bar_open = current < total
        if not self._bar_open:
            sys.stderr.write("\n")
            sys.stderr.flush()

    def _end_bar(self) -> None:
        if self._bar_open:
            sys.stderr.write("\n")
            sys.stderr.flush()
            self._bar_open = False

    def summary(self, result: IndexingSummary) -> None:
        """Print the outcome of a run."""
        if result.cancelled:
            self.console.print("\n[yellow]⚠ Indexing cancelled[/yellow]")
        else:
            self.console.print("\n[green]✓ Indexing complete[/green]")

        self.console.print(f"  Indexed:   {result.indexed:,}")
        self.console.print(f"  Unchanged: {result.skipped:,}")
        if result.removed:
            self.console.print(f"  Removed:   {result.removed:,}")
        if result.errors:
            self.console.print(f"  [red]Errors:    {result.errors:,}[/red]")
            for error in self.errors[:10]:
                self.console.print(f"    [dim]{error}[/dim]")
        self.console.print(f"  Time: {result.duration_seconds:.1f}s")
