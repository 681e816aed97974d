"""Index command: bring the index up to date with the document root."""

import typer

from ... import __version__
from ...core.progress import ProgressTracker
from ...core.service import IndexService
from ..output import console, print_info, print_tip, print_warning
from . import get_project_root, run_async


def index_main(
    ctx: typer.Context,
    force: bool = typer.Option(
        False,
        "--force",
        "-f",
        help="Reindex every document, ignoring change detection",
    ),
    no_embeddings: bool = typer.Option(
        False,
        "--no-embeddings",
        help="Build a keyword-only index without loading a model",
    ),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="List every document"),
) -> None:
    """Index markdown documents under the project root.

    [bold cyan]Examples:[/bold cyan]

    [green]Incremental update:[/green]
        $ doc-vector-search index

    [green]Full rebuild (after a model or schema change):[/green]
        $ doc-vector-search index --force
    """
    run_async(
        _run_index(get_project_root(ctx), force, no_embeddings, verbose),
        "Indexing",
    )


async def _run_index(project_root, force: bool, no_embeddings: bool, verbose: bool) -> None:
    console.print(f"[cyan bold]doc-vector-search[/cyan bold] [cyan]v{__version__}[/cyan]")
    print_info(f"Project: {project_root}")

    tracker = ProgressTracker(console, verbose=verbose)
    async with IndexService.create(project_root, with_embeddings=not no_embeddings) as service:
        if service.load_error:
            print_warning(service.load_error)
            if not force:
                print_tip("Rebuilding from scratch; use --force to reindex unchanged files too")

        unsubscribe = service.subscribe(tracker.handle)
        try:
            summary = await service.index_all(force=force)
        finally:
            unsubscribe()

        tracker.summary(summary)
        health = await service.get_status()
        if health.message:
            print_tip(health.message)
