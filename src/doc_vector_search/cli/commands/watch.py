"""Watch command: keep the index in sync while files change."""

import asyncio

import typer

from ...core.service import IndexService
from ..output import console, print_info, print_success
from . import get_project_root, run_async


def watch_main(
    ctx: typer.Context,
    skip_initial: bool = typer.Option(
        False, "--skip-initial", help="Do not run an incremental index before watching"
    ),
) -> None:
    """Watch for created, modified, renamed and deleted documents.

    Press Ctrl+C to stop; the index is saved on exit.
    """
    run_async(_run_watch(get_project_root(ctx), skip_initial), "Watch")


async def _run_watch(project_root, skip_initial: bool) -> None:
    async with IndexService.create(project_root) as service:
        if not skip_initial:
            summary = await service.index_all()
            print_info(
                f"Initial sync: {summary.indexed} indexed, {summary.skipped} unchanged, "
                f"{summary.removed} removed"
            )

        await service.watch()
        print_success(f"Watching {project_root} (Ctrl+C to stop)")
        try:
            while True:
                await asyncio.sleep(3600)
        except asyncio.CancelledError:
            console.print("\n[yellow]Stopping watcher...[/yellow]")
