"""Status and stats commands."""

import typer

from ...core.service import IndexService
from ..output import print_health, print_json
from . import get_project_root, run_async


def status_main(
    ctx: typer.Context,
    json_output: bool = typer.Option(False, "--json", help="Output as JSON"),
) -> None:
    """Show whether the index is ready, rebuilding, or needs attention."""
    run_async(_run_status(get_project_root(ctx), json_output), "Status")


async def _run_status(project_root, json_output: bool) -> None:
    service = IndexService.create(project_root)
    await service.start()
    try:
        health = await service.get_status()
        stats = service.get_stats()
    finally:
        await service.close()

    if json_output:
        print_json(
            {
                "status": health.status.value,
                "documentCount": health.document_count,
                "lastUpdated": health.last_updated,
                "message": health.message,
            }
        )
    else:
        print_health(health, stats)


def stats_main(ctx: typer.Context) -> None:
    """Print document count, model and last update as JSON."""
    run_async(_run_stats(get_project_root(ctx)), "Stats")


async def _run_stats(project_root) -> None:
    async with IndexService.create(project_root, with_embeddings=False) as service:
        print_json(service.get_stats())
