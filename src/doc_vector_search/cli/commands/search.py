"""Search command."""

import typer

from ...config.defaults import DEFAULT_SEARCH_LIMIT
from ...core.models import SearchMode
from ...core.service import IndexService
from ..output import print_json, print_search_results
from . import get_project_root, run_async


def search_main(
    ctx: typer.Context,
    query: str = typer.Argument(..., help="Search query"),
    mode: SearchMode = typer.Option(
        SearchMode.HYBRID, "--mode", "-m", help="lexical, vector or hybrid"
    ),
    limit: int = typer.Option(
        DEFAULT_SEARCH_LIMIT, "--limit", "-l", min=1, max=1000, help="Maximum results"
    ),
    min_score: float | None = typer.Option(
        None, "--min-score", min=0.0, max=1.0, help="Score threshold (0-1)"
    ),
    tags: list[str] = typer.Option([], "--tag", "-t", help="Require a tag (repeatable)"),
    paths: list[str] = typer.Option([], "--path", "-p", help="Restrict to a path prefix"),
    exclude: list[str] = typer.Option([], "--exclude", help="Skip a path prefix"),
    json_output: bool = typer.Option(False, "--json", help="Output results as JSON"),
) -> None:
    """Search documents by keyword, meaning, or both.

    [bold cyan]Examples:[/bold cyan]

        $ doc-vector-search search "carbon accounting"
        $ doc-vector-search search qubits --mode lexical --tag physics
    """
    run_async(
        _run_search(
            get_project_root(ctx),
            query,
            mode,
            limit,
            min_score,
            tags,
            paths,
            exclude,
            json_output,
        ),
        "Search",
    )


async def _run_search(
    project_root,
    query: str,
    mode: SearchMode,
    limit: int,
    min_score: float | None,
    tags: list[str],
    paths: list[str],
    exclude: list[str],
    json_output: bool,
) -> None:
    # Keyword search never needs a model
    with_embeddings = mode != SearchMode.LEXICAL
    async with IndexService.create(project_root, with_embeddings=with_embeddings) as service:
        response = await service.search(
            query,
            mode=mode,
            limit=limit,
            min_score=min_score,
            tags=tags or None,
            paths=paths or None,
            exclude_paths=exclude or None,
        )

    if json_output:
        print_json(response.to_dict())
    else:
        print_search_results(response, query)
