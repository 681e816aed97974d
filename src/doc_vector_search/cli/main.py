"""Main CLI application for Doc Vector Search."""

from pathlib import Path

import typer

from .. import __build__, __version__
from ..utils.logging import setup_logging
from .commands.index import index_main
from .commands.search import search_main
from .commands.status import stats_main, status_main
from .commands.watch import watch_main
from .output import console

app = typer.Typer(
    name="doc-vector-search",
    help="Semantic and hybrid search over a folder of markdown documents",
    add_completion=False,
    rich_markup_mode="rich",
    no_args_is_help=True,
)

app.command("index")(index_main)
app.command("search")(search_main)
app.command("status")(status_main)
app.command("stats")(stats_main)
app.command("watch")(watch_main)


def _version_callback(value: bool) -> None:
    if value:
        console.print(f"doc-vector-search v{__version__} (build {__build__})")
        raise typer.Exit()


@app.callback()
def main(
    ctx: typer.Context,
    project_root: Path | None = typer.Option(
        None,
        "--project-root",
        "-r",
        help="Document root (default: current directory)",
        exists=True,
        file_okay=False,
        resolve_path=True,
    ),
    verbose: bool = typer.Option(False, "--verbose", help="Enable debug logging"),
    log_file: Path | None = typer.Option(None, "--log-file", help="Also log to a file"),
    version: bool = typer.Option(
        False,
        "--version",
        callback=_version_callback,
        is_eager=True,
        help="Show version and exit",
    ),
) -> None:
    """Doc Vector Search CLI."""
    setup_logging("DEBUG" if verbose else "WARNING", log_file)
    ctx.ensure_object(dict)
    ctx.obj["project_root"] = project_root


if __name__ == "__main__":
    app()
