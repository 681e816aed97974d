"""Rich console output helpers shared by CLI commands."""

import json
from typing import Any

from rich.console import Console
from rich.table import Table

from ..core.models import IndexHealth, IndexStatus, SearchResponse

console = Console()
# Diagnostics go to stderr so --json output stays machine readable
err_console = Console(stderr=True)

STATUS_STYLES = {
    IndexStatus.READY: "green",
    IndexStatus.NEEDS_PROVIDER: "yellow",
    IndexStatus.REBUILDING: "cyan",
    IndexStatus.ERROR: "red",
}


def print_error(message: str) -> None:
    err_console.print(f"[red]✗ {message}[/red]")


def print_warning(message: str) -> None:
    err_console.print(f"[yellow]⚠ {message}[/yellow]")


def print_success(message: str) -> None:
    console.print(f"[green]✓ {message}[/green]")


def print_info(message: str) -> None:
    console.print(f"[blue]ℹ[/blue] {message}")


def print_tip(message: str) -> None:
    console.print(f"[dim]💡 {message}[/dim]")


def print_json(data: Any) -> None:
    console.print_json(json.dumps(data, default=str))


def print_search_results(response: SearchResponse, query: str) -> None:
    """Render search results as a table."""
    for warning in response.warnings:
        print_warning(warning)

    if not response.results:
        console.print(f"[yellow]No matches found for '{query}'.[/yellow]")
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("Score", justify="right")
    table.add_column("Document")
    table.add_column("Match")
    table.add_column("Snippet")

    for result in response.results:
        location = result.path
        if result.heading:
            location += f"\n[dim]## {result.heading} (line {result.line})[/dim]"
        table.add_row(
            f"{result.score:.3f}",
            location,
            result.match_type.value,
            result.snippet,
        )

    console.print(table)
    mode = response.mode.value
    if response.degraded:
        mode += f" (requested {response.requested_mode.value})"
    console.print(f"[dim]{len(response.results)} results, mode: {mode}[/dim]")


def print_health(health: IndexHealth, stats: dict[str, Any]) -> None:
    style = STATUS_STYLES.get(health.status, "white")
    console.print(f"Status:    [{style}]{health.status.value}[/{style}]")
    console.print(f"Documents: {health.document_count:,}")
    console.print(f"Model:     {stats.get('modelName') or '-'}")
    console.print(f"Updated:   {health.last_updated or 'never'}")
    if health.message:
        console.print(f"[dim]{health.message}[/dim]")
