"""CLI command implementations."""

import asyncio
from collections.abc import Coroutine
from pathlib import Path
from typing import Any

import typer
from loguru import logger

from ...core.exceptions import DocVectorSearchError
from ..output import console, print_error


def get_project_root(ctx: typer.Context) -> Path:
    return (ctx.obj.get("project_root") if ctx.obj else None) or Path.cwd()


def run_async(coro: Coroutine[Any, Any, Any], operation_name: str) -> Any:
    """Run a command coroutine with consistent error handling."""
    try:
        return asyncio.run(coro)
    except KeyboardInterrupt:
        console.print("\n[yellow]Interrupted.[/yellow]")
        raise typer.Exit(130)
    except DocVectorSearchError as e:
        logger.error(f"{operation_name} failed: {e}")
        print_error(f"{operation_name} failed: {e}")
        raise typer.Exit(1)
