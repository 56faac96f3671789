"""Worker commands for mangatrack.

Commands:
    run    Process background jobs until SIGINT/SIGTERM
"""

import asyncio
from typing import List, Optional

import typer

from mangatrack_contracts import JobKind
from mangatrack_resolution import run_workers

app = typer.Typer(help="Run background job workers")


@app.command()
def run(
    concurrency: Optional[int] = typer.Option(
        None, "--concurrency", "-c", min=1, help="Concurrent job loops (default: WORKER_CONCURRENCY)"
    ),
    kind: Optional[List[JobKind]] = typer.Option(
        None, "--kind", "-k", help="Only process these job kinds (repeatable)"
    ),
):
    """Process jobs from the queue.

    Examples:

        mangatrack worker run

        mangatrack worker run -c 8 --kind resolve_reference --kind recover_reference
    """
    try:
        asyncio.run(run_workers(concurrency=concurrency, kinds=list(kind) if kind else None))
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
