"""Job queue commands for mangatrack.

Commands:
    stats    Show job counts by status and by kind
    purge    Delete old completed jobs
"""

import asyncio
from datetime import timedelta

import typer

from mangatrack_storage import JobQueue, close_connection_pool

app = typer.Typer(help="Inspect and maintain the job queue")


@app.command()
def stats():
    """Show job queue statistics.

    Examples:

        mangatrack queue stats
    """

    async def get_stats():
        try:
            return await JobQueue.stats()
        finally:
            await close_connection_pool()

    try:
        result = asyncio.run(get_stats())

        typer.echo("Job Queue Statistics")
        typer.echo("=" * 40)
        typer.echo(f"Total jobs: {result['total']}")
        typer.echo()
        typer.echo("By status:")
        for status, count in sorted(result["by_status"].items()):
            typer.echo(f"  {status:20} {count:6}")
        if result["by_kind"]:
            typer.echo()
            typer.echo("Pending by kind:")
            for kind, count in sorted(result["by_kind"].items()):
                typer.echo(f"  {kind:20} {count:6}")

    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def purge(
    days: float = typer.Option(7.0, "--days", min=0, help="Age of completed jobs to delete"),
):
    """Delete completed jobs older than ``--days``.

    Examples:

        mangatrack queue purge --days 30
    """

    async def _purge():
        try:
            return await JobQueue.purge_completed(older_than=timedelta(days=days))
        finally:
            await close_connection_pool()

    try:
        deleted = asyncio.run(_purge())
        typer.echo(f"Deleted {deleted} completed jobs.")
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
