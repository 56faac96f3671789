"""Database schema commands for mangatrack.

Commands:
    init    Create tables and indexes (idempotent)
"""

import asyncio

import typer

from mangatrack_storage import apply_schema, close_connection_pool

app = typer.Typer(help="Manage the database schema")


@app.command()
def init():
    """Apply the bundled schema to the configured database.

    Safe to re-run; every statement is ``IF NOT EXISTS``.

    Examples:

        mangatrack schema init
    """

    async def _init():
        try:
            await apply_schema()
        finally:
            await close_connection_pool()

    try:
        asyncio.run(_init())
        typer.echo("Schema applied.")
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
