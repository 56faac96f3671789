"""mangatrack CLI - Main entry point.

Provides the ``mangatrack`` command-line interface for operators.
Sub-commands are grouped by concern: worker, references, queue, schema.

Usage:
    mangatrack schema init
    mangatrack worker run --concurrency 4
    mangatrack references resolve 0b6c...-uuid --now
    mangatrack references recover --limit 500
    mangatrack queue stats
"""

from typing import Optional

import typer

from mangatrack_cli.commands.queue import app as queue_app
from mangatrack_cli.commands.references import app as references_app
from mangatrack_cli.commands.schema import app as schema_app
from mangatrack_cli.commands.worker import app as worker_app
from mangatrack_common import configure_logging
from mangatrack_common.config import get_settings

# ---------------------------------------------------------------------------
# Root Typer app
# ---------------------------------------------------------------------------

app = typer.Typer(
    name="mangatrack",
    help="Resolve tracked manga references to canonical series and run the background workers.",
    add_completion=False,
)

# Register sub-apps
app.add_typer(worker_app, name="worker")
app.add_typer(references_app, name="references")
app.add_typer(queue_app, name="queue")
app.add_typer(schema_app, name="schema")


@app.callback()
def setup(
    log_level: Optional[str] = typer.Option(None, "--log-level", help="Override LOG_LEVEL"),
):
    """Configure logging before any sub-command runs."""
    settings = get_settings()
    configure_logging(log_level or settings.log_level, settings.log_format)


def main():
    """Entry point for the CLI."""
    app()


if __name__ == "__main__":
    main()
