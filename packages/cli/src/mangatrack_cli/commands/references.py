"""Tracked reference commands for mangatrack.

Commands:
    add        Track a new title for a user and queue its resolution
    resolve    Queue (or run inline) resolution of one reference
    recover    Re-queue pending/unresolved references that lost their job
"""

import asyncio
from datetime import timedelta
from typing import Optional
from uuid import UUID

import typer

from mangatrack_common.config import get_settings
from mangatrack_contracts import JobKind
from mangatrack_resolution import build_client, build_worker
from mangatrack_storage import (
    JobQueue,
    ReferenceStore,
    close_connection_pool,
    get_connection_pool,
    recovery_job_id,
    resolution_job_id,
    run_serializable,
)

app = typer.Typer(help="Manage tracked references")


def _resolution_payload(reference_id: UUID) -> dict:
    return {"reference_id": str(reference_id)}


@app.command()
def add(
    user_id: UUID = typer.Argument(..., help="Owning user"),
    title: str = typer.Argument(..., help="Title as imported"),
    source_url: Optional[str] = typer.Option(None, "--url", help="Source page URL"),
    progress: float = typer.Option(0.0, "--progress", "-p", min=0, help="Chapter progress"),
):
    """Track a title and queue its resolution.

    Examples:

        mangatrack references add 5f0e...-uuid "Solo Leveling" --progress 110
    """

    async def _add():
        async def work(conn):
            reference = await ReferenceStore.create(
                conn, user_id, title, source_url=source_url, progress=progress
            )
            await JobQueue.enqueue(
                JobKind.RESOLVE_REFERENCE,
                _resolution_payload(reference.id),
                job_id=resolution_job_id(reference.id),
                conn=conn,
            )
            return reference

        try:
            return await run_serializable(work)
        finally:
            await close_connection_pool()

    try:
        reference = asyncio.run(_add())
        typer.echo(f"Tracking {reference.imported_title!r} as {reference.id}")
    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def resolve(
    reference_id: UUID = typer.Argument(..., help="Reference to resolve"),
    now: bool = typer.Option(False, "--now", help="Resolve in this process instead of queueing"),
):
    """Resolve one reference.

    By default a ``resolve_reference`` job is queued; ``--now`` runs the
    coordinator in this process and prints the outcome.

    Examples:

        mangatrack references resolve 0b6c...-uuid

        mangatrack references resolve 0b6c...-uuid --now
    """

    async def _enqueue() -> bool:
        try:
            return await JobQueue.enqueue(
                JobKind.RESOLVE_REFERENCE,
                _resolution_payload(reference_id),
                job_id=resolution_job_id(reference_id),
            )
        finally:
            await close_connection_pool()

    async def _resolve_now():
        settings = get_settings()
        client = build_client(settings)
        try:
            worker = build_worker(client, settings)
            return await worker.coordinator.resolve(reference_id)
        finally:
            await client.close()
            await close_connection_pool()

    try:
        if not now:
            if asyncio.run(_enqueue()):
                typer.echo(f"Queued resolution of {reference_id}")
            else:
                typer.echo(f"Resolution of {reference_id} is already queued or done")
            return

        outcome = asyncio.run(_resolve_now())
        typer.echo(f"Outcome:    {outcome.outcome.value}")
        if outcome.series_id:
            typer.echo(f"Series:     {outcome.series_id}")
        if outcome.confidence is not None:
            typer.echo(f"Confidence: {outcome.confidence:.3f}")
        if outcome.needs_review:
            typer.echo("Review:     needed")
        if outcome.survivor_id:
            typer.echo(f"Merged into {outcome.survivor_id}")
        if outcome.detail:
            typer.echo(f"Detail:     {outcome.detail}")

    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)


@app.command()
def recover(
    limit: int = typer.Option(100, "--limit", "-n", min=1, help="Maximum references to queue"),
    idle_hours: float = typer.Option(
        1.0, "--idle-hours", min=0, help="Only references not attempted for this long"
    ),
    replace: bool = typer.Option(
        False, "--replace", help="Supersede existing recovery jobs (including failed ones)"
    ),
):
    """Queue recovery jobs for pending/unresolved references.

    References that already have a recovery job are left alone unless
    ``--replace`` is given.

    Examples:

        mangatrack references recover --limit 500

        mangatrack references recover --idle-hours 24 --replace
    """

    async def _recover():
        pool = await get_connection_pool()
        try:
            async with pool.acquire() as conn:
                ids = await ReferenceStore.list_recoverable(
                    conn, limit=limit, idle_for=timedelta(hours=idle_hours)
                )

            queued = 0
            for reference_id in ids:
                if await JobQueue.enqueue(
                    JobKind.RECOVER_REFERENCE,
                    _resolution_payload(reference_id),
                    job_id=recovery_job_id(reference_id),
                    replace=replace,
                ):
                    queued += 1
            return len(ids), queued
        finally:
            await close_connection_pool()

    try:
        found, queued = asyncio.run(_recover())

        if not found:
            typer.echo("No recoverable references.")
            return
        typer.echo(f"Found {found} recoverable references, queued {queued} recovery jobs.")

    except Exception as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
