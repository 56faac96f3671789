"""Background worker: pulls jobs from the queue and dispatches them by kind.

Any number of worker processes may run against the same database; jobs
are claimed with ``FOR UPDATE SKIP LOCKED`` and all shared state lives
in PostgreSQL.

Usage:
    mangatrack worker run --concurrency 4
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
from typing import Any, Awaitable, Callable, Optional, Sequence
from uuid import UUID

from mangadex_client import MangaDexClient, MangaUpdatesClient, MetadataCache, RateLimiter
from mangatrack_common import PermanentError, StorageError, get_logger
from mangatrack_common.config import Settings, get_settings
from mangatrack_contracts import Job, JobKind, LinkDetails, ProviderCandidate
from mangatrack_matching import CandidateMatcher, MatchPolicy
from mangatrack_storage import JobQueue, check_connection_health, close_connection_pool

from mangatrack_resolution.canonicalize import Canonicalizer
from mangatrack_resolution.classification import classify, sanitize_error
from mangatrack_resolution.coordinator import ResolutionCoordinator
from mangatrack_resolution.enrichment import SeriesEnricher

logger = get_logger(__name__)

Handler = Callable[[dict[str, Any]], Awaitable[Any]]


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}"


def _uuid_field(payload: dict[str, Any], key: str) -> UUID:
    try:
        return UUID(str(payload[key]))
    except (KeyError, ValueError) as e:
        raise PermanentError(f"Invalid job payload: missing or malformed {key}") from e


class Worker:
    """Claims jobs and runs the matching handler.

    Args:
        coordinator: Handles resolve/recover jobs
        canonicalizer: Handles canonicalize jobs
        enricher: Handles cover, stats and MangaUpdates id jobs
        worker_id: Name recorded on claimed jobs
        kinds: Restrict to these job kinds (default: all)
        poll_interval: Seconds to sleep when the queue is empty
    """

    def __init__(
        self,
        coordinator: ResolutionCoordinator,
        canonicalizer: Canonicalizer,
        enricher: SeriesEnricher,
        worker_id: Optional[str] = None,
        kinds: Optional[Sequence[JobKind]] = None,
        poll_interval: float = 1.0,
    ):
        self.coordinator = coordinator
        self.canonicalizer = canonicalizer
        self.enricher = enricher
        self.worker_id = worker_id or default_worker_id()
        self.kinds = list(kinds) if kinds else None
        self.poll_interval = poll_interval
        self._handlers: dict[JobKind, Handler] = {
            JobKind.RESOLVE_REFERENCE: self._resolve,
            JobKind.RECOVER_REFERENCE: self._resolve,
            JobKind.CANONICALIZE: self._canonicalize,
            JobKind.REFRESH_COVER: self._refresh_cover,
            JobKind.ENRICH_STATS: self._enrich_stats,
            JobKind.ENRICH_MANGAUPDATES: self._enrich_mangaupdates,
        }

    # -------------------------------------------------------------------------
    # Handlers
    # -------------------------------------------------------------------------

    async def _resolve(self, payload: dict[str, Any]) -> Any:
        return await self.coordinator.resolve(_uuid_field(payload, "reference_id"))

    async def _canonicalize(self, payload: dict[str, Any]) -> Any:
        if "candidate" not in payload:
            raise PermanentError("Invalid job payload: missing candidate")
        candidate = ProviderCandidate.model_validate(payload["candidate"])
        details = (
            LinkDetails.model_validate(payload["details"]) if payload.get("details") else None
        )
        return await self.canonicalizer.canonicalize(candidate, details)

    async def _refresh_cover(self, payload: dict[str, Any]) -> Any:
        return await self.enricher.refresh_cover(_uuid_field(payload, "series_id"))

    async def _enrich_stats(self, payload: dict[str, Any]) -> Any:
        return await self.enricher.enrich_stats(_uuid_field(payload, "series_id"))

    async def _enrich_mangaupdates(self, payload: dict[str, Any]) -> Any:
        return await self.enricher.enrich_mangaupdates(_uuid_field(payload, "series_id"))

    # -------------------------------------------------------------------------
    # Loop
    # -------------------------------------------------------------------------

    async def process(self, job: Job) -> bool:
        """Run one claimed job and record the result in the queue.

        Returns:
            True if the job completed
        """
        handler = self._handlers[JobKind(job.kind)]

        try:
            await handler(job.payload)
        except Exception as e:
            error_class = classify(e)
            logger.warning(
                "job_handler_failed",
                job_id=job.job_id,
                kind=job.kind.value,
                attempt=job.attempts,
                error_class=error_class.value,
                error_type=type(e).__name__,
            )
            await JobQueue.fail(
                job.job_id,
                sanitize_error(e),
                retryable=error_class.retryable,
                retry_after=getattr(e, "retry_after", None),
            )
            return False

        await JobQueue.complete(job.job_id)
        return True

    async def run_once(self) -> Optional[Job]:
        """Claim and process at most one job.

        Returns:
            The processed job, or None if the queue had nothing runnable
        """
        job = await JobQueue.claim(self.kinds, worker_id=self.worker_id)
        if job is None:
            return None
        await self.process(job)
        return job

    async def run(self, shutdown_event: asyncio.Event) -> None:
        """Process jobs until ``shutdown_event`` is set."""
        while not shutdown_event.is_set():
            try:
                job = await self.run_once()
            except Exception as e:
                logger.exception("worker_loop_error", worker_id=self.worker_id, error=str(e))
                job = None
            if job is not None:
                continue
            try:
                await asyncio.wait_for(shutdown_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                pass


def build_client(settings: Settings) -> MangaDexClient:
    return MangaDexClient(
        base_url=settings.mangadex_base_url,
        timeout=settings.mangadex_timeout_seconds,
        rate_limiter=RateLimiter(requests_per_second=settings.mangadex_requests_per_second),
        api_key=settings.mangadex_api_key,
    )


def build_mangaupdates_client(settings: Settings) -> MangaUpdatesClient:
    return MangaUpdatesClient(
        base_url=settings.mangaupdates_base_url,
        timeout=settings.mangadex_timeout_seconds,
        rate_limiter=RateLimiter(requests_per_second=settings.mangaupdates_requests_per_second),
    )


def build_worker(
    client: MangaDexClient,
    settings: Settings,
    worker_id: Optional[str] = None,
    kinds: Optional[Sequence[JobKind]] = None,
    cache: Optional[MetadataCache] = None,
    mangaupdates: Optional[MangaUpdatesClient] = None,
) -> Worker:
    """Wire a Worker from settings and a provider client."""
    if cache is None:
        cache = MetadataCache(
            ttl_seconds=settings.metadata_cache_ttl_seconds,
            max_entries=settings.metadata_cache_max_entries,
        )
    matcher = CandidateMatcher(client, cache=cache, policy=MatchPolicy.from_settings(settings))
    return Worker(
        coordinator=ResolutionCoordinator(matcher, settings=settings),
        canonicalizer=Canonicalizer(settings=settings),
        enricher=SeriesEnricher(client, settings=settings, mangaupdates=mangaupdates),
        worker_id=worker_id,
        kinds=kinds,
        poll_interval=settings.worker_poll_interval_seconds,
    )


async def run_workers(
    concurrency: Optional[int] = None,
    kinds: Optional[Sequence[JobKind]] = None,
    settings: Optional[Settings] = None,
) -> None:
    """Run worker tasks until SIGINT/SIGTERM.

    Args:
        concurrency: Number of concurrent job loops (default from settings)
        kinds: Restrict to these job kinds
        settings: Runtime settings (default: ``get_settings()``)
    """
    settings = settings or get_settings()
    concurrency = concurrency or settings.worker_concurrency

    if not await check_connection_health():
        raise StorageError("Database is unreachable")
    requeued = await JobQueue.requeue_stale()

    client = build_client(settings)
    mangaupdates = build_mangaupdates_client(settings)
    cache = MetadataCache(
        ttl_seconds=settings.metadata_cache_ttl_seconds,
        max_entries=settings.metadata_cache_max_entries,
    )
    base_id = default_worker_id()
    workers = [
        build_worker(
            client,
            settings,
            worker_id=f"{base_id}-{i}",
            kinds=kinds,
            cache=cache,
            mangaupdates=mangaupdates,
        )
        for i in range(concurrency)
    ]

    logger.info(
        "worker_started",
        worker_id=base_id,
        concurrency=concurrency,
        kinds=[k.value for k in kinds] if kinds else "all",
        requeued_stale=requeued,
    )

    shutdown_event = asyncio.Event()

    def signal_handler():
        logger.info("shutdown_signal_received")
        shutdown_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, signal_handler)

    try:
        await asyncio.gather(*(w.run(shutdown_event) for w in workers))
    finally:
        logger.info("worker_stopping")
        await client.close()
        await mangaupdates.close()
        await close_connection_pool()
        logger.info("worker_stopped")
