"""mangatrack storage - PostgreSQL persistence (asyncpg).

Stores:
- SeriesStore: canonical series and (provider, provider_id) source links
- ReferenceStore: tracked references and their resolution state
- JobQueue: durable background jobs
- LockStore: named leases shared by all workers
- EventPublisher: pg_notify events for downstream consumers
"""

from mangatrack_storage.connection import (
    DatabaseConfig,
    apply_schema,
    check_connection_health,
    close_connection_pool,
    get_connection_pool,
    load_schema_sql,
)
from mangatrack_storage.events import SERIES_AVAILABLE_CHANNEL, EventPublisher
from mangatrack_storage.job_queue import (
    JobQueue,
    canonicalize_job_id,
    cover_job_id,
    mangaupdates_job_id,
    recovery_job_id,
    resolution_job_id,
    retry_delay_seconds,
    stats_job_id,
)
from mangatrack_storage.lock_store import LockStore
from mangatrack_storage.merge_rules import MergePlan, choose_cover, plan_create, plan_merge
from mangatrack_storage.reference_store import ClaimOutcome, ClaimResult, ReferenceStore
from mangatrack_storage.series_store import SeriesCatalog, SeriesStore, UpsertResult
from mangatrack_storage.transactions import (
    is_retryable_conflict,
    run_serializable,
    storage_errors,
)

__all__ = [
    # Connection
    "DatabaseConfig",
    "apply_schema",
    "check_connection_health",
    "close_connection_pool",
    "get_connection_pool",
    "load_schema_sql",
    # Transactions
    "is_retryable_conflict",
    "run_serializable",
    "storage_errors",
    # Series
    "MergePlan",
    "SeriesCatalog",
    "SeriesStore",
    "UpsertResult",
    "choose_cover",
    "plan_create",
    "plan_merge",
    # References
    "ClaimOutcome",
    "ClaimResult",
    "ReferenceStore",
    # Queue and locks
    "JobQueue",
    "LockStore",
    "canonicalize_job_id",
    "cover_job_id",
    "mangaupdates_job_id",
    "recovery_job_id",
    "resolution_job_id",
    "retry_delay_seconds",
    "stats_job_id",
    # Events
    "EventPublisher",
    "SERIES_AVAILABLE_CHANNEL",
]
