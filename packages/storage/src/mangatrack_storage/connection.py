"""asyncpg pool shared by every store, plus schema bootstrap.

One pool per process. Stores and the job queue call
``get_connection_pool()`` lazily; the CLI and worker close it on exit.
"""

import asyncio
import json
import os
from dataclasses import dataclass, field
from importlib import resources
from typing import Optional

import asyncpg
from mangatrack_common import StorageError, get_logger

logger = get_logger(__name__)


def _env(name: str, default: str) -> str:
    return os.environ.get(name, default)


@dataclass
class DatabaseConfig:
    """Where the tracker database lives and how many connections to hold.

    Unset connection fields come from ``POSTGRES_HOST``, ``POSTGRES_PORT``,
    ``POSTGRES_DB``, ``POSTGRES_USER`` and ``POSTGRES_PASSWORD``, falling
    back to a local development database.
    """

    host: str = field(default_factory=lambda: _env("POSTGRES_HOST", "localhost"))
    port: int = field(default_factory=lambda: int(_env("POSTGRES_PORT", "5432")))
    database: str = field(default_factory=lambda: _env("POSTGRES_DB", "mangatrack"))
    user: str = field(default_factory=lambda: _env("POSTGRES_USER", "postgres"))
    password: str = field(default_factory=lambda: _env("POSTGRES_PASSWORD", "postgres"))
    min_pool_size: int = 2
    max_pool_size: int = 10
    command_timeout: float = 30.0

    def get_dsn(self) -> str:
        return f"postgresql://{self.user}:{self.password}@{self.host}:{self.port}/{self.database}"


async def _init_connection(conn: asyncpg.Connection) -> None:
    # job payloads, link details and announcements are jsonb
    await conn.set_type_codec(
        "jsonb", encoder=json.dumps, decoder=json.loads, schema="pg_catalog"
    )


_connection_pool: Optional[asyncpg.Pool] = None
_pool_lock = asyncio.Lock()


async def get_connection_pool(config: Optional[DatabaseConfig] = None) -> asyncpg.Pool:
    """Return the process-wide pool, creating it on first use.

    ``config`` only matters on the call that creates the pool; later
    callers get the existing pool whatever they pass.

    Raises:
        StorageError: If the database is unreachable
    """
    global _connection_pool

    if _connection_pool is not None:
        return _connection_pool

    async with _pool_lock:
        if _connection_pool is not None:
            return _connection_pool

        config = config or DatabaseConfig()
        logger.info(
            "creating_connection_pool",
            host=config.host,
            port=config.port,
            database=config.database,
            min_size=config.min_pool_size,
            max_size=config.max_pool_size,
        )
        try:
            _connection_pool = await asyncpg.create_pool(
                dsn=config.get_dsn(),
                min_size=config.min_pool_size,
                max_size=config.max_pool_size,
                command_timeout=config.command_timeout,
                init=_init_connection,
            )
        except Exception as e:
            logger.error("connection_pool_creation_failed", error=str(e))
            raise StorageError(f"Failed to create connection pool: {e}") from e

        logger.info("connection_pool_created", pool_size=config.max_pool_size)
        return _connection_pool


async def close_connection_pool() -> None:
    """Close the pool if one is open. Safe to call more than once."""
    global _connection_pool

    if _connection_pool is None:
        return

    pool, _connection_pool = _connection_pool, None
    try:
        await pool.close()
    except Exception as e:
        logger.warning("connection_pool_close_failed", error=str(e))
    else:
        logger.info("connection_pool_closed")


async def check_connection_health() -> bool:
    """True when ``SELECT 1`` round-trips through the pool."""
    try:
        pool = await get_connection_pool()
        async with pool.acquire() as conn:
            return await conn.fetchval("SELECT 1") == 1
    except Exception as e:
        logger.error("health_check_failed", error=str(e))
        return False


def load_schema_sql() -> str:
    """Return the bundled DDL (``schema.sql``)."""
    return resources.files("mangatrack_storage").joinpath("schema.sql").read_text(encoding="utf-8")


async def apply_schema() -> None:
    """Create tables and indexes if they do not exist.

    Raises:
        StorageError: If the DDL fails
    """
    pool = await get_connection_pool()
    try:
        async with pool.acquire() as conn:
            await conn.execute(load_schema_sql())
        logger.info("schema_applied")
    except Exception as e:
        logger.error("schema_apply_failed", error=str(e))
        raise StorageError(f"Failed to apply schema: {e}") from e
