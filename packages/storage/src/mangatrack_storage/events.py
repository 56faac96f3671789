"""Downstream notifications over PostgreSQL LISTEN/NOTIFY.

``pg_notify`` is transactional: the notification is delivered only if
the surrounding transaction commits, so listeners never hear about a
series that was rolled back.
"""

from __future__ import annotations

import json
from typing import Any, Optional
from uuid import UUID

import asyncpg
from mangatrack_common import get_logger

from mangatrack_storage.transactions import storage_errors

logger = get_logger(__name__)

SERIES_AVAILABLE_CHANNEL = "series_available"

# pg_notify payloads are limited to 8000 bytes
MAX_PAYLOAD_BYTES = 7900


class EventPublisher:
    """Publishes catalog events on PostgreSQL notification channels."""

    @staticmethod
    async def series_available(
        conn: asyncpg.Connection,
        series_id: UUID,
        title: str,
        created: bool,
        reference_id: Optional[UUID] = None,
        user_id: Optional[UUID] = None,
    ) -> dict[str, Any]:
        """Announce that a canonical series can be linked and displayed.

        Args:
            conn: Connection inside the transaction that produced the series
            series_id: Series UUID
            title: Canonical title
            created: True if the series was created in this transaction
            reference_id: Reference that resolved to it, if any
            user_id: Owner of that reference

        Returns:
            The payload that was sent
        """
        payload: dict[str, Any] = {
            "event": "series.available",
            "series_id": str(series_id),
            "title": title,
            "created": created,
        }
        if reference_id is not None:
            payload["reference_id"] = str(reference_id)
        if user_id is not None:
            payload["user_id"] = str(user_id)

        encoded = json.dumps(payload, ensure_ascii=False)
        if len(encoded.encode("utf-8")) > MAX_PAYLOAD_BYTES:
            payload["title"] = title[:200]
            encoded = json.dumps(payload, ensure_ascii=False)

        with storage_errors("publish series available", series_id=str(series_id)):
            await conn.execute("SELECT pg_notify($1, $2)", SERIES_AVAILABLE_CHANNEL, encoded)

        logger.debug("series_available_published", series_id=str(series_id), created=created)
        return payload
