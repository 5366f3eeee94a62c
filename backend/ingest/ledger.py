"""
Idempotent ingest ledger.

Every inbound event is claimed under its (store, source, source_event_id)
key before anything is mutated. The unique constraint on ``ingest_events``
is the arbiter: the insert runs inside a SAVEPOINT, and losing the race
(IntegrityError) means the event was already seen, so the caller must do
nothing. Rows are never deleted; a processed key stays processed.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from db.models import IngestEvent
from engine.types import IngestSource, IngestStatus

logger = structlog.get_logger()


class IngestLedger:
    def __init__(self, db: AsyncSession, store_id: str):
        self.db = db
        self.store_id = store_id

    async def find(self, source: IngestSource, source_event_id: str) -> IngestEvent | None:
        result = await self.db.execute(
            select(IngestEvent).where(
                IngestEvent.store_id == self.store_id,
                IngestEvent.source == IngestSource(source).value,
                IngestEvent.source_event_id == source_event_id,
            )
        )
        return result.scalar_one_or_none()

    async def claim(
        self,
        source: IngestSource,
        source_event_id: str,
        payload: dict[str, Any] | None = None,
        channel: str | None = None,
        external_order_id: str | None = None,
    ) -> IngestEvent | None:
        """Insert a ``received`` row for the key. Returns None when the key already exists."""
        if await self.find(source, source_event_id) is not None:
            logger.info("ingest.duplicate", source=IngestSource(source).value, source_event_id=source_event_id)
            return None

        entry = IngestEvent(
            store_id=self.store_id,
            source=IngestSource(source).value,
            source_event_id=source_event_id,
            channel=channel,
            external_order_id=external_order_id,
            status=IngestStatus.RECEIVED.value,
            payload=payload or {},
        )
        try:
            async with self.db.begin_nested():
                self.db.add(entry)
        except IntegrityError:
            # A concurrent delivery inserted the same key between our select and insert
            logger.info("ingest.duplicate", source=IngestSource(source).value, source_event_id=source_event_id)
            return None
        return entry

    async def _finish(
        self,
        entry: IngestEvent,
        status: IngestStatus,
        payload: dict[str, Any],
        error_message: str | None = None,
    ) -> IngestEvent:
        entry.status = status.value
        entry.payload = {**(entry.payload or {}), **payload}
        entry.error_message = error_message
        entry.processed_at = datetime.utcnow()
        await self.db.flush()
        return entry

    async def mark_processed(self, entry: IngestEvent, result: dict[str, Any]) -> IngestEvent:
        return await self._finish(entry, IngestStatus.PROCESSED, {"result": result})

    async def mark_ignored(self, entry: IngestEvent, reason: str, result: dict[str, Any] | None = None) -> IngestEvent:
        return await self._finish(entry, IngestStatus.IGNORED, {"result": result or {}, "reason": reason}, reason)

    async def mark_failed(
        self, entry: IngestEvent, errors: list[str], result: dict[str, Any] | None = None
    ) -> IngestEvent:
        return await self._finish(
            entry,
            IngestStatus.FAILED,
            {"result": result or {}, "errors": list(errors)},
            ",".join(errors) if errors else None,
        )
