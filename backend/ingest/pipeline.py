"""
Ingest pipeline — one entry point for every inbound feed.

Per event:
    1. key        normalizer.event_id(item); an unusable envelope raises PayloadError
    2. claim      ledger row under (store, source, key); duplicate -> stop, nothing mutated
    3. normalize  OrderFact
    4. reconcile  order + lines merge inside a SAVEPOINT
    5. record     ledger status + sync log row, commit
    6. notify     Slack, Stripe payment successes only, best-effort
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

import structlog
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from db.models import InboxMessage, SyncLog
from engine.catalog import CatalogIndex
from engine.errors import PayloadError, ReconciliationError
from engine.extraction import parse_timestamp, sender_allowed
from engine.types import IngestSource
from ingest.ledger import IngestLedger
from ingest.reconciler import Reconciler, load_catalog
from integrations import get_normalizer
from integrations.base import OrderFact, ReconcileResult, ReconcileStatus
from notifications.slack import SlackNotifier, format_payment_message, should_notify

logger = structlog.get_logger()

SYNC_COMPONENTS = {
    IngestSource.EMAIL: "email-trigger",
    IngestSource.STRIPE: "stripe-webhook",
    IngestSource.SCRAPE: "scrape-runner",
    IngestSource.ZOHO: "zoho-webhook",
    IngestSource.ENVIA: "envia-webhook",
    IngestSource.MANUAL: "manual",
}


class IngestPipeline:
    def __init__(
        self,
        db: AsyncSession,
        store_id: str | None = None,
        settings: Settings | None = None,
        notifier: SlackNotifier | None = None,
    ):
        self.db = db
        self.settings = settings or get_settings()
        self.store_id = store_id or self.settings.store_id
        self.notifier = notifier or SlackNotifier(self.settings.slack_webhook_url, self.settings.slack_username)
        self.ledger = IngestLedger(db, self.store_id)
        self.reconciler = Reconciler(db, self.store_id, settings=self.settings)

    async def _catalog_for(self, source: IngestSource) -> CatalogIndex | None:
        # Only the accounting feed prices lines from the catalog
        if source == IngestSource.ZOHO:
            return await load_catalog(self.db, self.store_id)
        return None

    async def process(self, source: IngestSource, payload: Any) -> list[ReconcileResult]:
        """Split a raw body into events and process each one in order."""
        source = IngestSource(source)
        normalizer = get_normalizer(source, store_id=self.store_id, settings=self.settings)
        return [await self.process_event(source, item) for item in normalizer.split(payload)]

    async def process_batch(self, source: IngestSource, payloads: list[Any]) -> list[ReconcileResult]:
        """Process independent events; one bad event is recorded as failed, the batch goes on."""
        results = []
        for payload in payloads:
            try:
                results.extend(await self.process(source, payload))
            except PayloadError as exc:
                logger.warning("ingest.payload_rejected", source=IngestSource(source).value, error=str(exc))
                results.append(ReconcileResult(status=ReconcileStatus.FAILED, source=source, errors=[str(exc)]).complete())
            except Exception as exc:  # noqa: BLE001
                await self.db.rollback()
                logger.error("ingest.event_failed", source=IngestSource(source).value, error=str(exc))
                results.append(ReconcileResult(status=ReconcileStatus.FAILED, source=source, errors=[str(exc)]).complete())
        return results

    async def process_event(self, source: IngestSource, item: Any) -> ReconcileResult:
        source = IngestSource(source)
        catalog = await self._catalog_for(source)
        normalizer = get_normalizer(source, store_id=self.store_id, settings=self.settings, catalog=catalog)
        source_event_id = normalizer.event_id(item)

        entry = await self.ledger.claim(source, source_event_id, payload={"raw": item})
        if entry is None:
            return ReconcileResult(
                status=ReconcileStatus.DUPLICATE,
                source=source,
                source_event_id=source_event_id,
                reason="duplicate_event",
            ).complete()

        try:
            fact = normalizer.normalize(item)
        except PayloadError as exc:
            result = ReconcileResult(
                status=ReconcileStatus.FAILED,
                source=source,
                source_event_id=source_event_id,
                errors=[str(exc)],
            ).complete()
            await self.ledger.mark_failed(entry, result.errors, result.as_dict())
            await self._record(source, result, None)
            await self.db.commit()
            return result

        entry.channel = fact.channel.value if fact.channel else None
        entry.external_order_id = fact.external_order_id
        entry.payload = {**(entry.payload or {}), "event_type": fact.source_event_type, "fact": fact.summary()}

        if source == IngestSource.EMAIL:
            await self._upsert_inbox_message(fact, item)

        result = await self._apply(source, fact)
        if result.status == ReconcileStatus.PROCESSED:
            await self.ledger.mark_processed(entry, result.as_dict())
        elif result.status == ReconcileStatus.IGNORED:
            await self.ledger.mark_ignored(entry, result.reason or "ignored", result.as_dict())
        else:
            await self.ledger.mark_failed(entry, result.errors or [result.reason or "failed"], result.as_dict())
        await self._record(source, result, fact)
        await self.db.commit()

        if source == IngestSource.STRIPE and result.status == ReconcileStatus.PROCESSED:
            await self._notify(fact, result)
        return result

    async def _apply(self, source: IngestSource, fact: OrderFact) -> ReconcileResult:
        if source == IngestSource.EMAIL and not sender_allowed(
            fact.source_payload.get("from_email"), self.settings.allowed_sender_domains
        ):
            return self._skipped(fact, ReconcileStatus.IGNORED, "sender_not_allowed")

        if not fact.applies_to_order:
            if fact.errors:
                return self._skipped(fact, ReconcileStatus.FAILED, fact.ignore_reason or "parse_failed", fact.errors)
            return self._skipped(fact, ReconcileStatus.IGNORED, fact.ignore_reason or "not_applicable")

        try:
            async with self.db.begin_nested():
                result = await self.reconciler.apply(fact)
        except ReconciliationError as exc:
            errors = list(getattr(exc, "errors", None) or [str(exc)])
            logger.warning(
                "ingest.reconcile_failed",
                source=source.value,
                source_event_id=fact.source_event_id,
                errors=errors,
            )
            result = ReconcileResult(status=ReconcileStatus.FAILED, reason="validation_failed", errors=errors)
        result.source = source
        result.source_event_id = fact.source_event_id
        return result.complete()

    def _skipped(
        self,
        fact: OrderFact,
        status: ReconcileStatus,
        reason: str,
        errors: list[str] | None = None,
    ) -> ReconcileResult:
        return ReconcileResult(
            status=status,
            source=fact.source,
            source_event_id=fact.source_event_id,
            external_order_id=fact.external_order_id,
            transaction_ref=fact.transaction_ref,
            reason=reason,
            errors=list(errors or []),
        ).complete()

    async def _upsert_inbox_message(self, fact: OrderFact, item: dict) -> InboxMessage:
        existing = await self.db.execute(
            select(InboxMessage).where(
                InboxMessage.store_id == self.store_id,
                InboxMessage.message_id == fact.source_event_id,
            )
        )
        message = existing.scalar_one_or_none()
        if message is None:
            message = InboxMessage(store_id=self.store_id, message_id=fact.source_event_id)
            self.db.add(message)

        message.provider = item.get("provider") or "imap"
        message.thread_id = item.get("thread_id")
        message.received_at = parse_timestamp(item.get("received_at")) or fact.event_at or datetime.utcnow()
        message.from_email = item.get("from_email")
        message.subject = item.get("subject")
        message.raw_text = item.get("text")
        message.channel = fact.channel.value if fact.channel else None
        message.negotiation_id = fact.external_order_id
        message.parsed_product_refs = list(fact.product_refs)
        message.parse_confidence = float(fact.source_payload.get("parse_confidence") or 0.0)
        message.parse_errors = list(fact.errors)
        message.payload = {"uid": item.get("uid"), "ready_in_days": fact.source_payload.get("ready_in_days")}
        message.updated_at = datetime.utcnow()
        await self.db.flush()
        return message

    async def _record(self, source: IngestSource, result: ReconcileResult, fact: OrderFact | None) -> None:
        failed = result.status == ReconcileStatus.FAILED
        self.db.add(
            SyncLog(
                store_id=self.store_id,
                component=SYNC_COMPONENTS[source],
                level="warn" if failed else "info",
                message=f"{source.value} event {result.status.value}",
                context={
                    "event_id": result.source_event_id,
                    "event_type": fact.source_event_type if fact else None,
                    "order_id": result.order_id,
                    "external_order_id": result.external_order_id,
                    "reason": result.reason,
                    "errors": result.errors,
                    "lines_affected": len(result.lines_affected),
                },
            )
        )
        logger.info(
            "ingest.event_recorded",
            source=source.value,
            source_event_id=result.source_event_id,
            status=result.status.value,
            reason=result.reason,
        )

    async def _notify(self, fact: OrderFact, result: ReconcileResult) -> None:
        if not self.notifier.configured or not should_notify(fact):
            return
        try:
            await self.notifier.post(format_payment_message(fact, result.order_id))
        except Exception as exc:  # noqa: BLE001
            logger.warning("slack.notify_failed", source_event_id=fact.source_event_id, error=str(exc))
            self.db.add(
                SyncLog(
                    store_id=self.store_id,
                    component=SYNC_COMPONENTS[IngestSource.STRIPE],
                    level="warn",
                    message="Slack notify failed",
                    context={"error": str(exc), "event_id": fact.source_event_id},
                )
            )
            await self.db.commit()

