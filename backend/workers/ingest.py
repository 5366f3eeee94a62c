"""
Ingest Workers — background entry points for the mailbox poller and scrape runner.

Workers:
  1. ingest_email_batch: platform emails -> provisional orders
  2. ingest_scrape_result: negotiation page scrape -> enriched order
  3. recompute_sales: nightly re-derivation of every line's margins
"""

from typing import Any

import structlog

from workers.celery_app import celery_app

logger = structlog.get_logger()


async def run_email_batch(db, *, store_id: str, messages: list[dict[str, Any]]) -> dict:
    """Process a batch of polled messages; one bad message never stops the batch."""
    from engine.types import IngestSource
    from ingest.pipeline import IngestPipeline

    results = await IngestPipeline(db, store_id=store_id).process_batch(IngestSource.EMAIL, messages)
    counts: dict[str, int] = {}
    for result in results:
        counts[result.status.value] = counts.get(result.status.value, 0) + 1
    logger.info("ingest.email_batch.completed", store_id=store_id, messages=len(messages), **counts)
    return {"status": "success", "store_id": store_id, "messages": len(messages), "results": counts}


async def run_scrape_result(db, *, store_id: str, result: dict[str, Any]) -> dict:
    from engine.types import IngestSource
    from ingest.pipeline import IngestPipeline

    outcome = (await IngestPipeline(db, store_id=store_id).process(IngestSource.SCRAPE, result))[0]
    return outcome.as_dict()


async def run_recompute(db, *, store_id: str) -> dict:
    from ingest.reconciler import Reconciler

    count = await Reconciler(db, store_id).recompute_lines()
    await db.commit()
    return {"status": "success", "store_id": store_id, "lines": count}


def _run(job, **kwargs) -> dict:
    """Run an async job against a fresh engine (one event loop per task)."""
    import asyncio

    from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

    async def _inner():
        from core.config import get_settings

        settings = get_settings()
        engine = create_async_engine(settings.database_url)
        try:
            async_session = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
            async with async_session() as db:
                return await job(db, store_id=kwargs.pop("store_id", None) or settings.store_id, **kwargs)
        finally:
            await engine.dispose()

    return asyncio.run(_inner())


@celery_app.task(
    name="workers.ingest.ingest_email_batch",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def ingest_email_batch(self, messages: list[dict], store_id: str | None = None):
    """Scheduled by the mailbox poller with the messages fetched since the last run."""
    run_id = self.request.id or "manual"
    logger.info("ingest.email_batch.started", run_id=run_id, messages=len(messages))
    try:
        return _run(run_email_batch, store_id=store_id, messages=messages)
    except Exception as exc:  # noqa: BLE001
        logger.error("ingest.email_batch.failed", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.ingest.ingest_scrape_result",
    bind=True,
    max_retries=2,
    default_retry_delay=60,
    acks_late=True,
)
def ingest_scrape_result(self, result: dict, store_id: str | None = None):
    run_id = self.request.id or "manual"
    logger.info("ingest.scrape.started", run_id=run_id, negotiation_id=result.get("negotiation_id"))
    try:
        return _run(run_scrape_result, store_id=store_id, result=result)
    except Exception as exc:  # noqa: BLE001
        logger.error("ingest.scrape.failed", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)


@celery_app.task(
    name="workers.ingest.recompute_sales",
    bind=True,
    max_retries=1,
    default_retry_delay=300,
    acks_late=True,
)
def recompute_sales(self, store_id: str | None = None):
    """Nightly via Celery Beat."""
    run_id = self.request.id or "manual"
    logger.info("ingest.recompute.started", run_id=run_id)
    try:
        return _run(run_recompute, store_id=store_id)
    except Exception as exc:  # noqa: BLE001
        logger.error("ingest.recompute.failed", run_id=run_id, error=str(exc))
        raise self.retry(exc=exc)
