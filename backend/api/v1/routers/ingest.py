"""
Ingest Router — push endpoints for the mailbox poller and the scrape runner.
"""

from typing import Any

from fastapi import APIRouter, Body, Depends, HTTPException

from api.deps import get_pipeline, require_ingest_token
from engine.errors import PayloadError
from engine.types import IngestSource
from ingest.pipeline import IngestPipeline

router = APIRouter(
    prefix="/api/v1/ingest",
    tags=["ingest"],
    dependencies=[Depends(require_ingest_token)],
)


@router.post("/email")
async def ingest_email(
    payload: Any = Body(...),
    pipeline: IngestPipeline = Depends(get_pipeline),
):
    """
    One message object, a list of them, or ``{"messages": [...]}``.
    Each message is processed independently.
    """
    if isinstance(payload, dict) and isinstance(payload.get("messages"), list):
        messages = payload["messages"]
    elif isinstance(payload, list):
        messages = payload
    else:
        messages = [payload]

    results = await pipeline.process_batch(IngestSource.EMAIL, messages)
    return {
        "processed": len(results),
        "results": [r.as_dict() for r in results],
    }


@router.post("/scrape")
async def ingest_scrape(
    payload: dict = Body(...),
    pipeline: IngestPipeline = Depends(get_pipeline),
):
    """One negotiation page scrape result."""
    try:
        results = await pipeline.process(IngestSource.SCRAPE, payload)
    except PayloadError as exc:
        raise HTTPException(status_code=400, detail=str(exc))
    return results[0].as_dict()
