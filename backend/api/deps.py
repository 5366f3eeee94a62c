"""
MarginSync API Dependencies

Dependency injection for DB sessions, store context, the ingest pipeline
and the bearer token guarding internal push endpoints.
"""

from collections.abc import AsyncGenerator

from fastapi import Depends, Header, HTTPException, status
from sqlalchemy.ext.asyncio import AsyncSession

from core.config import Settings, get_settings
from core.security import bearer_token, token_matches
from db.session import AsyncSessionLocal
from ingest.pipeline import IngestPipeline


async def get_db() -> AsyncGenerator[AsyncSession, None]:
    """Yield an async database session."""
    async with AsyncSessionLocal() as session:
        try:
            yield session
        finally:
            await session.close()


def get_store_id(
    x_store_id: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> str:
    """Store scope: ``x-store-id`` header, else the configured store."""
    return (x_store_id or "").strip() or settings.store_id


async def get_pipeline(
    db: AsyncSession = Depends(get_db),
    store_id: str = Depends(get_store_id),
    settings: Settings = Depends(get_settings),
) -> IngestPipeline:
    return IngestPipeline(db, store_id=store_id, settings=settings)


def require_ingest_token(
    authorization: str | None = Header(default=None),
    settings: Settings = Depends(get_settings),
) -> None:
    """Mailbox poller and scrape runner authenticate with a shared bearer token."""
    if not token_matches(settings.ingest_api_token, [bearer_token(authorization)]):
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid ingest token",
        )
