"""
MarginSync Database Session Management

Async SQLAlchemy engine and session factory.
"""

from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase
from core.config import get_settings

settings = get_settings()

_engine_options = {"echo": settings.database_echo, "pool_pre_ping": True}
if not settings.database_url.startswith("sqlite"):
    _engine_options.update(pool_size=20, max_overflow=10)

engine = create_async_engine(settings.database_url, **_engine_options)

AsyncSessionLocal = async_sessionmaker(
    engine,
    class_=AsyncSession,
    expire_on_commit=False,
)


class Base(DeclarativeBase):
    """Declarative base for all SQLAlchemy models."""
    pass
