"""Database models for the SQL-backed key-value store."""

from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Index, String, Text
from sqlalchemy.ext.asyncio import AsyncAttrs, async_sessionmaker, create_async_engine
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column


class Base(AsyncAttrs, DeclarativeBase):
    """Base class for all models."""
    pass


class KeyValueEntry(Base):
    """One store entry.

    Keys are namespaced by prefix: ``followers:<location>``,
    ``private_key:<location>``, ``public_key:<location>``,
    ``post:<post_id>``, ``delivery:<ts>:<rand>``, ``actor:<url>``.
    """
    __tablename__ = "kv_entries"

    key: Mapped[str] = mapped_column(String(512), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)

    # NULL means the entry never expires
    expires_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=lambda: datetime.now(timezone.utc),
        onupdate=lambda: datetime.now(timezone.utc), nullable=False
    )

    __table_args__ = (
        Index("ix_kv_entries_expires_at", "expires_at"),
    )


async def init_db(database_url: str) -> async_sessionmaker:
    """Initialize database and return session maker.

    Args:
        database_url: SQLAlchemy database URL

    Returns:
        Async session maker
    """
    engine = create_async_engine(database_url, echo=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    return async_sessionmaker(engine, expire_on_commit=False)
