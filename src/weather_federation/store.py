"""Key-value store interface and implementations.

The federation core only needs get/put/delete/list-by-prefix with an
optional TTL. Values are strings; callers serialize JSON themselves.
"""

import time
from abc import ABC, abstractmethod
from datetime import datetime, timedelta, timezone

import structlog
from sqlalchemy import delete, or_, select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import async_sessionmaker

from .models import KeyValueEntry, init_db

logger = structlog.get_logger()

MEMORY_STORE_URL = "memory://"


class StoreError(Exception):
    """Store is unavailable or an operation failed."""
    pass


class Store(ABC):
    """Minimal key-value store consumed by the federation core."""

    @abstractmethod
    async def get(self, key: str) -> str | None:
        """Return the value for ``key`` or None if absent or expired."""

    @abstractmethod
    async def put(self, key: str, value: str, ttl: int | None = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl`` seconds."""

    @abstractmethod
    async def delete(self, key: str) -> None:
        """Remove ``key``; missing keys are ignored."""

    @abstractmethod
    async def list_keys(self, prefix: str) -> list[str]:
        """Return all live keys starting with ``prefix``, sorted."""

    async def close(self) -> None:
        """Release resources held by the store."""


class MemoryStore(Store):
    """In-process store, used in tests and single-process deployments."""

    def __init__(self) -> None:
        self._data: dict[str, tuple[str, float | None]] = {}

    def _live(self, key: str) -> str | None:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and expires_at <= time.time():
            del self._data[key]
            return None
        return value

    async def get(self, key: str) -> str | None:
        return self._live(key)

    async def put(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = time.time() + ttl if ttl else None
        self._data[key] = (value, expires_at)

    async def delete(self, key: str) -> None:
        self._data.pop(key, None)

    async def list_keys(self, prefix: str) -> list[str]:
        keys = [k for k in list(self._data) if k.startswith(prefix)]
        return sorted(k for k in keys if self._live(k) is not None)


def _utcnow() -> datetime:
    # SQLite drops tzinfo, so expiry is stored and compared as naive UTC
    return datetime.now(timezone.utc).replace(tzinfo=None)


class SqlStore(Store):
    """Store backed by a SQLAlchemy async engine (``kv_entries`` table)."""

    def __init__(self, session_maker: async_sessionmaker):
        self.session_maker = session_maker

    @classmethod
    async def connect(cls, database_url: str) -> "SqlStore":
        """Create tables if needed and return a connected store."""
        session_maker = await init_db(database_url)
        return cls(session_maker)

    async def get(self, key: str) -> str | None:
        try:
            async with self.session_maker() as session:
                entry = await session.get(KeyValueEntry, key)
                if entry is None:
                    return None
                if entry.expires_at is not None and entry.expires_at <= _utcnow():
                    await session.delete(entry)
                    await session.commit()
                    return None
                return entry.value
        except SQLAlchemyError as e:
            raise StoreError(f"get {key} failed: {e}") from e

    async def put(self, key: str, value: str, ttl: int | None = None) -> None:
        expires_at = _utcnow() + timedelta(seconds=ttl) if ttl else None
        try:
            async with self.session_maker() as session:
                entry = await session.get(KeyValueEntry, key)
                if entry is None:
                    session.add(KeyValueEntry(key=key, value=value, expires_at=expires_at))
                else:
                    entry.value = value
                    entry.expires_at = expires_at
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"put {key} failed: {e}") from e

    async def delete(self, key: str) -> None:
        try:
            async with self.session_maker() as session:
                await session.execute(delete(KeyValueEntry).where(KeyValueEntry.key == key))
                await session.commit()
        except SQLAlchemyError as e:
            raise StoreError(f"delete {key} failed: {e}") from e

    async def list_keys(self, prefix: str) -> list[str]:
        try:
            async with self.session_maker() as session:
                result = await session.execute(
                    select(KeyValueEntry.key)
                    .where(
                        KeyValueEntry.key.startswith(prefix, autoescape=True),
                        or_(
                            KeyValueEntry.expires_at.is_(None),
                            KeyValueEntry.expires_at > _utcnow(),
                        ),
                    )
                    .order_by(KeyValueEntry.key)
                )
                return [row[0] for row in result.fetchall()]
        except SQLAlchemyError as e:
            raise StoreError(f"list {prefix} failed: {e}") from e

    async def close(self) -> None:
        await self.session_maker.kw["bind"].dispose()


async def open_store(url: str) -> Store:
    """Open the store named by a config URL."""
    if url == MEMORY_STORE_URL:
        logger.info("Using in-memory store")
        return MemoryStore()
    logger.info("Using SQL store", url=url)
    return await SqlStore.connect(url)
