"""Tests for the key-value store implementations."""

from datetime import timedelta

import pytest
import pytest_asyncio

from weather_federation import store as store_module
from weather_federation.store import MemoryStore, SqlStore, open_store


@pytest_asyncio.fixture(params=["memory", "sql"])
async def any_store(request):
    """Each store implementation in turn."""
    if request.param == "memory":
        yield MemoryStore()
        return
    sql = await SqlStore.connect("sqlite+aiosqlite:///:memory:")
    yield sql
    await sql.close()


class TestStoreContract:
    """Behaviour shared by every store."""

    @pytest.mark.asyncio
    async def test_get_missing(self, any_store):
        """Test missing keys return None."""
        assert await any_store.get("nope") is None

    @pytest.mark.asyncio
    async def test_put_get_overwrite(self, any_store):
        """Test put stores and overwrites values."""
        await any_store.put("followers:paris", "[]")
        assert await any_store.get("followers:paris") == "[]"

        await any_store.put("followers:paris", '[{"id": "x"}]')
        assert await any_store.get("followers:paris") == '[{"id": "x"}]'

    @pytest.mark.asyncio
    async def test_delete(self, any_store):
        """Test delete removes a key and ignores missing ones."""
        await any_store.put("k", "v")
        await any_store.delete("k")
        await any_store.delete("k")
        assert await any_store.get("k") is None

    @pytest.mark.asyncio
    async def test_list_keys_by_prefix(self, any_store):
        """Test listing keys by prefix, sorted."""
        await any_store.put("delivery:2:b", "{}")
        await any_store.put("delivery:1:a", "{}")
        await any_store.put("post:paris-alert-x", "{}")

        assert await any_store.list_keys("delivery:") == ["delivery:1:a", "delivery:2:b"]
        assert await any_store.list_keys("nothing:") == []

    @pytest.mark.asyncio
    async def test_list_keys_prefix_is_literal(self, any_store):
        """Test LIKE wildcards in a prefix match literally."""
        await any_store.put("a_b:1", "v")
        await any_store.put("axb:1", "v")

        assert await any_store.list_keys("a_b:") == ["a_b:1"]

    @pytest.mark.asyncio
    async def test_unexpired_ttl_is_readable(self, any_store):
        """Test an entry with a TTL is readable before it expires."""
        await any_store.put("actor:https://x", "{}", ttl=3600)
        assert await any_store.get("actor:https://x") == "{}"
        assert await any_store.list_keys("actor:") == ["actor:https://x"]


class TestExpiry:
    """Tests for TTL expiry."""

    @pytest.mark.asyncio
    async def test_memory_store_expiry(self, monkeypatch):
        """Test MemoryStore hides expired entries."""
        memory = MemoryStore()
        await memory.put("k", "v", ttl=10)

        real_time = store_module.time.time
        monkeypatch.setattr(store_module.time, "time", lambda: real_time() + 11)

        assert await memory.get("k") is None
        assert await memory.list_keys("k") == []

    @pytest.mark.asyncio
    async def test_sql_store_expiry(self, sql_store, monkeypatch):
        """Test SqlStore hides expired entries."""
        await sql_store.put("k", "v", ttl=10)
        await sql_store.put("keep", "v")

        real_now = store_module._utcnow
        monkeypatch.setattr(store_module, "_utcnow", lambda: real_now() + timedelta(seconds=11))

        assert await sql_store.list_keys("k") == ["keep"]
        assert await sql_store.get("k") is None
        assert await sql_store.get("keep") == "v"


class TestOpenStore:
    """Tests for store selection by URL."""

    @pytest.mark.asyncio
    async def test_memory_url(self):
        """Test memory:// opens a MemoryStore."""
        assert isinstance(await open_store("memory://"), MemoryStore)

    @pytest.mark.asyncio
    async def test_sql_url(self):
        """Test a SQLAlchemy URL opens a SqlStore."""
        opened = await open_store("sqlite+aiosqlite:///:memory:")
        try:
            assert isinstance(opened, SqlStore)
        finally:
            await opened.close()
