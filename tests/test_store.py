"""Tests for the SQLite store."""

import asyncio

import pytest

from lodestar.exceptions import DatabaseError
from lodestar.store import Store


class TestStoreCrud:

    @pytest.mark.asyncio
    async def test_set_inserts_then_updates(self, store):
        await store.set("settings", {"value": "a"}, {"key": "greeting"})
        await store.set("settings", {"value": "b"}, {"key": "greeting"})
        assert await store.get("settings", "value", {"key": "greeting"}) == "b"
        assert await store.count("settings", {"key": "greeting"}) == 1

    @pytest.mark.asyncio
    async def test_get_returns_default_for_missing_row(self, store):
        assert await store.get("settings", "value", {"key": "nope"}, "fallback") == "fallback"
        assert await store.get_row("settings", {"key": "nope"}) is None

    @pytest.mark.asyncio
    async def test_insert_ignore_keeps_existing_row(self, store):
        assert await store.insert_ignore("settings", {"key": "k", "value": "first"}) is True
        assert await store.insert_ignore("settings", {"key": "k", "value": "second"}) is False
        assert await store.get("settings", "value", {"key": "k"}) == "first"

    @pytest.mark.asyncio
    async def test_booleans_stored_as_integers(self, store):
        await store.set("users", {"mod": True}, {"name": "alice"})
        row = await store.get_row("users", {"name": "alice"})
        assert row["mod"] == 1

    @pytest.mark.asyncio
    async def test_where_none_matches_null(self, store):
        await store.set("commands", {"module": "custom"}, {"name": "x"})
        rows = await store.get_rows("commands", {"handler": None})
        assert [r["name"] for r in rows] == ["x"]

    @pytest.mark.asyncio
    async def test_get_rows_order_and_limit(self, store):
        for name, points in (("a", 5), ("b", 50), ("c", 20)):
            await store.set("users", {"points": points}, {"name": name})
        rows = await store.get_rows("users", order_by="points", desc=True, limit=2)
        assert [r["name"] for r in rows] == ["b", "c"]

    @pytest.mark.asyncio
    async def test_delete_requires_filter(self, store):
        with pytest.raises(DatabaseError):
            await store.delete("users", {})

    @pytest.mark.asyncio
    async def test_delete_removes_rows(self, store):
        await store.set("users", {"points": 1}, {"name": "gone"})
        assert await store.delete("users", {"name": "gone"}) == 1
        assert await store.count("users") == 0


class TestStoreIncrements:

    @pytest.mark.asyncio
    async def test_incr_and_decr(self, store):
        await store.set("users", {"points": 10}, {"name": "alice"})
        await store.incr("users", "points", 5, {"name": "alice"})
        await store.decr("users", "points", 20, {"name": "alice"})
        assert await store.get("users", "points", {"name": "alice"}) == -5

    @pytest.mark.asyncio
    async def test_incr_missing_row_touches_nothing(self, store):
        assert await store.incr("users", "points", 5, {"name": "ghost"}) == 0

    @pytest.mark.asyncio
    async def test_concurrent_increments_are_not_lost(self, store):
        await store.set("users", {"points": 0}, {"name": "alice"})
        await asyncio.gather(*[
            store.incr("users", "points", 1, {"name": "alice"}) for _ in range(50)
        ])
        assert await store.get("users", "points", {"name": "alice"}) == 50

    @pytest.mark.asyncio
    async def test_decr_with_floor_refuses_overdraw(self, store):
        await store.set("users", {"points": 30}, {"name": "alice"})
        results = await asyncio.gather(*[
            store.decr("users", "points", 20, {"name": "alice"}, floor=0) for _ in range(2)
        ])
        assert sorted(results) == [0, 1]
        assert await store.get("users", "points", {"name": "alice"}) == 10
        assert await store.decr("users", "points", 10, {"name": "alice"}, floor=0) == 1
        assert await store.get("users", "points", {"name": "alice"}) == 0


class TestStoreErrors:

    @pytest.mark.asyncio
    async def test_invalid_identifier_rejected(self, store):
        with pytest.raises(DatabaseError) as exc_info:
            await store.get("users; DROP TABLE users", "points", {"name": "a"})
        assert exc_info.value.operation == "validate"

    @pytest.mark.asyncio
    async def test_unknown_table_raises_database_error(self, store):
        with pytest.raises(DatabaseError) as exc_info:
            await store.get_rows("missing_table")
        assert exc_info.value.table == "missing_table"
        assert exc_info.value.is_retryable

    @pytest.mark.asyncio
    async def test_closed_store_raises(self, tmp_path):
        db = Store(tmp_path / "closed.db")
        with pytest.raises(DatabaseError):
            await db.get_rows("settings")

    @pytest.mark.asyncio
    async def test_composite_key_allows_same_name_in_other_module(self, store):
        assert await store.insert_ignore("subcommands", {"name": "add", "module": "points"})
        assert await store.insert_ignore("subcommands", {"name": "add", "module": "commands"})
        assert not await store.insert_ignore("subcommands", {"name": "add", "module": "points"})
