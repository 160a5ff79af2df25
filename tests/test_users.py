"""Tests for the user directory."""

import pytest

from lodestar.models import UserAccount
from lodestar.users import UserDirectory


class TestAdd:

    @pytest.mark.asyncio
    async def test_refresh_keeps_moderator_and_follower_flags(self, store):
        users = UserDirectory(store)
        await users.add(UserAccount(name="Bob", mod=True, following=True, seen=1000))

        await users.add(UserAccount(name="bob"))

        account = await users.get("bob")
        assert account.mod is True
        assert account.following is True
        assert account.seen > 1000

    @pytest.mark.asyncio
    async def test_explicit_flags_are_written(self, store):
        users = UserDirectory(store)
        await users.add(UserAccount(name="bob", mod=True))

        await users.add(UserAccount(name="bob", mod=False))

        assert (await users.get("bob")).mod is False

    @pytest.mark.asyncio
    async def test_refresh_leaves_points_and_permission(self, store):
        users = UserDirectory(store)
        await users.add(UserAccount(name="bob"))
        await users.set_perm_level("bob", 1)
        await store.set("users", {"points": 40}, {"name": "bob"})

        await users.add(UserAccount(name="bob", points=0, permission=5))

        assert await users.get_perm_level("bob") == 1
        assert await store.get("users", "points", {"name": "bob"}) == 40


class TestTouch:

    @pytest.mark.asyncio
    async def test_creates_missing_user(self, store):
        users = UserDirectory(store)
        await users.touch("Alice")
        assert await users.exists("alice")

    @pytest.mark.asyncio
    async def test_only_updates_seen(self, store):
        users = UserDirectory(store)
        await users.add(UserAccount(name="bob", mod=True, following=True, seen=1000))

        await users.touch("bob")

        account = await users.get("bob")
        assert (account.mod, account.following) == (True, True)
        assert account.seen > 1000
