"""Tests for the built-in chat extensions, driven through dispatch."""

import asyncio
from unittest.mock import AsyncMock

import pytest

from lodestar.dispatcher import DispatchOutcome
from lodestar.models import ChatEvent, UserAccount


def _owner(command, *args):
    return ChatEvent(command=command, args=list(args), sender="owner", group_id=0)


def _replies(ctx):
    return [c.args[1] for c in ctx.connector.say.await_args_list]


class TestCommandAdministration:

    @pytest.mark.asyncio
    async def test_viewer_cannot_administer(self, loaded_ctx):
        ctx = loaded_ctx
        event = ChatEvent(command="command", args=["disable", "points"], sender="bob")
        assert await ctx.run_command(event) is DispatchOutcome.FORBIDDEN
        assert await ctx.registry.is_enabled("points")

    @pytest.mark.asyncio
    async def test_disable_then_enable(self, loaded_ctx):
        ctx = loaded_ctx
        await ctx.run_command(_owner("command", "disable", "points"))
        assert not await ctx.registry.is_enabled("points")
        ctx.cooldowns.clear()
        await ctx.run_command(_owner("command", "enable", "points"))
        assert await ctx.registry.is_enabled("points")
        assert _replies(ctx) == ["!points is now disabled.", "!points is now enabled."]

    @pytest.mark.asyncio
    async def test_disable_subcommand(self, loaded_ctx):
        ctx = loaded_ctx
        await ctx.run_command(_owner("command", "disable", "points", "gift"))
        assert not await ctx.registry.is_enabled("points", "gift")
        assert await ctx.registry.is_enabled("points")

    @pytest.mark.asyncio
    async def test_set_permission_cooldown_and_price(self, loaded_ctx):
        ctx = loaded_ctx
        await ctx.run_command(_owner("command", "permission", "points", "3"))
        ctx.cooldowns.clear()
        await ctx.run_command(_owner("command", "cooldown", "points", "gift", "90"))
        ctx.cooldowns.clear()
        await ctx.run_command(_owner("command", "price", "points", "15"))

        assert await ctx.registry.get_perm_level("points") == 3
        assert await ctx.registry.get_cooldown("points", "gift") == 90
        assert await ctx.command.get_price("points") == 15

    @pytest.mark.asyncio
    async def test_malformed_and_unknown_targets(self, loaded_ctx):
        ctx = loaded_ctx
        await ctx.run_command(_owner("command", "permission", "points", "nine"))
        ctx.cooldowns.clear()
        await ctx.run_command(_owner("command", "cooldown", "ghost", "5"))
        assert _replies(ctx) == [
            "Usage: !command permission <name> [sub] <0-5>",
            "!ghost is not a registered command.",
        ]

    @pytest.mark.asyncio
    async def test_add_and_remove_custom_command(self, loaded_ctx):
        ctx = loaded_ctx
        await ctx.run_command(_owner("command", "add", "!discord", "Join", "us", "at", "{1}"))
        assert await ctx.registry.is_custom("discord")
        assert await ctx.registry.get_cooldown("discord") == 30

        viewer = ChatEvent(command="discord", args=["discord.gg/x"], sender="bob")
        assert await ctx.run_command(viewer) is DispatchOutcome.COMPLETED
        assert _replies(ctx)[-1] == "Join us at discord.gg/x"

        ctx.cooldowns.clear()
        await ctx.run_command(_owner("command", "remove", "discord"))
        assert not await ctx.registry.exists("discord")

    @pytest.mark.asyncio
    async def test_custom_command_cannot_replace_builtin(self, loaded_ctx):
        ctx = loaded_ctx
        await ctx.run_command(_owner("command", "add", "points", "free points!"))
        assert _replies(ctx) == ["!points is already a built-in command."]
        assert not await ctx.registry.is_custom("points")


class TestPointsCommands:

    async def _users(self, ctx):
        for name in ("alice", "bob"):
            await ctx.users.add(UserAccount(name=name))
        await ctx.points.set_user_points("alice", 30)

    @pytest.mark.asyncio
    async def test_balance_of_another_user(self, loaded_ctx):
        ctx = loaded_ctx
        await self._users(ctx)
        await ctx.run_command(ChatEvent(command="points", args=["@Alice"], sender="bob"))
        assert _replies(ctx) == ["alice has 30 points."]

    @pytest.mark.asyncio
    async def test_moderator_adds_points(self, loaded_ctx):
        ctx = loaded_ctx
        await self._users(ctx)
        event = ChatEvent(command="points", args=["add", "bob", "5"], sender="mod", group_id=2)
        assert await ctx.run_command(event) is DispatchOutcome.COMPLETED
        assert await ctx.points.get_user_points("bob") == 5

    @pytest.mark.asyncio
    async def test_viewer_cannot_add_points(self, loaded_ctx):
        ctx = loaded_ctx
        await self._users(ctx)
        event = ChatEvent(command="points", args=["add", "bob", "5"], sender="bob")
        assert await ctx.run_command(event) is DispatchOutcome.FORBIDDEN
        assert await ctx.points.get_user_points("bob") == 0

    @pytest.mark.asyncio
    async def test_gift_more_than_balance_refused(self, loaded_ctx):
        ctx = loaded_ctx
        await self._users(ctx)
        await ctx.run_command(ChatEvent(command="points", args=["gift", "bob", "31"], sender="alice"))
        assert _replies(ctx) == ["You only have 30 points."]
        assert await ctx.points.get_user_points("bob") == 0

    @pytest.mark.asyncio
    async def test_concurrent_gifts_cannot_overdraw(self, loaded_ctx):
        ctx = loaded_ctx
        await self._users(ctx)
        await ctx.users.add(UserAccount(name="mod"))
        extension = ctx.loader.load_module("points")
        replies = AsyncMock()

        def gift(target):
            return ChatEvent(command="points", sender="alice", subcommand="gift",
                             sub_args=[target, "20"], respond=replies)

        await asyncio.gather(
            extension.gift(gift("bob"), ctx),
            extension.gift(gift("mod"), ctx),
        )

        assert await ctx.points.get_user_points("alice") == 10
        received = [await ctx.points.get_user_points(n) for n in ("bob", "mod")]
        assert sorted(received) == [0, 20]
        messages = sorted(c.args[0] for c in replies.await_args_list)
        assert messages[0].startswith("You gave 20 points to ")
        assert messages[1] == "You only have 10 points."

    @pytest.mark.asyncio
    async def test_gift_to_self_refused(self, loaded_ctx):
        ctx = loaded_ctx
        await self._users(ctx)
        await ctx.run_command(ChatEvent(command="points", args=["gift", "alice", "1"], sender="alice"))
        assert _replies(ctx) == ["You can't gift points to yourself."]
