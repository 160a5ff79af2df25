"""Tests for engine startup and shutdown."""

from unittest.mock import AsyncMock, MagicMock

import pytest

from lodestar.config import Config
from lodestar.engine import Engine
from lodestar.events import EventBus
from lodestar.models import ChatEvent, UserAccount


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ("LODESTAR_BOT_NAME", "LODESTAR_BOT_AUTH", "LODESTAR_CHANNEL"):
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def connector():
    mock = MagicMock()
    mock.connect = AsyncMock()
    mock.disconnect = AsyncMock()
    mock.say = AsyncMock()
    mock.whisper = AsyncMock()
    mock.prefix = "!"
    return mock


def _config(tmp_path, **overrides):
    settings = {
        "bot": {"name": "LodestarBot", "auth": "oauth:abc"},
        "channel": "#TestChannel",
        "database_path": str(tmp_path / "engine.db"),
    }
    settings.update(overrides)
    return Config(config_dir=tmp_path, settings=settings)


class TestEngineLifecycle:

    @pytest.mark.asyncio
    async def test_missing_config_does_not_start(self, tmp_path, connector):
        config = Config(config_dir=tmp_path, settings={})
        engine = Engine(config, connector=connector)
        assert await engine.initialize() is False
        assert not engine.running
        connector.connect.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_initialize_is_idempotent(self, tmp_path, connector):
        engine = Engine(_config(tmp_path), connector=connector)
        assert await engine.initialize() is True
        assert await engine.initialize() is True
        connector.connect.assert_awaited_once()
        assert engine.ctx.channel.name == "testchannel"
        assert engine.ctx.channel.bot_name == "lodestarbot"
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_lifecycle_events_on_bridge(self, tmp_path, connector):
        bridge = EventBus("bridge")
        seen = []
        bridge.on("bot:loaded", lambda: seen.append("loaded"))
        bridge.on("bot:unloaded", lambda: seen.append("unloaded"))
        engine = Engine(_config(tmp_path), bridge=bridge, connector=connector)

        await engine.initialize()
        await engine.disconnect()
        await engine.disconnect()

        assert seen == ["loaded", "unloaded"]
        connector.disconnect.assert_awaited_once()
        assert engine.ctx is None

    @pytest.mark.asyncio
    async def test_bridge_events_reach_engine_bus(self, tmp_path, connector):
        bridge = EventBus("bridge")
        engine = Engine(_config(tmp_path), bridge=bridge, connector=connector)
        await engine.initialize()
        received = []
        engine.ctx.on("host:ping", lambda payload: received.append(payload))

        bridge.emit("host:ping", 1)
        await engine.disconnect()
        bridge.emit("host:ping", 2)

        assert received == [1]

    @pytest.mark.asyncio
    async def test_extensions_loaded_and_unloaded(self, tmp_path, connector):
        engine = Engine(_config(tmp_path), connector=connector)
        await engine.initialize()
        ctx = engine.ctx
        assert await ctx.registry.exists("points")
        assert ctx.tick.names() == ["cooldownPrune", "pointPayouts"]

        await engine.disconnect()
        assert ctx.registry.names() == []
        assert ctx.tick.names() == []

    @pytest.mark.asyncio
    async def test_allowlist_from_config(self, tmp_path, connector):
        engine = Engine(_config(tmp_path, extension_allowlist=["commands"]), connector=connector)
        await engine.initialize()
        assert engine.loader.active == ["commands"]
        assert not await engine.ctx.registry.exists("points")
        await engine.disconnect()


class TestChatCommands:

    @pytest.mark.asyncio
    async def test_chat_command_is_dispatched(self, tmp_path, connector):
        engine = Engine(_config(tmp_path), connector=connector)
        await engine.initialize()
        ctx = engine.ctx

        ctx.emit("chat:command", ChatEvent(command="points", sender="alice"))
        await ctx.events.drain()

        connector.say.assert_awaited_once_with("testchannel", "alice, you have 0 points.")
        assert await ctx.users.exists("alice")
        assert "alice" in ctx.users.present()
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_stored_permission_raises_group(self, tmp_path, connector):
        engine = Engine(_config(tmp_path), connector=connector)
        await engine.initialize()
        ctx = engine.ctx
        await ctx.registry.set_perm_level("points", 1)
        await ctx.users.add(UserAccount(name="alice"))
        await ctx.users.set_perm_level("alice", 1)

        ctx.emit("chat:command", ChatEvent(command="points", sender="alice", group_id=5))
        await ctx.events.drain()

        connector.say.assert_awaited_once()
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_chat_and_join_keep_user_flags(self, tmp_path, connector):
        engine = Engine(_config(tmp_path), connector=connector)
        await engine.initialize()
        ctx = engine.ctx
        await ctx.users.add(UserAccount(name="bob", mod=True, following=True))

        ctx.emit("chat:join", "bob")
        ctx.emit("chat:command", ChatEvent(command="points", sender="bob"))
        await ctx.events.drain()

        account = await ctx.users.get("bob")
        assert account.mod is True
        assert account.following is True
        await engine.disconnect()

    @pytest.mark.asyncio
    async def test_join_and_part_track_presence(self, tmp_path, connector):
        engine = Engine(_config(tmp_path), connector=connector)
        await engine.initialize()
        ctx = engine.ctx

        ctx.emit("chat:join", "bob")
        await ctx.events.drain()
        assert ctx.users.present() == ["bob"]
        assert await ctx.users.exists("bob")

        ctx.emit("chat:part", "bob")
        assert ctx.users.present() == []
        await engine.disconnect()
