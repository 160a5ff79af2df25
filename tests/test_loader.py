"""Tests for the extension loader."""

import pytest

from lodestar.dispatcher import DispatchOutcome, run_command
from lodestar.exceptions import ModuleResolutionError
from lodestar.extensions import Extension, ExtensionLoader
from lodestar.extensions.points import PointsExtension
from lodestar.models import ChatEvent, CommandEntry, UserAccount


class Greeter(Extension):
    name = "greeter"
    instances = 0

    def __init__(self, config):
        super().__init__(config)
        Greeter.instances += 1
        self.torn_down = False

    def commands(self):
        return [
            CommandEntry(name="hello", module=self.name, handler="hello"),
            CommandEntry(name="loud", parent="hello", module=self.name, handler="hello_loud"),
        ]

    def capabilities(self, ctx):
        return {"user.greet": self.greet}

    def greet(self, name):
        return f"hi {name}"

    async def hello(self, event, ctx):
        await event.respond("hello")

    async def hello_loud(self, event, ctx):
        await event.respond("HELLO")

    async def teardown(self, ctx):
        self.torn_down = True


class Rival(Extension):
    name = "rival"

    def capabilities(self, ctx):
        return {"user.greet": lambda name: f"yo {name}"}


class ExplodingFactory(Extension):
    name = "exploding"

    def __init__(self, config):
        raise RuntimeError("cannot construct")


class BadSetup(Extension):
    name = "badsetup"

    def commands(self):
        return [CommandEntry(name="fragile", module=self.name, handler="fragile")]

    async def setup(self, ctx):
        raise RuntimeError("setup failed")


class FailingPoints(PointsExtension):

    async def setup(self, ctx):
        raise RuntimeError("payout timer unavailable")


class Paid(Extension):
    name = "paid"

    def commands(self):
        return [CommandEntry(name="toll", module=self.name, handler="toll", price=5)]

    async def toll(self, event, ctx):
        await event.respond("paid")


class TestLoadModule:

    def test_factory_called_once_and_cached(self):
        Greeter.instances = 0
        loader = ExtensionLoader(factories={"greeter": Greeter}, settings={})
        first = loader.load_module("greeter")
        second = loader.load_module("greeter")
        assert first is second
        assert Greeter.instances == 1
        assert loader.is_cached("greeter")

    def test_unknown_module_raises_and_is_not_cached(self):
        loader = ExtensionLoader(factories={}, settings={})
        with pytest.raises(ModuleResolutionError) as exc_info:
            loader.load_module("nope")
        assert exc_info.value.module_id == "nope"
        assert not loader.is_cached("nope")

    def test_failing_factory_is_not_cached(self):
        loader = ExtensionLoader(factories={"exploding": ExplodingFactory}, settings={})
        with pytest.raises(ModuleResolutionError):
            loader.load_module("exploding")
        assert not loader.is_cached("exploding")

    def test_custom_module_id_is_reserved(self):
        loader = ExtensionLoader(factories={}, settings={})
        with pytest.raises(ModuleResolutionError):
            loader.register_factory("custom", Greeter)

    def test_get_runner_missing_handler(self):
        loader = ExtensionLoader(factories={"greeter": Greeter}, settings={})
        entry = CommandEntry(name="hello", module="greeter", handler="nonexistent")
        with pytest.raises(ModuleResolutionError):
            loader.get_runner(entry)


class TestRegisterAll:

    @pytest.mark.asyncio
    async def test_registers_commands_and_capabilities(self, ctx):
        loader = ExtensionLoader(factories={"greeter": Greeter}, settings={})
        assert await loader.register_all(ctx) == ["greeter"]
        assert ctx.loader is loader
        assert await ctx.registry.exists("hello")
        assert ctx.registry.has_subcommand("hello", "loud")
        assert ctx.user.greet("bob") == "hi bob"
        await loader.unload_all(ctx)

    @pytest.mark.asyncio
    async def test_broken_extensions_do_not_stop_others(self, ctx):
        loader = ExtensionLoader(
            factories={"exploding": ExplodingFactory, "badsetup": BadSetup, "greeter": Greeter},
            settings={},
        )
        assert await loader.register_all(ctx) == ["greeter"]
        assert not await ctx.registry.exists("fragile")
        assert not loader.is_cached("badsetup")
        assert await ctx.registry.exists("hello")
        await loader.unload_all(ctx)

    @pytest.mark.asyncio
    async def test_failed_setup_detaches_capabilities(self, ctx):
        loader = ExtensionLoader(factories={"points": FailingPoints, "paid": Paid}, settings={})
        assert await loader.register_all(ctx) == ["paid"]

        assert not ctx.has("points.sub")
        assert not ctx.has("user.can_afford_command")
        assert ctx.resolve("points.sub") is None
        assert "sub" not in ctx.points
        assert "points" not in ctx.capabilities().values()
        assert ctx.has("user.add")

        await ctx.users.add(UserAccount(name="alice"))
        await ctx.db.set("users", {"points": 50}, {"name": "alice"})
        outcome = await run_command(ctx, ChatEvent(command="toll", sender="alice"))

        assert outcome is DispatchOutcome.COMPLETED
        assert await ctx.db.get("users", "points", {"name": "alice"}) == 50
        await loader.unload_all(ctx)

    @pytest.mark.asyncio
    async def test_unload_detaches_capabilities(self, ctx):
        loader = ExtensionLoader(factories={"greeter": Greeter}, settings={})
        await loader.register_all(ctx)
        assert ctx.has("user.greet")

        await loader.unload_all(ctx)

        assert not ctx.has("user.greet")
        assert "greet" not in ctx.user
        assert ctx.has("user.get")

    @pytest.mark.asyncio
    async def test_allowlist_and_disabled_sections(self, ctx):
        settings = {
            "extension_allowlist": ["greeter", "rival"],
            "extensions": {"rival": {"enabled": False}},
        }
        loader = ExtensionLoader(
            factories={"greeter": Greeter, "rival": Rival, "badsetup": BadSetup},
            settings=settings,
        )
        assert await loader.register_all(ctx) == ["greeter"]
        assert not loader.is_cached("rival")
        assert not loader.is_cached("badsetup")
        await loader.unload_all(ctx)

    @pytest.mark.asyncio
    async def test_extend_core_twice_replaces_rather_than_duplicates(self, ctx):
        loader = ExtensionLoader(factories={"greeter": Greeter}, settings={})
        await loader.register_all(ctx)
        before = ctx.capabilities()

        assert loader.extend_core(ctx) == ["greeter"]
        assert ctx.capabilities() == before
        await loader.unload_all(ctx)

    @pytest.mark.asyncio
    async def test_later_extension_overwrites_capability(self, ctx):
        loader = ExtensionLoader(factories={"greeter": Greeter, "rival": Rival}, settings={})
        await loader.register_all(ctx)
        assert ctx.user.greet("bob") == "yo bob"
        assert ctx.capabilities()["user.greet"] == "rival"
        await loader.unload_all(ctx)

    @pytest.mark.asyncio
    async def test_unload_tears_down_and_unregisters(self, ctx):
        loader = ExtensionLoader(factories={"greeter": Greeter}, settings={})
        await loader.register_all(ctx)
        extension = loader.load_module("greeter")

        await loader.unload_all(ctx)

        assert extension.torn_down
        assert loader.active == []
        assert not loader.is_cached("greeter")
        assert not await ctx.registry.exists("hello")


class TestBuiltins:

    @pytest.mark.asyncio
    async def test_builtin_extensions_load(self, loaded_ctx):
        ctx = loaded_ctx
        assert ctx.loader.active == ["commands", "points"]
        assert await ctx.registry.exists("command")
        assert await ctx.registry.exists("points")
        assert ctx.has("user.can_afford_command")
        assert ctx.tick.names() == ["pointPayouts"]
