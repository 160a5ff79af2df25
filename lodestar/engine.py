"""Engine lifecycle: bring the command engine up and take it down.

``initialize`` and ``disconnect`` are both safe to call in any state:
initializing a running engine or disconnecting a stopped one does
nothing.
"""

import asyncio
from typing import Dict, Optional

import structlog

from .config import Config
from .connector import ChatConnector
from .context import ChannelIdentity, RuntimeContext
from .cooldown import CooldownTracker
from .dispatcher import DispatchOutcome
from .events import EventBus
from .extensions import ExtensionFactory, ExtensionLoader
from .models import ChatEvent
from .registry import CommandRegistry
from .settings import Settings
from .store import Store
from .tick import Ticker
from .users import UserDirectory

logger = structlog.get_logger("lodestar.core")

COOLDOWN_PRUNE_NAME = "cooldownPrune"
COOLDOWN_PRUNE_SECONDS = 300

TABLES = [
    ("settings", [
        {"name": "key", "primary": True},
        "value", "info",
    ], None),
    ("extension_settings", [
        "extension", "key", "value", "info",
    ], {"composite_key": ["extension", "key"]}),
    ("users", [
        {"name": "name", "unique": True},
        {"name": "permission", "type": "integer"},
        {"name": "mod", "type": "boolean", "default": False},
        {"name": "following", "type": "boolean", "default": False},
        {"name": "seen", "type": "integer", "default": 0},
        {"name": "points", "type": "integer", "default": 0},
        {"name": "time", "type": "integer", "default": 0},
        {"name": "rank", "type": "integer", "default": 1},
    ], None),
    ("commands", [
        {"name": "name", "unique": True},
        {"name": "cooldown", "type": "integer", "default": 30},
        {"name": "permission", "type": "integer", "default": 5},
        {"name": "status", "type": "boolean", "default": False},
        {"name": "price", "type": "integer", "default": 0},
        "module", "handler", "response",
    ], None),
    ("subcommands", [
        "name",
        {"name": "cooldown", "type": "integer", "default": -1},
        {"name": "permission", "type": "integer", "default": -1},
        {"name": "status", "type": "boolean", "default": False},
        {"name": "price", "type": "integer", "default": -1},
        "module", "handler", "parent",
    ], {"composite_key": ["name", "module"]}),
    ("ranks", [
        {"name": "name", "unique": True},
        {"name": "bonus", "type": "integer"},
    ], None),
    ("groups", [
        {"name": "level", "type": "integer", "unique": True},
        "name",
        {"name": "bonus", "type": "integer"},
    ], None),
]


async def load_tables(store: Store) -> None:
    for name, columns, options in TABLES:
        await store.add_table(name, columns, options)


class Engine:
    """Owns one RuntimeContext per run.

    Args:
        config: File configuration.
        bridge: Bus shared with the host. Its events are forwarded into
            the engine bus; ``bot:loaded``/``bot:unloaded`` are emitted on it.
        store: Store to use instead of ``config.database_path``.
        connector: Chat connector to use instead of a ChatConnector.
        factories: Extension factory table (defaults to the built-ins).
    """

    def __init__(
        self,
        config: Config,
        bridge: Optional[EventBus] = None,
        store: Optional[Store] = None,
        connector=None,
        factories: Optional[Dict[str, ExtensionFactory]] = None,
    ):
        self.config = config
        self.bridge = bridge or EventBus("bridge")
        self._store = store
        self._connector = connector
        self._factories = factories
        self.ctx: Optional[RuntimeContext] = None
        self.loader: Optional[ExtensionLoader] = None
        self.running = False

    async def initialize(self) -> bool:
        """Start the engine.

        Returns:
            True when running (already or now), False when required
            configuration is missing.
        """
        if self.running:
            logger.debug("engine_already_running")
            return True

        missing = self.config.validate()
        if missing:
            logger.warning("setup_incomplete", missing=missing)
            return False

        logger.info("engine_initializing", channel=self.config.channel_name)
        if self.config.startup_delay_seconds > 0:
            await asyncio.sleep(self.config.startup_delay_seconds)

        store = self._store or Store(self.config.database_path)
        await store.initialize()
        await load_tables(store)
        settings = Settings(store)
        await settings.initialize()

        events = EventBus("core")
        registry = CommandRegistry(store)
        connector = self._connector or ChatConnector(
            url=self.config.chat_url,
            bot_name=self.config.bot_name,
            auth=self.config.bot_auth,
            channel=self.config.channel_name,
            events=events,
            reconnect_max_delay=self.config.reconnect_max_delay,
        )
        ctx = RuntimeContext(
            channel=ChannelIdentity(self.config.channel_name, self.config.bot_name.lower()),
            db=store,
            settings=settings,
            events=events,
            tick=Ticker(),
            registry=registry,
            cooldowns=CooldownTracker(registry),
            users=UserDirectory(store),
            connector=connector,
        )
        self.ctx = ctx
        self.bridge.forward(events)

        if hasattr(connector, "prefix"):
            connector.prefix = await settings.get("prefix", "!")
        ctx.on("chat:command", self._on_chat_command)
        ctx.on("chat:join", self._on_join)
        ctx.on("chat:part", self._on_part)
        await connector.connect()

        self.loader = ExtensionLoader(self._factories, self.config.settings)
        await self.loader.register_all(ctx)
        ctx.tick.set_interval(COOLDOWN_PRUNE_NAME, ctx.cooldowns.prune, COOLDOWN_PRUNE_SECONDS)

        self.running = True
        logger.info("engine_ready", extensions=self.loader.active)
        ctx.emit("ready", ctx)
        self.bridge.emit("bot:loaded")

        await registry.load_custom_commands()
        return True

    async def disconnect(self) -> None:
        """Stop the engine. No-op when it is not running."""
        if not self.running:
            logger.debug("engine_not_running")
            return
        self.running = False
        ctx = self.ctx
        logger.info("engine_deactivating")

        await ctx.tick.clear_all()
        ctx.events.remove_all_listeners()
        self.bridge.unforward(ctx.events)
        await ctx.connector.disconnect()
        await self.loader.unload_all(ctx)
        ctx.registry.unregister_all()
        await ctx.events.drain()
        await ctx.db.close()

        self.ctx = None
        self.loader = None
        logger.info("engine_deactivated")
        self.bridge.emit("bot:unloaded")

    # ------------------------------------------------------------------
    # Chat event listeners
    # ------------------------------------------------------------------

    async def _on_chat_command(self, event: ChatEvent) -> DispatchOutcome:
        ctx = self.ctx
        stored = await ctx.users.get_perm_level(event.sender, default=event.group_id)
        event.group_id = min(event.group_id, stored)
        await ctx.users.touch(event.sender)
        ctx.users.mark_present(event.sender)
        return await ctx.run_command(event)

    async def _on_join(self, name: str) -> None:
        self.ctx.users.mark_present(name)
        await self.ctx.users.touch(name)

    def _on_part(self, name: str) -> None:
        self.ctx.users.mark_absent(name)
