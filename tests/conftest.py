"""Shared fixtures: a SQLite store on tmp_path and a runtime context."""

from unittest.mock import AsyncMock, MagicMock

import pytest
import pytest_asyncio

from lodestar.context import ChannelIdentity, RuntimeContext
from lodestar.cooldown import CooldownTracker
from lodestar.engine import load_tables
from lodestar.events import EventBus
from lodestar.extensions import ExtensionLoader
from lodestar.registry import CommandRegistry
from lodestar.settings import Settings
from lodestar.store import Store
from lodestar.tick import Ticker
from lodestar.users import UserDirectory

CHANNEL = "testchannel"
BOT_NAME = "lodestarbot"


class FakeClock:
    """Manually advanced time source (seconds)."""

    def __init__(self, now: float = 1_700_000_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_connector():
    connector = MagicMock()
    connector.connect = AsyncMock()
    connector.disconnect = AsyncMock()
    connector.say = AsyncMock()
    connector.whisper = AsyncMock()
    connector.prefix = "!"
    return connector


@pytest.fixture
def clock():
    return FakeClock()


@pytest_asyncio.fixture
async def store(tmp_path):
    db = Store(tmp_path / "lodestar.db")
    await db.initialize()
    await load_tables(db)
    yield db
    await db.close()


@pytest_asyncio.fixture
async def ctx(store, clock):
    settings = Settings(store)
    await settings.initialize()
    registry = CommandRegistry(store)
    context = RuntimeContext(
        channel=ChannelIdentity(CHANNEL, BOT_NAME),
        db=store,
        settings=settings,
        events=EventBus("test"),
        tick=Ticker(),
        registry=registry,
        cooldowns=CooldownTracker(registry, clock=clock),
        users=UserDirectory(store),
        connector=make_connector(),
    )
    yield context
    await context.tick.clear_all()
    await context.events.drain()


@pytest_asyncio.fixture
async def loaded_ctx(ctx):
    """Context with the built-in extensions registered."""
    loader = ExtensionLoader(settings={})
    await loader.register_all(ctx)
    yield ctx
    await loader.unload_all(ctx)
