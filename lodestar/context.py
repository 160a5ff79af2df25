"""Runtime context shared by the dispatcher, extensions and handlers.

One RuntimeContext is built per engine start and handed explicitly to
every collaborator. Extensions add behaviour through ``attach``, which
places a capability under a dotted path (``points.add``,
``user.can_afford_command``). Attaching a path that already exists
replaces the previous value.
"""

from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import structlog

from . import templates
from .cooldown import CooldownTracker
from .dispatcher import DispatchOutcome, run_command
from .events import EventBus, Listener
from .models import ChatEvent
from .registry import CommandRegistry
from .settings import Settings
from .store import Store
from .tick import Ticker
from .users import UserDirectory

logger = structlog.get_logger("lodestar.core")


@dataclass
class ChannelIdentity:
    name: str
    bot_name: str


@dataclass
class StreamState:
    is_live: bool = False


class Facade:
    """Attribute namespace that capabilities are attached to."""

    def __init__(self, name: str):
        self._name = name

    def __contains__(self, attr: str) -> bool:
        return attr in self.__dict__

    def __repr__(self) -> str:
        attrs = sorted(k for k in self.__dict__ if not k.startswith("_"))
        return f"Facade({self._name}: {', '.join(attrs)})"


class RuntimeContext:
    """Process-wide engine state and capability surface.

    Attributes:
        channel: Channel and bot identity.
        db: The store.
        settings: Store-backed runtime settings.
        events: Event bus used by the dispatcher and extensions.
        tick: Named recurring timers.
        stream: Live/offline state read by the payout job.
        registry: Command registry.
        cooldowns: Cooldown tracker.
        users: User directory.
        connector: Chat connector, or None when running detached.
        command / points / user: Capability facades.
    """

    def __init__(
        self,
        channel: ChannelIdentity,
        db: Store,
        settings: Settings,
        events: EventBus,
        tick: Ticker,
        registry: CommandRegistry,
        cooldowns: CooldownTracker,
        users: UserDirectory,
        connector: Any = None,
    ):
        self.channel = channel
        self.db = db
        self.settings = settings
        self.events = events
        self.tick = tick
        self.stream = StreamState()
        self.registry = registry
        self.cooldowns = cooldowns
        self.users = users
        self.connector = connector
        self.loader = None

        self.command = Facade("command")
        self.points = Facade("points")
        self.user = Facade("user")
        self._sources: Dict[str, str] = {}
        self._bind_core()

    def _bind_core(self) -> None:
        registry = self.registry
        for name in (
            "exists", "is_enabled", "get_perm_level", "get_cooldown", "is_custom",
            "get_response", "register", "unregister", "enable", "disable",
            "set_perm_level", "set_cooldown", "add_custom", "remove_custom",
        ):
            self.attach(f"command.{name}", getattr(registry, name), "core")
        self.attach("command.is_on_cooldown", self.cooldowns.is_on_cooldown, "core")
        self.attach("command.start_cooldown", self.cooldowns.start_cooldown, "core")
        self.attach("command.prefix", self.prefix, "core")
        for name in ("get", "add", "touch", "exists", "get_perm_level", "set_perm_level",
                     "present"):
            self.attach(f"user.{name}", getattr(self.users, name), "core")

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    def attach(self, path: str, value: Any, source: str) -> None:
        """Place ``value`` at ``path``, replacing whatever was there.

        Args:
            path: ``"<facade>.<name>"`` or a bare top-level name.
            value: Callable or state to expose.
            source: Extension id doing the attaching, for the log.
        """
        head, _, attr = path.partition(".")
        if attr:
            target = getattr(self, head, None)
            if target is None:
                target = Facade(head)
                setattr(self, head, target)
        else:
            target, attr = self, head

        previous = self._sources.get(path)
        if previous is not None and previous != source:
            logger.warning("capability_overwritten", path=path,
                           previous=previous, source=source)
        elif previous is not None:
            logger.debug("capability_reattached", path=path, source=source)
        setattr(target, attr, value)
        self._sources[path] = source

    def detach(self, source: str) -> List[str]:
        """Remove every capability attached by ``source``.

        Returns:
            The paths that were removed.
        """
        removed = [path for path, owner in self._sources.items() if owner == source]
        for path in removed:
            head, _, attr = path.partition(".")
            target = getattr(self, head, None) if attr else self
            name = attr or head
            if target is not None and name in vars(target):
                delattr(target, name)
            del self._sources[path]
        if removed:
            logger.debug("capability_detached", source=source, paths=removed)
        return removed

    def has(self, path: str) -> bool:
        return path in self._sources

    def resolve(self, path: str) -> Optional[Any]:
        """Return the capability at ``path``, or None."""
        if path not in self._sources:
            return None
        head, _, attr = path.partition(".")
        target = getattr(self, head, None)
        return getattr(target, attr, None) if attr else target

    def capabilities(self) -> Dict[str, str]:
        """Path -> source of everything attached."""
        return dict(self._sources)

    # ------------------------------------------------------------------
    # Chat output
    # ------------------------------------------------------------------

    async def prefix(self) -> str:
        return str(await self.settings.get("prefix", "!"))

    async def say(self, user: str, message: Optional[str] = None) -> None:
        """Reply in channel, or by whisper when whisper mode is on.

        Called with one argument, sends that text to the channel.
        """
        if message is None:
            await self.shout(user)
            return
        if await self.settings.get("whisperMode", False):
            await self.whisper(user, message)
        else:
            await self.shout(message)

    async def whisper(self, user: str, message: str) -> None:
        if self.connector is None:
            logger.debug("whisper_dropped", user=user)
            return
        await self.connector.whisper(user, message)

    async def shout(self, message: str) -> None:
        if self.connector is None:
            logger.debug("say_dropped", channel=self.channel.name)
            return
        await self.connector.say(self.channel.name, message)

    async def params(self, event: ChatEvent, template: str) -> str:
        """Render a custom command template against ``event``."""
        lookup = None
        get_points = self.resolve("points.get_user_points")
        if get_points is not None:
            async def lookup(name: str) -> str:
                return await get_points(name, as_string=True)
        return await templates.render(template, event, self.channel.name, lookup)

    # ------------------------------------------------------------------
    # Events and dispatch
    # ------------------------------------------------------------------

    def on(self, event: str, fn: Listener, single: bool = True) -> None:
        self.events.on(event, fn, single=single)

    def off(self, event: str, fn: Listener) -> bool:
        return self.events.off(event, fn)

    def emit(self, event: str, *payload: Any) -> bool:
        return self.events.emit(event, *payload)

    async def run_command(self, event: ChatEvent) -> DispatchOutcome:
        return await run_command(self, event)
