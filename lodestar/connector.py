"""Chat connector: IRC lines over an aiohttp websocket.

Speaks the Twitch flavour of IRC (tags, WHISPER, membership). Inbound
lines are parsed into IrcMessage objects; chat commands become
ChatEvents emitted on the engine bus as ``chat:command``. JOIN and PART
are emitted as ``chat:join`` / ``chat:part`` with the login name.

``parse_line``, ``group_from_tags`` and ``to_chat_event`` are pure and
do not need a connection.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import aiohttp
import structlog

from .events import EventBus
from .exceptions import ConnectorError
from .models import ChatEvent, PermissionGroup

logger = structlog.get_logger("lodestar.connector")

INITIAL_RECONNECT_DELAY = 5
CAPABILITIES = "twitch.tv/tags twitch.tv/commands twitch.tv/membership"

_TAG_ESCAPES = {"\\s": " ", "\\:": ";", "\\\\": "\\", "\\r": "\r", "\\n": "\n"}


@dataclass
class IrcMessage:
    command: str
    params: List[str] = field(default_factory=list)
    prefix: Optional[str] = None
    tags: Dict[str, str] = field(default_factory=dict)

    @property
    def nick(self) -> str:
        if not self.prefix:
            return ""
        return self.prefix.split("!", 1)[0].lower()

    @property
    def trailing(self) -> str:
        return self.params[-1] if self.params else ""


def _unescape_tag(value: str) -> str:
    out = []
    i = 0
    while i < len(value):
        pair = value[i:i + 2]
        if pair in _TAG_ESCAPES:
            out.append(_TAG_ESCAPES[pair])
            i += 2
        else:
            out.append(value[i])
            i += 1
    return "".join(out)


def parse_line(raw: str) -> IrcMessage:
    """Parse one IRC line.

    Raises:
        ValueError: The line is empty or has no command.
    """
    line = raw.rstrip("\r\n")
    tags: Dict[str, str] = {}
    prefix = None

    if line.startswith("@"):
        tag_part, _, line = line[1:].partition(" ")
        for item in tag_part.split(";"):
            key, _, value = item.partition("=")
            if key:
                tags[key] = _unescape_tag(value)
        line = line.lstrip(" ")

    if line.startswith(":"):
        prefix, _, line = line[1:].partition(" ")
        line = line.lstrip(" ")

    if " :" in line:
        head, trailing = line.split(" :", 1)
        parts = head.split()
        parts.append(trailing)
    elif line.startswith(":"):
        parts = [line[1:]]
    else:
        parts = line.split()

    if not parts or not parts[0]:
        raise ValueError(f"Not an IRC message: {raw!r}")
    return IrcMessage(command=parts[0].upper(), params=parts[1:], prefix=prefix, tags=tags)


def group_from_tags(tags: Dict[str, str], nick: str, channel: str) -> int:
    """Permission group implied by the platform's badges."""
    badges = {b.split("/", 1)[0] for b in tags.get("badges", "").split(",") if b}
    if "broadcaster" in badges or (channel and nick == channel):
        return PermissionGroup.OWNER.value
    if tags.get("mod") == "1" or "moderator" in badges:
        return PermissionGroup.MODERATOR.value
    if tags.get("subscriber") == "1" or "subscriber" in badges:
        return PermissionGroup.SUBSCRIBER.value
    if "vip" in badges:
        return PermissionGroup.REGULAR.value
    return PermissionGroup.EVERYONE.value


def to_chat_event(message: IrcMessage, prefix: str = "!", channel: str = "") -> Optional[ChatEvent]:
    """Turn a PRIVMSG or WHISPER into a ChatEvent, or None if not a command."""
    if message.command not in ("PRIVMSG", "WHISPER"):
        return None
    text = message.trailing.strip()
    if not prefix or not text.startswith(prefix):
        return None
    words = text[len(prefix):].split()
    if not words:
        return None
    return ChatEvent(
        command=words[0].lower(),
        args=words[1:],
        sender=message.nick,
        whispered=message.command == "WHISPER",
        group_id=group_from_tags(message.tags, message.nick, channel),
    )


class ChatConnector:
    """Websocket IRC client that feeds the engine's event bus.

    Args:
        url: Websocket URL of the chat server.
        bot_name: Login of the bot account.
        auth: OAuth token, with or without the ``oauth:`` prefix.
        channel: Channel to join, without ``#``.
        events: Bus that receives ``chat:*`` events.
        reconnect_max_delay: Upper bound for the reconnect back-off.
    """

    def __init__(
        self,
        url: str,
        bot_name: str,
        auth: str,
        channel: str,
        events: EventBus,
        reconnect_max_delay: int = 300,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.url = url
        self.bot_name = bot_name.lower()
        self._auth = auth if auth.startswith("oauth:") else f"oauth:{auth}"
        self.channel = channel.lstrip("#").lower()
        self.events = events
        self.reconnect_max_delay = reconnect_max_delay
        self.prefix = "!"
        self.running = False

        self._session = session
        self._owns_session = session is None
        self._ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def connected(self) -> bool:
        return self._ws is not None and not self._ws.closed

    async def connect(self) -> None:
        """Start the background read loop. Returns without waiting for login."""
        if self.running:
            return
        if self._session is None:
            self._session = aiohttp.ClientSession()
        self.running = True
        self._task = asyncio.create_task(self._read_loop())
        self._task.add_done_callback(self._loop_done)

    def _loop_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc:
            logger.error("connector_loop_crashed", error=str(exc), error_type=type(exc).__name__)

    async def disconnect(self) -> None:
        if not self.running:
            return
        self.running = False
        if self._ws is not None and not self._ws.closed:
            await self._ws.close()
        if self._task and not self._task.done():
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None
        self._ws = None
        logger.info("connector_disconnected", channel=self.channel)

    async def _login(self, ws) -> None:
        await ws.send_str(f"CAP REQ :{CAPABILITIES}")
        await ws.send_str(f"PASS {self._auth}")
        await ws.send_str(f"NICK {self.bot_name}")
        await ws.send_str(f"JOIN #{self.channel}")

    async def _read_loop(self) -> None:
        reconnect_delay = INITIAL_RECONNECT_DELAY
        while self.running:
            try:
                logger.info("websocket_connecting", url=self.url)
                async with self._session.ws_connect(self.url, heartbeat=30) as ws:
                    self._ws = ws
                    await self._login(ws)
                    logger.info("websocket_connected", channel=self.channel)
                    reconnect_delay = INITIAL_RECONNECT_DELAY
                    async for msg in ws:
                        if msg.type == aiohttp.WSMsgType.TEXT:
                            for line in msg.data.split("\r\n"):
                                if line:
                                    await self.handle_line(line)
                        elif msg.type == aiohttp.WSMsgType.ERROR:
                            logger.error("websocket_error", error=str(ws.exception()))
                            break
                        elif msg.type == aiohttp.WSMsgType.CLOSED:
                            logger.info("websocket_closed")
                            break
                self._ws = None
                if not self.running:
                    break
                await asyncio.sleep(reconnect_delay)
                reconnect_delay = min(reconnect_delay * 2, self.reconnect_max_delay)
            except asyncio.CancelledError:
                break
            except Exception as e:
                self._ws = None
                logger.error("websocket_exception", error=str(e), retry_delay=reconnect_delay)
                await asyncio.sleep(reconnect_delay)
                reconnect_delay = min(reconnect_delay * 2, self.reconnect_max_delay)

    async def handle_line(self, line: str) -> None:
        """Process one inbound IRC line."""
        try:
            message = parse_line(line)
        except ValueError:
            logger.warning("irc_line_unparseable", line=line[:100])
            return

        if message.command == "PING":
            await self._send(f"PONG :{message.trailing}")
        elif message.command == "JOIN":
            self.events.emit("chat:join", message.nick)
        elif message.command == "PART":
            self.events.emit("chat:part", message.nick)
        elif message.command == "RECONNECT" and self._ws is not None:
            logger.info("server_requested_reconnect")
            await self._ws.close()
        else:
            event = to_chat_event(message, self.prefix, self.channel)
            if event is not None and event.sender != self.bot_name:
                self.events.emit("chat:command", event)

    async def _send(self, line: str) -> None:
        if not self.connected:
            raise ConnectorError("Not connected", line_type=line.split(" ", 1)[0])
        await self._ws.send_str(line)

    async def say(self, channel: str, message: str) -> None:
        """Send a message to a channel. Dropped with a log when offline."""
        try:
            await self._send(f"PRIVMSG #{channel.lstrip('#')} :{message}")
        except ConnectorError as e:
            logger.warning("send_dropped", target=channel, error=str(e))
        except aiohttp.ClientError as e:
            logger.error("send_error", target=channel, error=str(e))

    async def whisper(self, user: str, message: str) -> None:
        try:
            await self._send(f"PRIVMSG #{self.channel} :/w {user} {message}")
        except ConnectorError as e:
            logger.warning("send_dropped", target=user, error=str(e))
        except aiohttp.ClientError as e:
            logger.error("send_error", target=user, error=str(e))
