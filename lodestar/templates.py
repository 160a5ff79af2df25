"""Response template rendering for custom commands.

Supported tokens::

    {sender} / {user}   the invoking chatter
    {args}              every argument, space separated
    {1} .. {n}          a single positional argument ('' when missing)
    {channel}           the channel name
    {points}            the sender's balance, with the point name

Unknown tokens are left untouched so a literal ``{`` in a response
survives.
"""

import re
from typing import Awaitable, Callable, Dict, Optional

from .models import ChatEvent

TOKEN = re.compile(r"\{([A-Za-z0-9_]+)\}")

PointsLookup = Callable[[str], Awaitable[str]]


async def render(
    template: str,
    event: ChatEvent,
    channel: str = "",
    points: Optional[PointsLookup] = None,
) -> str:
    values: Dict[str, str] = {
        "sender": event.sender,
        "user": event.sender,
        "args": event.arg_string,
        "channel": channel,
    }
    if points is not None and "{points}" in template:
        values["points"] = await points(event.sender)

    def _sub(match: "re.Match") -> str:
        token = match.group(1)
        if token.isdigit():
            index = int(token) - 1
            return event.args[index] if 0 <= index < len(event.args) else ""
        return values.get(token, match.group(0))

    return TOKEN.sub(_sub, template)
