"""Domain models for the command engine.

Persisted records (CommandEntry, UserAccount, GroupBonus) are pydantic
models; the inbound ChatEvent is a plain mutable dataclass because the
dispatcher decorates it with subcommand fields and a ``respond``
callable while it moves through the pipeline.

Permission convention: a LOWER group level means MORE privilege.
Level 0 is the channel owner, 5 is everyone. A command with
permission ``p`` may be used by senders whose group level is ``<= p``.
"""

from dataclasses import dataclass, field
from enum import IntEnum
from typing import Awaitable, Callable, List, Optional, Tuple, Union

from pydantic import BaseModel, Field

# Reserved module tag for data-defined commands
CUSTOM_MODULE = "custom"

# Stored in a subcommand's cooldown/permission/price column to mean
# "use the parent command's value"
INHERIT = -1


class PermissionGroup(IntEnum):
    """Built-in user groups, most privileged first."""
    OWNER = 0
    ADMIN = 1
    MODERATOR = 2
    SUBSCRIBER = 3
    REGULAR = 4
    EVERYONE = 5


class CommandEntry(BaseModel):
    """A registry record binding a command name to a handler and its policies.

    Top-level commands are keyed by ``name``; subcommands by
    ``(parent, name)``. Policy fields are the defaults written the
    first time the command is registered; operators may change them
    afterwards and those changes persist.
    """

    name: str = Field(..., description="Command or subcommand name, lowercase")
    module: str = Field(..., description="Owning extension id, or 'custom'")
    handler: Optional[str] = Field(default=None, description="Attribute name of the runner")
    parent: Optional[str] = Field(default=None, description="Parent command for subcommands")
    enabled: bool = True
    permission: int = PermissionGroup.EVERYONE.value
    cooldown: int = 30
    price: int = 0
    response: Optional[str] = Field(default=None, description="Template for custom commands")

    @property
    def is_subcommand(self) -> bool:
        return self.parent is not None

    @property
    def is_custom(self) -> bool:
        return self.module == CUSTOM_MODULE

    @property
    def key(self) -> Union[str, Tuple[str, str]]:
        """Registry key: name, or (parent, name) for subcommands."""
        if self.parent is None:
            return self.name
        return (self.parent, self.name)

    @property
    def display_name(self) -> str:
        if self.parent is None:
            return self.name
        return f"{self.parent} {self.name}"


class UserAccount(BaseModel):
    """A chatter known to the bot."""

    name: str
    permission: int = PermissionGroup.EVERYONE.value
    mod: bool = False
    following: bool = False
    seen: int = 0  # ms epoch of last sighting
    points: int = 0
    time: int = 0  # watch time in minutes
    rank: int = 1


class GroupBonus(BaseModel):
    """Payout bonus attached to a permission group."""

    level: Optional[int] = None
    name: Optional[str] = None
    bonus: int = 0


@dataclass
class ChatEvent:
    """An inbound command invocation from chat.

    Attributes:
        command: Command name without prefix, lowercase.
        args: Whitespace-split arguments after the command.
        sender: Login name of the chatter.
        whispered: True if the command arrived as a whisper.
        group_id: Sender's permission group level.
        subcommand: Set by the dispatcher when the first argument names
            a known subcommand.
        sub_args: Arguments after the subcommand.
        sub_arg_string: ``sub_args`` joined by spaces.
        respond: Set by the dispatcher; replies to the sender using the
            same delivery mode the command arrived with.
    """

    command: str
    args: List[str] = field(default_factory=list)
    sender: str = ""
    whispered: bool = False
    group_id: int = PermissionGroup.EVERYONE.value
    subcommand: Optional[str] = None
    sub_args: List[str] = field(default_factory=list)
    sub_arg_string: str = ""
    respond: Optional[Callable[[str], Awaitable[None]]] = field(default=None, repr=False)

    @property
    def arg_string(self) -> str:
        return " ".join(self.args)
