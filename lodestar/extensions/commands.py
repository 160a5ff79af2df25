"""Command administration from chat.

    !command enable <name> [sub]
    !command disable <name> [sub]
    !command permission <name> [sub] <level>
    !command cooldown <name> [sub] <seconds>
    !command price <name> [sub] <points>
    !command add <name> <response...>
    !command remove <name>
"""

from typing import TYPE_CHECKING, List, Optional, Tuple

from ..models import INHERIT, ChatEvent, CommandEntry, PermissionGroup
from .base import Extension

if TYPE_CHECKING:
    from ..context import RuntimeContext


def _target_and_value(args: List[str]) -> Optional[Tuple[str, Optional[str], int]]:
    """Split ``<name> [sub] <int>``; None when malformed."""
    if len(args) not in (2, 3):
        return None
    try:
        value = int(args[-1])
    except ValueError:
        return None
    sub = args[1].lower() if len(args) == 3 else None
    return args[0].lower(), sub, value


class CommandsExtension(Extension):
    name = "commands"
    description = "Enable, disable and configure commands; manage custom commands"

    def commands(self) -> List[CommandEntry]:
        entries = [
            CommandEntry(name="command", module=self.name, handler="command",
                         permission=PermissionGroup.ADMIN.value),
        ]
        for sub in ("enable", "disable", "permission", "cooldown", "price", "add", "remove"):
            entries.append(CommandEntry(
                name=sub, parent="command", module=self.name, handler=f"cmd_{sub}",
                permission=INHERIT, cooldown=INHERIT, price=INHERIT,
            ))
        return entries

    async def command(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        await event.respond(
            "Usage: !command <enable|disable|permission|cooldown|price|add|remove> ..."
        )

    async def _toggle(self, event: ChatEvent, ctx: "RuntimeContext", enable: bool) -> None:
        if not event.sub_args:
            await event.respond(f"Usage: !command {'enable' if enable else 'disable'} <name> [sub]")
            return
        name = event.sub_args[0].lower()
        sub = event.sub_args[1].lower() if len(event.sub_args) > 1 else None
        label = f"{name} {sub}" if sub else name
        changed = await (ctx.registry.enable if enable else ctx.registry.disable)(name, sub)
        if not changed:
            await event.respond(f"!{label} is not a registered command.")
            return
        await event.respond(f"!{label} is now {'enabled' if enable else 'disabled'}.")

    async def cmd_enable(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        await self._toggle(event, ctx, enable=True)

    async def cmd_disable(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        await self._toggle(event, ctx, enable=False)

    async def cmd_permission(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        parsed = _target_and_value(event.sub_args)
        if parsed is None or not 0 <= parsed[2] <= PermissionGroup.EVERYONE:
            await event.respond("Usage: !command permission <name> [sub] <0-5>")
            return
        name, sub, level = parsed
        if not await ctx.registry.set_perm_level(name, level, sub):
            await event.respond(f"!{name} is not a registered command.")
            return
        await event.respond(f"Permission for !{name}{' ' + sub if sub else ''} set to {level}.")

    async def cmd_cooldown(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        parsed = _target_and_value(event.sub_args)
        if parsed is None or parsed[2] < 0:
            await event.respond("Usage: !command cooldown <name> [sub] <seconds>")
            return
        name, sub, seconds = parsed
        if not await ctx.registry.set_cooldown(name, seconds, sub):
            await event.respond(f"!{name} is not a registered command.")
            return
        await event.respond(f"Cooldown for !{name}{' ' + sub if sub else ''} set to {seconds}s.")

    async def cmd_price(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        set_price = ctx.resolve("command.set_price")
        if set_price is None:
            await event.respond("The points extension is not loaded.")
            return
        parsed = _target_and_value(event.sub_args)
        if parsed is None or parsed[2] < INHERIT:
            await event.respond("Usage: !command price <name> [sub] <points>")
            return
        name, sub, price = parsed
        if not await set_price(name, price, sub):
            await event.respond(f"!{name} is not a registered command.")
            return
        await event.respond(f"Price for !{name}{' ' + sub if sub else ''} set to {price}.")

    async def cmd_add(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        if len(event.sub_args) < 2:
            await event.respond("Usage: !command add <name> <response>")
            return
        name = event.sub_args[0].lower().lstrip("!")
        response = " ".join(event.sub_args[1:])
        default_cooldown = int(await ctx.settings.get("defaultCooldown", 30))
        if not await ctx.registry.add_custom(name, response, cooldown=default_cooldown):
            await event.respond(f"!{name} is already a built-in command.")
            return
        await event.respond(f"Added !{name}.")

    async def cmd_remove(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        if not event.sub_args:
            await event.respond("Usage: !command remove <name>")
            return
        name = event.sub_args[0].lower().lstrip("!")
        if not await ctx.registry.remove_custom(name):
            await event.respond(f"!{name} is not a custom command.")
            return
        await event.respond(f"Removed !{name}.")
