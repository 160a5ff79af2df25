"""Command registry.

Maps command names (and parent/subcommand pairs) to the extension
module and handler that implement them, together with their policy:
enabled flag, permission level, cooldown and price.

Bindings live in memory and are rebuilt every time the engine starts.
Policy lives in the ``commands`` and ``subcommands`` tables so that
operator changes survive restarts: registering a command writes its
defaults only the first time, later registrations refresh the binding
and leave stored policy alone.

Subcommands are keyed ``(parent, name)`` in memory and persisted under
the composite ``(name, module)`` key, so the same subcommand name may
be used by different extensions.
"""

from typing import Dict, List, Optional, Tuple

import structlog

from .models import CUSTOM_MODULE, INHERIT, CommandEntry
from .store import Store

logger = structlog.get_logger("lodestar.commands")


def _norm(value: Optional[str]) -> Optional[str]:
    return value.lower() if value else value


class CommandRegistry:
    """In-memory command bindings backed by persisted policy rows.

    Lookup methods are coroutines so the dispatcher can fan them out
    together with store reads.
    """

    def __init__(self, store: Store):
        self._store = store
        self._commands: Dict[str, CommandEntry] = {}
        self._subcommands: Dict[Tuple[str, str], CommandEntry] = {}

    # ------------------------------------------------------------------
    # Registration
    # ------------------------------------------------------------------

    async def register(self, entry: CommandEntry) -> None:
        """Bind a command or subcommand.

        Registering the same key twice replaces the binding; the
        persisted policy row is created on first registration only.
        """
        entry = entry.model_copy(update={
            "name": entry.name.lower(),
            "parent": _norm(entry.parent),
        })

        if entry.is_subcommand:
            existing = self._subcommands.get(entry.key)
            if entry.parent not in self._commands:
                logger.warning("subcommand_parent_missing",
                               command=entry.parent, subcommand=entry.name)
        else:
            existing = self._commands.get(entry.name)

        if existing is not None and existing.module != entry.module:
            logger.warning(
                "command_registration_conflict",
                command=entry.display_name,
                previous=existing.module,
                module=entry.module,
            )

        await self._persist(entry)
        if entry.is_subcommand:
            self._subcommands[entry.key] = entry
        else:
            self._commands[entry.name] = entry
        logger.debug("command_registered", command=entry.display_name, module=entry.module)

    async def _persist(self, entry: CommandEntry) -> None:
        defaults = {
            "name": entry.name,
            "module": entry.module,
            "handler": entry.handler,
            "status": entry.enabled,
            "permission": entry.permission,
            "cooldown": entry.cooldown,
            "price": entry.price,
        }
        if entry.is_subcommand:
            defaults["parent"] = entry.parent
            await self._store.insert_ignore("subcommands", defaults)
            await self._store.set(
                "subcommands",
                {"handler": entry.handler, "parent": entry.parent},
                {"name": entry.name, "module": entry.module},
            )
            return

        if entry.response is not None:
            defaults["response"] = entry.response
        await self._store.insert_ignore("commands", defaults)
        refresh = {"module": entry.module, "handler": entry.handler}
        if entry.response is not None:
            refresh["response"] = entry.response
        await self._store.set("commands", refresh, {"name": entry.name})

    def unregister(self, module: str, cascading: bool = False) -> int:
        """Remove every binding owned by ``module``.

        Args:
            module: Owning extension id.
            cascading: Also remove subcommands (whatever their owner)
                whose parent command was removed.

        Returns:
            Number of bindings removed.
        """
        removed_parents = [n for n, e in self._commands.items() if e.module == module]
        for name in removed_parents:
            del self._commands[name]

        removed_subs = [
            key for key, e in self._subcommands.items()
            if e.module == module or (cascading and key[0] in removed_parents)
        ]
        for key in removed_subs:
            del self._subcommands[key]

        count = len(removed_parents) + len(removed_subs)
        if count:
            logger.info("commands_unregistered", module=module, count=count, cascading=cascading)
        return count

    def unregister_all(self) -> None:
        self._commands.clear()
        self._subcommands.clear()
        logger.info("commands_unregistered_all")

    # ------------------------------------------------------------------
    # Lookup
    # ------------------------------------------------------------------

    def get(self, command: str, subcommand: Optional[str] = None) -> Optional[CommandEntry]:
        """Return the binding for a command, or for its subcommand if known."""
        command = _norm(command)
        if subcommand:
            sub = self._subcommands.get((command, subcommand.lower()))
            if sub is not None:
                return sub
        return self._commands.get(command)

    def has_subcommand(self, command: str, subcommand: Optional[str]) -> bool:
        if not subcommand:
            return False
        return (_norm(command), subcommand.lower()) in self._subcommands

    def names(self) -> List[str]:
        return sorted(self._commands)

    async def exists(self, command: str, subcommand: Optional[str] = None) -> bool:
        """True if the command, or its subcommand, is registered.

        An unknown subcommand falls back to the parent command.
        """
        return self.get(command, subcommand) is not None

    async def _policy_rows(self, command: str, subcommand: Optional[str]):
        command = _norm(command)
        parent_row = await self._store.get_row("commands", {"name": command})
        sub_row = None
        if self.has_subcommand(command, subcommand):
            sub_row = await self._store.get_row(
                "subcommands", {"name": subcommand.lower(), "parent": command}
            )
        return parent_row, sub_row

    async def _inherited(self, column: str, command: str, subcommand: Optional[str]) -> Optional[int]:
        parent_row, sub_row = await self._policy_rows(command, subcommand)
        if sub_row is not None and sub_row.get(column) not in (None, INHERIT):
            return int(sub_row[column])
        if parent_row is not None and parent_row.get(column) is not None:
            return int(parent_row[column])
        entry = self.get(command)
        return getattr(entry, column) if entry is not None else None

    async def is_enabled(self, command: str, subcommand: Optional[str] = None) -> bool:
        """Read the enabled flag; subcommands are toggled independently."""
        parent_row, sub_row = await self._policy_rows(command, subcommand)
        row = sub_row if sub_row is not None else parent_row
        if row is not None and row.get("status") is not None:
            return bool(row["status"])
        entry = self.get(command, subcommand)
        return entry.enabled if entry is not None else False

    async def get_perm_level(self, command: str, subcommand: Optional[str] = None) -> int:
        """Permission level; a subcommand without its own value inherits."""
        level = await self._inherited("permission", command, subcommand)
        return 0 if level is None else level

    async def get_cooldown(self, command: str, subcommand: Optional[str] = None) -> int:
        """Cooldown seconds; a subcommand without its own value inherits."""
        seconds = await self._inherited("cooldown", command, subcommand)
        return 0 if seconds is None else seconds

    async def is_custom(self, command: str) -> bool:
        entry = self._commands.get(_norm(command))
        return entry is not None and entry.is_custom

    async def get_response(self, command: str) -> Optional[str]:
        return await self._store.get(
            "commands", "response", {"name": _norm(command), "module": CUSTOM_MODULE}
        )

    # ------------------------------------------------------------------
    # Operator mutations
    # ------------------------------------------------------------------

    async def _set_policy(
        self, column: str, value, command: str, subcommand: Optional[str]
    ) -> bool:
        command = _norm(command)
        if subcommand:
            entry = self._subcommands.get((command, subcommand.lower()))
            if entry is None:
                logger.warning("policy_unknown_command", command=command, subcommand=subcommand)
                return False
            await self._store.set(
                "subcommands", {column: value},
                {"name": entry.name, "module": entry.module},
            )
        else:
            if command not in self._commands:
                logger.warning("policy_unknown_command", command=command)
                return False
            await self._store.set("commands", {column: value}, {"name": command})
        logger.info("command_policy_updated", command=command,
                    subcommand=subcommand, column=column, value=value)
        return True

    async def enable(self, command: str, subcommand: Optional[str] = None) -> bool:
        return await self._set_policy("status", True, command, subcommand)

    async def disable(self, command: str, subcommand: Optional[str] = None) -> bool:
        return await self._set_policy("status", False, command, subcommand)

    async def set_perm_level(self, command: str, level: int, subcommand: Optional[str] = None) -> bool:
        return await self._set_policy("permission", int(level), command, subcommand)

    async def set_cooldown(self, command: str, seconds: int, subcommand: Optional[str] = None) -> bool:
        return await self._set_policy("cooldown", int(seconds), command, subcommand)

    # ------------------------------------------------------------------
    # Custom commands
    # ------------------------------------------------------------------

    async def load_custom_commands(self) -> int:
        """Bind every persisted custom command. Returns how many were loaded."""
        rows = await self._store.get_rows("commands", {"module": CUSTOM_MODULE})
        for row in rows:
            self._commands[row["name"]] = CommandEntry(
                name=row["name"],
                module=CUSTOM_MODULE,
                enabled=bool(row.get("status")),
                permission=row.get("permission") if row.get("permission") is not None else 5,
                cooldown=row.get("cooldown") if row.get("cooldown") is not None else 30,
                price=row.get("price") or 0,
                response=row.get("response"),
            )
        logger.info("custom_commands_loaded", count=len(rows))
        return len(rows)

    async def add_custom(
        self,
        name: str,
        response: str,
        permission: int = 5,
        cooldown: int = 30,
        price: int = 0,
    ) -> bool:
        """Create or replace a custom command.

        Returns:
            False if ``name`` is bound to a code-backed command.
        """
        name = name.lower()
        existing = self._commands.get(name)
        if existing is not None and not existing.is_custom:
            logger.warning("custom_command_name_taken", command=name, module=existing.module)
            return False
        entry = CommandEntry(
            name=name, module=CUSTOM_MODULE, response=response,
            permission=permission, cooldown=cooldown, price=price,
        )
        await self._store.set(
            "commands",
            {
                "module": CUSTOM_MODULE, "handler": None, "response": response,
                "status": True, "permission": permission,
                "cooldown": cooldown, "price": price,
            },
            {"name": name},
        )
        self._commands[name] = entry
        logger.info("custom_command_saved", command=name)
        return True

    async def remove_custom(self, name: str) -> bool:
        name = name.lower()
        existing = self._commands.get(name)
        if existing is None or not existing.is_custom:
            return False
        await self._store.delete("commands", {"name": name, "module": CUSTOM_MODULE})
        del self._commands[name]
        logger.info("custom_command_removed", command=name)
        return True
