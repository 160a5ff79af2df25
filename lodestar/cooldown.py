"""Per-user command cooldowns.

Records when each user last ran a command and answers how many seconds
remain before they may run it again. Records are in memory only;
restarting the engine resets every cooldown.

Keys are built from the resolved command and subcommand, so ``!points``
and ``!points gift`` cool down independently.
"""

import math
import time
from typing import Callable, Dict, Optional, Tuple, Union

import structlog

from .registry import CommandRegistry

logger = structlog.get_logger("lodestar.commands")

CooldownKey = Tuple[str, Optional[str], str]


class CooldownTracker:
    """Tracks last-invocation timestamps per (command, subcommand, user).

    Args:
        registry: Source of each command's cooldown seconds.
        clock: Returns the current time in seconds. Injected by tests.
    """

    def __init__(self, registry: CommandRegistry, clock: Callable[[], float] = time.time):
        self._registry = registry
        self._clock = clock
        self._records: Dict[CooldownKey, float] = {}

    @staticmethod
    def _key(command: str, user: str, subcommand: Optional[str]) -> CooldownKey:
        return (
            command.lower(),
            subcommand.lower() if subcommand else None,
            user.lower(),
        )

    async def is_on_cooldown(
        self, command: str, user: str, subcommand: Optional[str] = None
    ) -> Union[int, bool]:
        """Seconds remaining on the user's cooldown, or False if none.

        The returned value is always ``0 < v <= cooldown`` when truthy.
        """
        last = self._records.get(self._key(command, user, subcommand))
        if last is None:
            return False
        cooldown = await self._registry.get_cooldown(command, subcommand)
        elapsed = self._clock() - last
        if elapsed < cooldown:
            return math.ceil(cooldown - elapsed)
        self._records.pop(self._key(command, user, subcommand), None)
        return False

    def start_cooldown(self, command: str, user: str, subcommand: Optional[str] = None) -> None:
        """Record now as the user's last use, replacing any earlier record."""
        self._records[self._key(command, user, subcommand)] = self._clock()
        logger.debug("cooldown_started", command=command, subcommand=subcommand, user=user)

    def clear(self, user: Optional[str] = None) -> int:
        """Drop records for one user, or for everyone. Returns how many."""
        if user is None:
            count = len(self._records)
            self._records.clear()
            return count
        user = user.lower()
        keys = [k for k in self._records if k[2] == user]
        for key in keys:
            del self._records[key]
        return len(keys)

    async def prune(self) -> int:
        """Forget records whose cooldown has already run out."""
        now = self._clock()
        expired = []
        for key, last in list(self._records.items()):
            cooldown = await self._registry.get_cooldown(key[0], key[1])
            if now - last >= cooldown:
                expired.append(key)
        for key in expired:
            self._records.pop(key, None)
        if expired:
            logger.debug("cooldowns_pruned", count=len(expired))
        return len(expired)

    def __len__(self) -> int:
        return len(self._records)
