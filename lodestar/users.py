"""Chatter directory: presence plus the ``users`` table."""

import time
from typing import List, Optional, Set

import structlog

from .models import PermissionGroup, UserAccount
from .store import Store

logger = structlog.get_logger("lodestar.core")


class UserDirectory:
    """Tracks who is in the channel and reads/writes user rows.

    Presence is fed by the connector's join/part events; the points
    payout reads it through ``present()``.
    """

    def __init__(self, store: Store):
        self._store = store
        self._present: Set[str] = set()

    def present(self) -> List[str]:
        """Names currently in the channel."""
        return sorted(self._present)

    def mark_present(self, name: str) -> None:
        self._present.add(name.lower())

    def mark_absent(self, name: str) -> None:
        self._present.discard(name.lower())

    async def get(self, name: str) -> Optional[UserAccount]:
        row = await self._store.get_row("users", {"name": name.lower()})
        if row is None:
            return None
        return UserAccount(**{k: v for k, v in row.items() if v is not None})

    async def exists(self, name: str) -> bool:
        return await self._store.count("users", {"name": name.lower()}) > 0

    async def add(self, account: UserAccount) -> None:
        """Create the user, or refresh presence fields of an existing row.

        ``seen`` is always refreshed. ``mod`` and ``following`` are written
        only when they were set explicitly on ``account``. Points and
        permission of an existing row are left untouched.
        """
        name = account.name.lower()
        seen = account.seen or int(time.time() * 1000)
        created = await self._store.insert_ignore("users", {
            **account.model_dump(),
            "name": name,
            "seen": seen,
        })
        if created:
            logger.debug("user_created", user=name)
            return
        updates = account.model_dump(include={"mod", "following"}, exclude_unset=True)
        updates["seen"] = seen
        await self._store.set("users", updates, {"name": name})

    async def touch(self, name: str) -> None:
        """Record a sighting of ``name``, creating the row if needed."""
        await self.add(UserAccount(name=name))

    async def get_perm_level(self, name: str, default: int = PermissionGroup.EVERYONE) -> int:
        level = await self._store.get("users", "permission", {"name": name.lower()})
        return int(default) if level is None else int(level)

    async def set_perm_level(self, name: str, level: int) -> None:
        await self._store.set("users", {"permission": int(level)}, {"name": name.lower()})
        logger.info("user_permission_updated", user=name.lower(), level=int(level))
