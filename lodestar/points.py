"""Points economy: balances, command prices and the periodic payout.

Balances change only through the store's atomic increment, never by
reading, adding and writing back, so concurrent dispatches for the
same user cannot lose updates. Balances may go negative; this layer
does not floor them.

Payout cycle:
    The payout timer calls ``run`` every tick. A cycle is due once the
    active branch's interval (live or offline, in minutes) has passed
    since the last paid cycle. Each user present now AND present at the
    previous paid cycle receives ``amount + bonus``, where bonus is the
    rank bonus, or the group bonus when the rank has none. Users who
    just arrived wait one cycle. The bot's own account is never paid.

    Ledger state (``last_payout_at``, ``last_user_list``) advances only
    after every eligible user was credited. If crediting fails part-way,
    PayoutCycleError is raised and the next tick retries the whole
    cycle, so users credited before the failure may be paid twice.
"""

import asyncio
import time
from typing import Callable, Optional, Set, Tuple, Union

import structlog

from .exceptions import DatabaseError, PayoutCycleError
from .models import INHERIT, GroupBonus
from .registry import CommandRegistry
from .settings import Settings
from .store import Store
from .users import UserDirectory

logger = structlog.get_logger("lodestar.points")

DEFAULT_POINT_NAME = "point"
DEFAULT_POINT_NAME_PLURAL = "points"
DEFAULT_PAYOUT_LIVE = 6
DEFAULT_INTERVAL_LIVE = 5  # minutes
DEFAULT_PAYOUT_OFFLINE = -1
DEFAULT_INTERVAL_OFFLINE = -1


class PointsEconomy:
    """Per-user balances and the payout job.

    Args:
        db: Store holding ``users``, ``commands``, ``subcommands``,
            ``ranks`` and ``groups``.
        settings: Runtime settings (point names, payout amounts).
        registry: Used to locate subcommand rows when setting prices.
        users: Presence source for the payout.
        stream: Object with an ``is_live`` attribute.
        bot_name: Account excluded from payouts.
        clock: Returns the current time in seconds.
    """

    def __init__(
        self,
        db: Store,
        settings: Settings,
        registry: CommandRegistry,
        users: UserDirectory,
        stream,
        bot_name: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self._db = db
        self._settings = settings
        self._registry = registry
        self._users = users
        self._stream = stream
        self._bot_name = bot_name.lower()
        self._clock = clock
        self._lock = asyncio.Lock()

        self.last_payout_at = 0  # ms epoch
        self.last_user_list: Set[str] = set()

    # ------------------------------------------------------------------
    # Balances
    # ------------------------------------------------------------------

    async def add(self, user: str, amount) -> int:
        return await self._db.incr("users", "points", int(amount), {"name": user.lower()})

    async def sub(self, user: str, amount) -> int:
        return await self._db.decr("users", "points", int(amount), {"name": user.lower()})

    async def spend(self, user: str, amount) -> bool:
        """Debit only if the balance covers ``amount``. Returns True if debited."""
        touched = await self._db.decr("users", "points", int(amount),
                                      {"name": user.lower()}, floor=0)
        return touched > 0

    async def get_user_points(self, user: str, as_string: bool = False) -> Union[int, str]:
        points = await self._db.get("users", "points", {"name": user.lower()}, 0)
        if as_string:
            return await self.make_string(points)
        return int(points)

    async def set_user_points(self, user: str, amount) -> None:
        await self._db.set("users", {"points": int(amount)}, {"name": user.lower()})

    async def make_string(self, amount) -> str:
        """``"1 point"``, ``"12 points"``, using the configured names."""
        amount = int(amount)
        return f"{amount} {await self.get_point_name(singular=amount == 1)}"

    async def get_point_name(self, singular: bool = False) -> str:
        if singular:
            return str(await self._settings.get("pointName", DEFAULT_POINT_NAME))
        return str(await self._settings.get("pointNamePlural", DEFAULT_POINT_NAME_PLURAL))

    async def set_point_name(self, name: str, singular: bool = False) -> None:
        await self._settings.set("pointName" if singular else "pointNamePlural", name)

    # ------------------------------------------------------------------
    # Prices
    # ------------------------------------------------------------------

    async def get_command_price(self, command: str, subcommand: Optional[str] = None) -> int:
        """Price of a command; a subcommand priced -1 (or unset) uses its parent's."""
        command = command.lower()
        if subcommand:
            price = await self._db.get(
                "subcommands", "price", {"name": subcommand.lower(), "parent": command}
            )
            if price is not None and int(price) != INHERIT:
                return int(price)
        return int(await self._db.get("commands", "price", {"name": command}, 0))

    async def set_command_price(
        self, command: str, price, subcommand: Optional[str] = None
    ) -> bool:
        """Set a price; ``-1`` on a subcommand makes it follow the parent.

        Returns:
            False if the command or subcommand is not registered.
        """
        command = command.lower()
        price = int(price)
        if subcommand:
            if not self._registry.has_subcommand(command, subcommand):
                return False
            entry = self._registry.get(command, subcommand)
            await self._db.set("subcommands", {"price": price},
                               {"name": entry.name, "module": entry.module})
        else:
            if self._registry.get(command) is None:
                return False
            await self._db.set("commands", {"price": price}, {"name": command})
        logger.info("command_price_updated", command=command, subcommand=subcommand, price=price)
        return True

    async def can_afford_command(
        self, user: str, command: str, subcommand: Optional[str] = None
    ) -> Tuple[bool, int, int]:
        """(affordable, points, price). Affordable only when points > price."""
        price, points = await asyncio.gather(
            self.get_command_price(command, subcommand),
            self.get_user_points(user),
        )
        return points > price, points, price

    # ------------------------------------------------------------------
    # Payout settings and bonuses
    # ------------------------------------------------------------------

    async def get_payout_amount(self, offline: bool = False) -> int:
        if offline:
            return int(await self._settings.get("pointsPayoutOffline", DEFAULT_PAYOUT_OFFLINE))
        return int(await self._settings.get("pointsPayoutLive", DEFAULT_PAYOUT_LIVE))

    async def set_payout_amount(self, amount, offline: bool = False) -> None:
        key = "pointsPayoutOffline" if offline else "pointsPayoutLive"
        await self._settings.set(key, int(amount))

    async def get_payout_interval(self, offline: bool = False) -> int:
        """Minutes between payouts."""
        if offline:
            return int(await self._settings.get("pointsIntervalOffline", DEFAULT_INTERVAL_OFFLINE))
        return int(await self._settings.get("pointsIntervalLive", DEFAULT_INTERVAL_LIVE))

    async def set_payout_interval(self, minutes, offline: bool = False) -> None:
        key = "pointsIntervalOffline" if offline else "pointsIntervalLive"
        await self._settings.set(key, int(minutes))

    async def get_rank_bonus(self, rank) -> int:
        if rank is None:
            return 0
        bonus = await self._db.get("ranks", "bonus", {"name": str(rank)})
        return int(bonus) if bonus is not None else 0

    async def set_rank_bonus(self, rank, bonus) -> None:
        await self._db.set("ranks", {"bonus": int(bonus)}, {"name": str(rank)})

    async def get_group(self, group) -> Optional[GroupBonus]:
        """The ``groups`` row for a level (int) or name (str), or None."""
        if isinstance(group, int):
            row = await self._db.get_row("groups", {"level": group})
        elif isinstance(group, str):
            row = await self._db.get_row("groups", {"name": group})
        else:
            return None
        if row is None:
            return None
        return GroupBonus(**{k: v for k, v in row.items() if v is not None})

    async def get_group_bonus(self, group) -> int:
        """Bonus for a group given by level (int) or name (str)."""
        found = await self.get_group(group)
        return found.bonus if found is not None else 0

    async def set_group_bonus(self, group, bonus) -> None:
        if isinstance(group, int):
            await self._db.set("groups", {"bonus": int(bonus)}, {"level": group})
        elif isinstance(group, str):
            await self._db.set("groups", {"bonus": int(bonus)}, {"name": group})

    # ------------------------------------------------------------------
    # Payout job
    # ------------------------------------------------------------------

    async def run(self) -> bool:
        """Run one payout cycle if it is due.

        Only one cycle runs at a time; a call made while another is in
        progress returns immediately.

        Returns:
            True if a cycle was paid out.

        Raises:
            PayoutCycleError: Crediting a user failed.
        """
        if self._lock.locked():
            logger.debug("payout_skipped_busy")
            return False
        async with self._lock:
            return await self._run_cycle()

    async def _run_cycle(self) -> bool:
        now = int(self._clock() * 1000)
        live_interval, offline_interval, live_amount, offline_amount = await asyncio.gather(
            self.get_payout_interval(),
            self.get_payout_interval(offline=True),
            self.get_payout_amount(),
            self.get_payout_amount(offline=True),
        )
        live = bool(getattr(self._stream, "is_live", False))
        if live:
            amount, interval = live_amount, live_interval
        else:
            amount, interval = offline_amount, offline_interval

        if amount <= 0 or interval <= 0:
            return False
        if self.last_payout_at + interval * 60 * 1000 >= now:
            return False

        present = self._users.present()
        previous = self.last_user_list
        paid = 0
        for name in present:
            if name == self._bot_name or name not in previous:
                continue
            try:
                row = await self._db.get_row("users", {"name": name})
                if row is None:
                    continue
                bonus = (await self.get_rank_bonus(row.get("rank"))
                         or await self.get_group_bonus(row.get("permission")))
                await self._db.incr("users", "points", amount + bonus, {"name": name})
            except DatabaseError as e:
                raise PayoutCycleError(
                    f"Payout failed while crediting {name}", user=name, paid=paid,
                ) from e
            paid += 1

        self.last_user_list = set(present)
        self.last_payout_at = now
        logger.info("payout_completed", live=live, amount=amount,
                    paid=paid, present=len(present))
        return True
