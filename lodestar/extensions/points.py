"""Points extension: balances in chat and the payout timer.

Commands::

    !points [user]                 show a balance
    !points add <user> <amount>    credit (moderators)
    !points remove <user> <amount> debit (moderators)
    !points gift <user> <amount>   move points from the sender to user
"""

from typing import TYPE_CHECKING, Any, Dict, List, Optional

from ..exceptions import PayoutCycleError
from ..models import INHERIT, ChatEvent, CommandEntry, PermissionGroup
from ..points import PointsEconomy
from .base import Extension

if TYPE_CHECKING:
    from ..context import RuntimeContext

PAYOUT_INTERVAL_NAME = "pointPayouts"
DEFAULT_TICK_SECONDS = 60
FIRST_PAYOUT_DELAY = 1


def _parse_amount(value: str) -> Optional[int]:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


class PointsExtension(Extension):
    name = "points"
    description = "Per-user point balances, command prices and payouts"

    def __init__(self, config):
        super().__init__(config)
        self.economy: Optional[PointsEconomy] = None

    def _economy(self, ctx: "RuntimeContext") -> PointsEconomy:
        if self.economy is None:
            self.economy = PointsEconomy(
                ctx.db, ctx.settings, ctx.registry, ctx.users, ctx.stream,
                bot_name=ctx.channel.bot_name,
            )
        return self.economy

    def commands(self) -> List[CommandEntry]:
        mod = PermissionGroup.MODERATOR.value
        return [
            CommandEntry(name="points", module=self.name, handler="points"),
            CommandEntry(name="add", parent="points", module=self.name,
                         handler="add", permission=mod, cooldown=INHERIT, price=INHERIT),
            CommandEntry(name="remove", parent="points", module=self.name,
                         handler="remove", permission=mod, cooldown=INHERIT, price=INHERIT),
            CommandEntry(name="gift", parent="points", module=self.name,
                         handler="gift", permission=INHERIT, cooldown=INHERIT, price=INHERIT),
        ]

    def capabilities(self, ctx: "RuntimeContext") -> Dict[str, Any]:
        economy = self._economy(ctx)
        return {
            "points.economy": economy,
            "points.add": economy.add,
            "points.sub": economy.sub,
            "points.spend": economy.spend,
            "points.get_user_points": economy.get_user_points,
            "points.set_user_points": economy.set_user_points,
            "points.make_string": economy.make_string,
            "points.get_point_name": economy.get_point_name,
            "points.set_point_name": economy.set_point_name,
            "points.run": economy.run,
            "command.get_price": economy.get_command_price,
            "command.set_price": economy.set_command_price,
            "user.can_afford_command": economy.can_afford_command,
        }

    async def setup(self, ctx: "RuntimeContext") -> None:
        seconds = int(self.config.get_global("payout_tick_seconds", DEFAULT_TICK_SECONDS))
        ctx.tick.set_interval(PAYOUT_INTERVAL_NAME, self.payout_job, seconds,
                              delay=FIRST_PAYOUT_DELAY)

    async def teardown(self, ctx: "RuntimeContext") -> None:
        ctx.tick.clear_interval(PAYOUT_INTERVAL_NAME)
        self.economy = None

    async def payout_job(self) -> None:
        if self.economy is None:
            return
        try:
            await self.economy.run()
        except PayoutCycleError as e:
            self.config.logger.error("payout_cycle_failed", user=e.user,
                                     paid=e.context.get("paid"), error=e.message)

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def points(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        target = event.args[0].lstrip("@").lower() if event.args else event.sender
        if target != event.sender and not await ctx.users.exists(target):
            await event.respond(f"{target} has not been seen here.")
            return
        balance = await self.economy.get_user_points(target, as_string=True)
        if target == event.sender:
            await event.respond(f"{event.sender}, you have {balance}.")
        else:
            await event.respond(f"{target} has {balance}.")

    async def _adjust(self, event: ChatEvent, ctx: "RuntimeContext", credit: bool) -> None:
        if len(event.sub_args) < 2:
            verb = "add" if credit else "remove"
            await event.respond(f"Usage: !points {verb} <user> <amount>")
            return
        target = event.sub_args[0].lstrip("@").lower()
        amount = _parse_amount(event.sub_args[1])
        if amount is None or amount <= 0:
            await event.respond("Amount must be a positive number.")
            return
        if not await ctx.users.exists(target):
            await event.respond(f"{target} has not been seen here.")
            return
        if credit:
            await self.economy.add(target, amount)
            await event.respond(f"Gave {await self.economy.make_string(amount)} to {target}.")
        else:
            await self.economy.sub(target, amount)
            await event.respond(f"Took {await self.economy.make_string(amount)} from {target}.")
        self.config.logger.info("points_adjusted", target=target, amount=amount,
                                credit=credit, by=event.sender)

    async def add(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        await self._adjust(event, ctx, credit=True)

    async def remove(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        await self._adjust(event, ctx, credit=False)

    async def gift(self, event: ChatEvent, ctx: "RuntimeContext") -> None:
        if len(event.sub_args) < 2:
            await event.respond("Usage: !points gift <user> <amount>")
            return
        target = event.sub_args[0].lstrip("@").lower()
        amount = _parse_amount(event.sub_args[1])
        if amount is None or amount <= 0:
            await event.respond("Amount must be a positive number.")
            return
        if target == event.sender:
            await event.respond("You can't gift points to yourself.")
            return
        if not await ctx.users.exists(target):
            await event.respond(f"{target} has not been seen here.")
            return
        if not await self.economy.spend(event.sender, amount):
            balance = await self.economy.get_user_points(event.sender)
            await event.respond(
                f"You only have {await self.economy.make_string(balance)}."
            )
            return
        await self.economy.add(target, amount)
        await event.respond(
            f"You gave {await self.economy.make_string(amount)} to {target}."
        )
