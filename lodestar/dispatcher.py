"""Command dispatch pipeline.

``run_command`` takes one inbound ChatEvent through these stages,
stopping at the first that fails:

1. split off a known subcommand from the first argument
2. fetch every policy value at once (economy flag, cooldown flag,
   existence, enabled flag, permission level)
3. unknown command: silent
4. disabled command: silent
5. cooldown active: whisper the seconds remaining
6. sender's group level above the command's level: whisper a refusal
7. economy on and the sender cannot pay: whisper balance and price
8. run the handler, or render a custom command's response
9. start the cooldown and debit the price
10. emit ``command:<name>[:<subcommand>]``

Side effects in stage 9 happen only when stage 8 succeeds.
"""

from __future__ import annotations

import asyncio
import inspect
from enum import Enum
from typing import TYPE_CHECKING, Awaitable, Callable

import structlog

from .exceptions import HandlerExecutionError, ModuleResolutionError, PolicyRejection
from .models import ChatEvent

if TYPE_CHECKING:
    from .context import RuntimeContext

logger = structlog.get_logger("lodestar.commands")


class DispatchOutcome(str, Enum):
    """How a dispatch ended."""
    UNKNOWN = "unknown"
    DISABLED = "disabled"
    COOLDOWN = "cooldown"
    FORBIDDEN = "forbidden"
    UNAFFORDABLE = "unaffordable"
    FAILED = "failed"
    COMPLETED = "completed"


def get_subcommand(ctx: "RuntimeContext", event: ChatEvent) -> ChatEvent:
    """Move a leading known subcommand out of ``event.args``.

    The lookup is case-insensitive. When the first argument is not a
    subcommand of this command, every argument stays the command's own.
    """
    if event.args and ctx.registry.has_subcommand(event.command, event.args[0]):
        event.subcommand = event.args[0].lower()
        event.sub_args = list(event.args[1:])
    else:
        event.subcommand = None
        event.sub_args = []
    event.sub_arg_string = " ".join(event.sub_args)
    return event


def create_responder(ctx: "RuntimeContext", event: ChatEvent) -> Callable[[str], Awaitable[None]]:
    """Build ``event.respond``: whisper back to whispers, otherwise say."""

    async def respond(message: str) -> None:
        if event.whispered:
            await ctx.whisper(event.sender, message)
        else:
            await ctx.say(event.sender, message)

    return respond


def event_name(event: ChatEvent) -> str:
    if event.subcommand:
        return f"command:{event.command}:{event.subcommand}"
    return f"command:{event.command}"


async def _check_policies(ctx: "RuntimeContext", event: ChatEvent):
    """Run stages 2 to 7.

    Returns:
        (cooldowns_enabled, charge) for the commit stage.

    Raises:
        PolicyRejection: The first check that failed.
    """
    command, sub, sender = event.command, event.subcommand, event.sender
    (
        points_enabled,
        cooldowns_enabled,
        command_exists,
        command_enabled,
        permission,
    ) = await asyncio.gather(
        ctx.settings.get_ext_config("points", "enabled", True),
        ctx.settings.get_ext_config("cooldown", "enabled", True),
        ctx.registry.exists(command, sub),
        ctx.registry.is_enabled(command, sub),
        ctx.registry.get_perm_level(command, sub),
    )
    label = f"{command} {sub}" if sub else command

    if not command_exists:
        raise PolicyRejection(f"'{command}' is not a registered command",
                              outcome=DispatchOutcome.UNKNOWN)

    if not command_enabled:
        raise PolicyRejection(f"'{label}' is installed but is not enabled",
                              outcome=DispatchOutcome.DISABLED)

    if cooldowns_enabled:
        remaining = await ctx.cooldowns.is_on_cooldown(command, sender, sub)
        if remaining:
            raise PolicyRejection(
                f"'{label}' is on cooldown for {sender}",
                outcome=DispatchOutcome.COOLDOWN,
                notice=f"You need to wait {remaining} seconds to use !{command} again.",
                remaining=remaining,
            )

    if event.group_id > permission:
        raise PolicyRejection(
            f"{sender} does not have sufficient permissions to use '{label}'",
            outcome=DispatchOutcome.FORBIDDEN,
            notice=f"You don't have what it takes to use !{command}.",
            group=event.group_id, required=permission,
        )

    charge = 0
    can_afford = ctx.resolve("user.can_afford_command")
    if points_enabled and can_afford is not None:
        affordable, points, price = await can_afford(sender, command, sub)
        if price > 0 and not affordable:
            raise PolicyRejection(
                f"{sender} does not have enough points to use '{label}'",
                outcome=DispatchOutcome.UNAFFORDABLE,
                notice=(f"You don't have enough points to use !{command}. "
                        f"» costs {price}, you have {points}"),
                points=points, price=price,
            )
        charge = max(price, 0)

    return cooldowns_enabled, charge


async def _execute(ctx: "RuntimeContext", event: ChatEvent) -> None:
    """Stage 8. Raises HandlerExecutionError or ModuleResolutionError."""
    custom = await ctx.registry.is_custom(event.command)
    runner = None
    if not custom:
        entry = ctx.registry.get(event.command, event.subcommand)
        if ctx.loader is None:
            raise ModuleResolutionError("No extension loader attached", module_id=entry.module)
        runner = ctx.loader.get_runner(entry)

    try:
        if custom:
            response = await ctx.registry.get_response(event.command) or ""
            await ctx.say(event.sender, await ctx.params(event, response))
            return
        result = runner(event, ctx)
        if inspect.isawaitable(result):
            await result
    except Exception as e:
        raise HandlerExecutionError(
            str(e) or type(e).__name__,
            command=event.command, subcommand=event.subcommand,
            error_type=type(e).__name__,
        ) from e


async def run_command(ctx: "RuntimeContext", event: ChatEvent) -> DispatchOutcome:
    """Dispatch one chat command. Never raises for policy or handler failures."""
    event.command = event.command.lower()
    get_subcommand(ctx, event)

    try:
        cooldowns_enabled, charge = await _check_policies(ctx, event)
    except PolicyRejection as rejection:
        logger.info("command_rejected", outcome=rejection.outcome.value,
                    command=event.command, subcommand=event.subcommand,
                    sender=event.sender, reason=rejection.message)
        if rejection.notice:
            await ctx.whisper(event.sender, rejection.notice)
        return rejection.outcome

    event.respond = create_responder(ctx, event)
    try:
        await _execute(ctx, event)
    except ModuleResolutionError as e:
        logger.error("command_module_unresolved", command=event.command,
                     subcommand=event.subcommand, module_id=e.module_id, error=str(e))
        return DispatchOutcome.FAILED
    except HandlerExecutionError as e:
        logger.error("command_handler_failed", command=e.command,
                     subcommand=e.subcommand, sender=event.sender, error=e.message,
                     error_type=e.context.get("error_type"))
        return DispatchOutcome.FAILED

    if cooldowns_enabled:
        ctx.cooldowns.start_cooldown(event.command, event.sender, event.subcommand)
    if charge:
        debit = ctx.resolve("points.sub")
        if debit is None:
            logger.warning("command_charge_skipped", command=event.command, price=charge)
        else:
            await debit(event.sender, charge)

    ctx.emit(event_name(event), event)
    logger.debug("command_completed", command=event.command,
                 subcommand=event.subcommand, sender=event.sender, charge=charge)
    return DispatchOutcome.COMPLETED
