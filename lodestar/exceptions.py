"""Exception hierarchy for lodestar.

Every error raised by the engine derives from LodestarError, which
carries an ErrorCategory for retry decisions, the originating module
and arbitrary key-value context for structured logging.

Policy rejections (unknown, disabled, cooling down, forbidden,
unaffordable commands) are expected control flow. PolicyRejection is
raised and caught inside the dispatcher only; callers of run_command
receive a DispatchOutcome instead.
"""

from enum import Enum
from typing import Any, Optional


class ErrorCategory(str, Enum):
    """Classification of errors for retry decisions."""
    TRANSIENT = "transient"          # Worth retrying (store busy, socket drop)
    PERMANENT = "permanent"          # Not worth retrying (bad input, broken handler)
    INFRASTRUCTURE = "infrastructure"  # Missing config, unreachable service


class LodestarError(Exception):
    """Base exception for all lodestar errors.

    Attributes:
        message: Human-readable error description.
        category: Error classification for retry/escalation decisions.
        module: Originating module name (e.g. "extensions.loader").
        context: Arbitrary key-value pairs for structured logging.
    """

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.message = message
        self.category = category
        self.module = module
        self.context = context
        super().__init__(message)

    @property
    def is_retryable(self) -> bool:
        """Whether this error is worth retrying."""
        return self.category == ErrorCategory.TRANSIENT

    def __str__(self) -> str:
        parts = [self.message or self.__class__.__name__]
        if self.module:
            parts.append(f"[module={self.module}]")
        if self.context:
            ctx = ", ".join(f"{k}={v}" for k, v in self.context.items())
            parts.append(f"({ctx})")
        return " ".join(parts)

    def __repr__(self) -> str:
        cls = self.__class__.__name__
        return (
            f"{cls}({self.message!r}, category={self.category.value!r}, "
            f"module={self.module!r})"
        )


# ---------------------------------------------------------------------------
# Extension exceptions
# ---------------------------------------------------------------------------

class ModuleResolutionError(LodestarError):
    """An extension module could not be resolved or instantiated.

    Attributes:
        module_id: Identifier that failed to resolve.
    """

    def __init__(
        self,
        message: str = "",
        *,
        module_id: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.module_id = module_id
        super().__init__(
            message, category=category, module=module or "extensions.loader",
            **context,
        )


# ---------------------------------------------------------------------------
# Dispatch exceptions
# ---------------------------------------------------------------------------

class PolicyRejection(LodestarError):
    """A command invocation was turned away by a policy check.

    Attributes:
        outcome: The DispatchOutcome value describing the rejection.
        notice: Message for the sender, or None for silent rejections.
    """

    def __init__(
        self,
        message: str = "",
        *,
        outcome: Any = None,
        notice: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.outcome = outcome
        self.notice = notice
        super().__init__(
            message, category=category, module=module or "dispatcher", **context
        )


class HandlerExecutionError(LodestarError):
    """A command handler raised while running.

    Attributes:
        command: Command whose handler failed.
        subcommand: Resolved subcommand, if any.
    """

    def __init__(
        self,
        message: str = "",
        *,
        command: Optional[str] = None,
        subcommand: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.PERMANENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.command = command
        self.subcommand = subcommand
        super().__init__(
            message, category=category, module=module or "dispatcher", **context
        )


# ---------------------------------------------------------------------------
# Economy exceptions
# ---------------------------------------------------------------------------

class PayoutCycleError(LodestarError):
    """A payout cycle failed part-way through crediting users.

    Defaults to TRANSIENT: the next scheduled cycle runs again because
    the ledger state was not advanced.

    Attributes:
        user: The user being credited when the failure happened.
    """

    def __init__(
        self,
        message: str = "",
        *,
        user: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.user = user
        super().__init__(
            message, category=category, module=module or "points", **context
        )


# ---------------------------------------------------------------------------
# Configuration exceptions
# ---------------------------------------------------------------------------

class ConfigurationError(LodestarError):
    """Invalid or missing configuration.

    Defaults to INFRASTRUCTURE because config issues are environmental
    and won't resolve by retrying.
    """

    def __init__(
        self,
        message: str = "",
        *,
        setting_name: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.INFRASTRUCTURE,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.setting_name = setting_name
        super().__init__(
            message, category=category, module=module or "config", **context
        )


# ---------------------------------------------------------------------------
# Store exceptions
# ---------------------------------------------------------------------------

class DatabaseError(LodestarError):
    """Error during store operations.

    Attributes:
        operation: The store operation that failed (e.g. "incr", "get").
        table: The table involved (if known).
    """

    def __init__(
        self,
        message: str = "",
        *,
        operation: Optional[str] = None,
        table: Optional[str] = None,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        self.operation = operation
        self.table = table
        super().__init__(
            message, category=category, module=module or "store", **context
        )


# ---------------------------------------------------------------------------
# Connector exceptions
# ---------------------------------------------------------------------------

class ConnectorError(LodestarError):
    """The chat connector could not deliver or receive messages."""

    def __init__(
        self,
        message: str = "",
        *,
        category: ErrorCategory = ErrorCategory.TRANSIENT,
        module: Optional[str] = None,
        **context: Any,
    ) -> None:
        super().__init__(
            message, category=category, module=module or "connector", **context
        )
