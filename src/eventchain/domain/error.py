"""
Error classes for chain authoring and execution.

Only DefinitionError is raised to callers of the engine. The remaining
errors are caught at component boundaries and turned into typed outcomes
that are recorded on the step or execution as plain text.
"""


class EventChainError(Exception):
    """Base exception for eventchain."""


class DefinitionError(EventChainError):
    """Invalid chain definition, or a disabled chain was started."""


class InvalidTransitionError(EventChainError):
    """An execution was asked to move to a status its state machine does not allow."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Illegal status transition {current} -> {target}")


class ConcurrencyError(EventChainError):
    """A write was rejected because another writer updated the execution first."""


class ExpressionError(EventChainError):
    """An input mapping or condition expression could not be parsed or resolved."""


class HandlerNotFoundError(EventChainError, KeyError):
    """No action handler is registered for the requested key."""

    def __str__(self) -> str:
        return str(self.args[0]) if self.args else ""


class TransientActionError(EventChainError):
    """
    Raised by an action handler for a failure that is safe to retry.

    Examples: rate limits, timeouts, a dependency that is briefly unavailable.
    """


class PermanentActionError(EventChainError):
    """Raised by an action handler for a failure that must not be retried."""
