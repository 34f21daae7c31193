from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

from eventchain.domain.error import DefinitionError
from eventchain.domain.value_object import ChainExecutionStatus

if TYPE_CHECKING:
    from eventchain.domain.entity import ChainDefinition


RESERVED_ALIASES = frozenset({"trigger", "entities"})

ALLOWED_TRANSITIONS: dict[ChainExecutionStatus, frozenset[ChainExecutionStatus]] = {
    ChainExecutionStatus.PENDING: frozenset({ChainExecutionStatus.RUNNING}),
    ChainExecutionStatus.RUNNING: frozenset(
        {
            ChainExecutionStatus.COMPLETED,
            ChainExecutionStatus.PARTIALLY_COMPLETED,
            ChainExecutionStatus.FAILED,
        }
    ),
    ChainExecutionStatus.FAILED: frozenset({ChainExecutionStatus.COMPENSATING}),
    ChainExecutionStatus.COMPENSATING: frozenset({ChainExecutionStatus.COMPENSATED}),
    ChainExecutionStatus.COMPLETED: frozenset(),
    ChainExecutionStatus.PARTIALLY_COMPLETED: frozenset(),
    ChainExecutionStatus.COMPENSATED: frozenset(),
}

FINAL_STATUSES = frozenset(
    {
        ChainExecutionStatus.COMPLETED,
        ChainExecutionStatus.PARTIALLY_COMPLETED,
        ChainExecutionStatus.COMPENSATED,
    }
)


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def can_transition(current: ChainExecutionStatus, target: ChainExecutionStatus) -> bool:
    """
    Checks a status change against the execution state machine.

    :param current: The status the execution is in
    :type current: ChainExecutionStatus
    :param target: The status requested
    :type target: ChainExecutionStatus
    :returns: True if the edge exists in the transition graph
    :rtype: bool
    """
    return target in ALLOWED_TRANSITIONS[current]


def retry_delay(retry_count: int, base_delay: float, max_delay: float) -> timedelta:
    """
    Exponential backoff for the given retry number (1-based): base, 2*base, 4*base, ...

    :param retry_count: Which retry is being scheduled, starting at 1
    :type retry_count: int
    :param base_delay: Delay in seconds before the first retry
    :type base_delay: float
    :param max_delay: Upper bound in seconds
    :type max_delay: float
    :returns: The delay before the retry becomes due
    :rtype: timedelta
    """
    exponent = max(retry_count - 1, 0)
    seconds = min(base_delay * (2**exponent), max_delay)
    return timedelta(seconds=max(seconds, 0.0))


def validate_definition(definition: "ChainDefinition") -> bool:
    """
    Validates the definition structure and the contents of each step.

    :param definition: The chain definition to validate
    :type definition: ChainDefinition
    :returns: True if the definition is valid
    :rtype: bool
    :raises DefinitionError: If the structure or any step is invalid
    """
    if not definition.name or not definition.name.strip():
        raise DefinitionError("Chain definition has no name")
    if not definition.trigger_event_type:
        raise DefinitionError(f"Chain '{definition.name}' has no trigger event type")
    if not definition.steps:
        raise DefinitionError(f"Chain '{definition.name}' has no steps")
    seen_aliases = set()
    seen_orders = set()
    for step in definition.steps:
        if step.alias in seen_aliases:
            raise DefinitionError(f"Duplicate step alias found: {step.alias}")
        if step.step_order in seen_orders:
            raise DefinitionError(f"Duplicate step order found: {step.step_order}")
        seen_aliases.add(step.alias)
        seen_orders.add(step.step_order)
        step.validate()
    return True
