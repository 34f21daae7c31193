from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import msgspec


@dataclass
class EngineOptions:
    max_retries: int = 3
    retry_base_delay: float = 1.0
    retry_max_delay: float = 300.0
    action_timeout: float | None = None
    poll_interval: float = 1.0
    poll_batch_size: int = 50
    claim_timeout: float = 300.0


class ChainExecutionStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    COMPLETED = "Completed"
    PARTIALLY_COMPLETED = "PartiallyCompleted"
    FAILED = "Failed"
    COMPENSATING = "Compensating"
    COMPENSATED = "Compensated"


class StepExecutionStatus(str, Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    RETRYING = "Retrying"
    COMPLETED = "Completed"
    SKIPPED = "Skipped"
    FAILED = "Failed"
    COMPENSATED = "Compensated"


class DispatchStatus(str, Enum):
    COMPLETED = "completed"
    SKIPPED = "skipped"
    RETRY_SCHEDULED = "retry_scheduled"
    FAILED = "failed"
    STALE = "stale"


class ActionKey(msgspec.Struct, frozen=True):
    """Composite key a handler is registered under."""

    action_type: str
    module: str
    action_version: str = "1.0"

    def __str__(self) -> str:
        return f"{self.module}:{self.action_type}@{self.action_version}"


class CreatedEntity(msgspec.Struct, frozen=True):
    """An entity an action handler reports having created."""

    entity_type: str
    entity_id: str
    module: str


class ActionSuccess(msgspec.Struct, tag="success", forbid_unknown_fields=True):
    output: dict[str, Any] = {}
    created_entities: list[CreatedEntity] = []


class ActionFailure(msgspec.Struct, tag="failure", forbid_unknown_fields=True):
    error: str
    is_retryable: bool = False


ActionResult = ActionSuccess | ActionFailure


class ActionDescriptor(msgspec.Struct, frozen=True):
    """Catalog entry describing a registered action handler."""

    action_type: str
    module: str
    version: str
    name: str
    description: str = ""
    is_compensatable: bool = False
    compatible_triggers: tuple[str, ...] = ()

    def is_compatible_with(self, event_type: str) -> bool:
        """An action that names no triggers can follow any of them."""
        return not self.compatible_triggers or event_type in self.compatible_triggers


class TriggerDescriptor(msgspec.Struct, frozen=True):
    """Catalog entry describing a domain event that chains can listen for."""

    event_type: str
    module: str = ""
    name: str = ""
    description: str = ""


class DispatchOutcome(msgspec.Struct):
    """Typed result the dispatcher hands back to the coordinator."""

    status: DispatchStatus
    step_alias: str
    output: dict[str, Any] | None = None
    error: str | None = None
    retry_at: datetime | None = None


class CompensationOutcome(msgspec.Struct):
    """Result of a reverse walk over completed steps."""

    compensated: list[str]
    failed_step_alias: str | None = None
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


class ChainStarted(msgspec.Struct, tag="chain_started"):
    execution_id: str
    chain_definition_id: str
    family_id: str
    correlation_id: str
    trigger_event_type: str
    occurred_at: datetime


class ChainCompleted(msgspec.Struct, tag="chain_completed"):
    execution_id: str
    chain_definition_id: str
    family_id: str
    correlation_id: str
    status: ChainExecutionStatus
    completed_steps: int
    total_steps: int
    occurred_at: datetime


class ChainFailed(msgspec.Struct, tag="chain_failed"):
    execution_id: str
    chain_definition_id: str
    family_id: str
    correlation_id: str
    failed_step_alias: str
    error_message: str
    occurred_at: datetime


ChainLifecycleEvent = ChainStarted | ChainCompleted | ChainFailed
