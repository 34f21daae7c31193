import uuid
from datetime import datetime
from typing import Any

import msgspec
from msgspec import structs

from eventchain.domain.error import DefinitionError, InvalidTransitionError
from eventchain.domain.service import RESERVED_ALIASES, can_transition, utcnow
from eventchain.domain.value_object import (
    ChainCompleted,
    ChainExecutionStatus,
    ChainFailed,
    ChainLifecycleEvent,
    ChainStarted,
    StepExecutionStatus,
)


def new_id() -> str:
    """Generates a unique identifier."""
    return uuid.uuid4().hex


class ChainDefinitionStep(msgspec.Struct, kw_only=True, frozen=True, forbid_unknown_fields=True):
    """One step of a chain. Immutable; a definition replaces its steps wholesale when edited.

    ``input_mappings`` and ``condition_expression`` are kept as strings and only
    resolved when the step is dispatched.
    """

    alias: str
    name: str
    action_type: str
    module: str
    step_order: int
    action_version: str = "1.0"
    input_mappings: str = "{}"
    condition_expression: str | None = None
    is_compensatable: bool = False
    compensation_action_type: str | None = None

    def validate(self) -> None:
        if not self.alias or not isinstance(self.alias, str):
            raise DefinitionError(f"Invalid step alias: {self.alias!r}")
        if not self.alias.isidentifier():
            raise DefinitionError(f"Step alias must be an identifier: {self.alias}")
        if self.alias in RESERVED_ALIASES:
            raise DefinitionError(f"Step alias '{self.alias}' is reserved")
        if not self.action_type or not self.module:
            raise DefinitionError(f"Step {self.alias} must name an action type and module")
        if self.is_compensatable and not self.compensation_action_type:
            raise DefinitionError(f"Compensatable step {self.alias} has no compensation action type")


class ChainDefinition(msgspec.Struct, kw_only=True, forbid_unknown_fields=True):
    """A named, versioned workflow triggered by a domain event."""

    id: str = msgspec.field(default_factory=new_id)
    name: str
    family_id: str
    trigger_event_type: str
    trigger_module: str = ""
    trigger_description: str | None = None
    description: str | None = None
    created_by_user_id: str | None = None
    is_enabled: bool = True
    is_template: bool = False
    template_name: str | None = None
    steps: list[ChainDefinitionStep] = []
    version: int = 1
    created_at: datetime = msgspec.field(default_factory=utcnow)
    updated_at: datetime = msgspec.field(default_factory=utcnow)

    def add_step(self, step: ChainDefinitionStep) -> None:
        """
        Appends a step. The step list is left untouched when the step is rejected.

        :param step: The step to add
        :type step: ChainDefinitionStep
        :raises DefinitionError: If the step is invalid or its alias or order is taken
        """
        step.validate()
        if any(existing.alias == step.alias for existing in self.steps):
            raise DefinitionError(f"Duplicate step alias: {step.alias}")
        if any(existing.step_order == step.step_order for existing in self.steps):
            raise DefinitionError(f"Duplicate step order {step.step_order} for step {step.alias}")
        self.steps.append(step)
        self._touch()

    def clear_steps(self) -> None:
        self.steps.clear()
        self._touch()

    def replace_steps(self, steps: list[ChainDefinitionStep]) -> None:
        """Replaces all steps at once; nothing changes if any step is rejected."""
        candidate = structs.replace(self, steps=[])
        for step in steps:
            candidate.add_step(step)
        self.steps = candidate.steps
        self._touch()

    def enable(self) -> None:
        if not self.is_enabled:
            self.is_enabled = True
            self._touch()

    def disable(self) -> None:
        if self.is_enabled:
            self.is_enabled = False
            self._touch()

    def update_metadata(self, name: str | None = None, description: str | None = None) -> None:
        if name is not None:
            if not name.strip():
                raise DefinitionError("Chain name must not be empty")
            self.name = name
        if description is not None:
            self.description = description
        self._touch()

    def ordered_steps(self) -> list[ChainDefinitionStep]:
        return sorted(self.steps, key=lambda s: s.step_order)

    def step_by_alias(self, alias: str) -> ChainDefinitionStep | None:
        return next((s for s in self.steps if s.alias == alias), None)

    def instantiate(
        self, family_id: str, created_by_user_id: str | None = None, name: str | None = None
    ) -> "ChainDefinition":
        """
        Creates an enabled, family-owned chain from this template.

        :param family_id: The family that will own the new chain
        :type family_id: str
        :param created_by_user_id: The user creating the chain
        :type created_by_user_id: str | None
        :param name: Optional name overriding the template's
        :type name: str | None
        :returns: A new, non-template chain definition
        :rtype: ChainDefinition
        :raises DefinitionError: If this definition is not a template
        """
        if not self.is_template:
            raise DefinitionError(f"Chain '{self.name}' is not a template")
        now = utcnow()
        return ChainDefinition(
            name=name or self.name,
            family_id=family_id,
            trigger_event_type=self.trigger_event_type,
            trigger_module=self.trigger_module,
            trigger_description=self.trigger_description,
            description=self.description,
            created_by_user_id=created_by_user_id,
            is_enabled=True,
            is_template=False,
            template_name=self.template_name,
            steps=list(self.steps),
            created_at=now,
            updated_at=now,
        )

    def _touch(self) -> None:
        self.version += 1
        self.updated_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return msgspec.to_builtins(self)

    def to_json(self) -> str:
        return msgspec.json.encode(self).decode()

    def to_yaml(self) -> str:
        return msgspec.yaml.encode(self).decode()


class StepExecution(msgspec.Struct, kw_only=True):
    """Runtime state of one step. Alias, name and action type are copied from the definition for audit."""

    id: str = msgspec.field(default_factory=new_id)
    chain_execution_id: str
    step_alias: str
    step_name: str
    action_type: str
    step_order: int
    status: StepExecutionStatus = StepExecutionStatus.PENDING
    input_payload: dict[str, Any] | None = None
    output_payload: dict[str, Any] | None = None
    error_message: str | None = None
    retry_count: int = 0
    max_retries: int = 3
    scheduled_at: datetime | None = None
    picked_up_at: datetime | None = None
    started_at: datetime | None = None
    completed_at: datetime | None = None
    compensated_at: datetime | None = None

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def mark_running(self, input_payload: dict[str, Any]) -> None:
        now = utcnow()
        self.status = StepExecutionStatus.RUNNING
        self.input_payload = input_payload
        self.picked_up_at = now
        if self.started_at is None:
            self.started_at = now

    def mark_completed(self, output_payload: dict[str, Any]) -> None:
        self.status = StepExecutionStatus.COMPLETED
        self.output_payload = output_payload
        self.error_message = None
        self.completed_at = utcnow()

    def mark_skipped(self) -> None:
        self.status = StepExecutionStatus.SKIPPED
        self.completed_at = utcnow()

    def mark_retrying(self, error: str, scheduled_at: datetime) -> None:
        self.retry_count += 1
        self.status = StepExecutionStatus.RETRYING
        self.error_message = error
        self.scheduled_at = scheduled_at
        self.picked_up_at = None

    def mark_failed(self, error: str) -> None:
        self.status = StepExecutionStatus.FAILED
        self.error_message = error

    def mark_compensated(self) -> None:
        self.status = StepExecutionStatus.COMPENSATED
        self.compensated_at = utcnow()


class ChainExecution(msgspec.Struct, kw_only=True):
    """One runtime instance of a chain, created per trigger occurrence.

    Owns its step executions. Status changes go through the transition table and
    queue lifecycle events in ``pending_events``; the coordinator drains and
    publishes them only after the execution has been saved.
    """

    id: str = msgspec.field(default_factory=new_id)
    chain_definition_id: str
    family_id: str
    correlation_id: str = msgspec.field(default_factory=new_id)
    status: ChainExecutionStatus = ChainExecutionStatus.PENDING
    trigger_event_type: str
    trigger_event_id: str
    trigger_payload: dict[str, Any] = {}
    context: dict[str, Any] = {}
    current_step_index: int = 0
    started_at: datetime = msgspec.field(default_factory=utcnow)
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    error_message: str | None = None
    failed_step_alias: str | None = None
    step_executions: list[StepExecution] = []
    status_history: list[ChainExecutionStatus] = []
    version: int = 0
    pending_events: list[ChainLifecycleEvent] = []

    @classmethod
    def start(
        cls,
        chain_definition_id: str,
        family_id: str,
        trigger_event_type: str,
        trigger_event_id: str,
        trigger_payload: dict[str, Any],
    ) -> "ChainExecution":
        execution = cls(
            chain_definition_id=chain_definition_id,
            family_id=family_id,
            trigger_event_type=trigger_event_type,
            trigger_event_id=trigger_event_id,
            trigger_payload=trigger_payload,
            status_history=[ChainExecutionStatus.PENDING],
        )
        execution.pending_events.append(
            ChainStarted(
                execution_id=execution.id,
                chain_definition_id=chain_definition_id,
                family_id=family_id,
                correlation_id=execution.correlation_id,
                trigger_event_type=trigger_event_type,
                occurred_at=execution.started_at,
            )
        )
        return execution

    @property
    def is_active(self) -> bool:
        """True while steps may still be dispatched."""
        return self.status in (ChainExecutionStatus.PENDING, ChainExecutionStatus.RUNNING)

    @property
    def is_terminal(self) -> bool:
        """True once no further step will be dispatched, whether or not compensation follows."""
        return not self.is_active

    @property
    def completed_step_count(self) -> int:
        return sum(1 for s in self.step_executions if s.status == StepExecutionStatus.COMPLETED)

    def add_step_execution(self, step_execution: StepExecution) -> None:
        self.step_executions.append(step_execution)

    def step_by_alias(self, alias: str) -> StepExecution | None:
        return next((s for s in self.step_executions if s.step_alias == alias), None)

    def step_by_id(self, step_execution_id: str) -> StepExecution | None:
        return next((s for s in self.step_executions if s.id == step_execution_id), None)

    def current_step(self) -> StepExecution | None:
        if self.current_step_index >= len(self.step_executions):
            return None
        return self.step_executions[self.current_step_index]

    def mark_running(self) -> None:
        self._transition(ChainExecutionStatus.RUNNING)

    def merge_output(self, alias: str, output: dict[str, Any] | None) -> None:
        self.context[alias] = output if output is not None else {}

    def advance_step(self) -> None:
        self.current_step_index += 1

    def mark_completed(self) -> None:
        self._finish(ChainExecutionStatus.COMPLETED)

    def mark_partially_completed(self) -> None:
        self._finish(ChainExecutionStatus.PARTIALLY_COMPLETED)

    def mark_failed(self, error_message: str) -> None:
        self._transition(ChainExecutionStatus.FAILED)
        self.failed_at = utcnow()
        self.error_message = error_message
        failed_step = next((s for s in self.step_executions if s.status == StepExecutionStatus.FAILED), None)
        self.failed_step_alias = failed_step.step_alias if failed_step else None
        self.pending_events.append(
            ChainFailed(
                execution_id=self.id,
                chain_definition_id=self.chain_definition_id,
                family_id=self.family_id,
                correlation_id=self.correlation_id,
                failed_step_alias=self.failed_step_alias or "unknown",
                error_message=error_message,
                occurred_at=self.failed_at,
            )
        )

    def mark_compensating(self) -> None:
        self._transition(ChainExecutionStatus.COMPENSATING)

    def mark_compensated(self) -> None:
        self._transition(ChainExecutionStatus.COMPENSATED)
        self.completed_at = utcnow()

    def record_compensation_failure(self, step_alias: str, error: str) -> None:
        # Execution stays Compensating; resolved by an operator.
        self.error_message = f"Compensation of step '{step_alias}' failed: {error}"

    def drain_events(self) -> list[ChainLifecycleEvent]:
        events = list(self.pending_events)
        self.pending_events.clear()
        return events

    def _finish(self, status: ChainExecutionStatus) -> None:
        self._transition(status)
        self.completed_at = utcnow()
        self.pending_events.append(
            ChainCompleted(
                execution_id=self.id,
                chain_definition_id=self.chain_definition_id,
                family_id=self.family_id,
                correlation_id=self.correlation_id,
                status=status,
                completed_steps=self.completed_step_count,
                total_steps=len(self.step_executions),
                occurred_at=self.completed_at,
            )
        )

    def _transition(self, target: ChainExecutionStatus) -> None:
        if not can_transition(self.status, target):
            raise InvalidTransitionError(self.status.value, target.value)
        self.status = target
        self.status_history.append(target)

    def to_dict(self) -> dict[str, Any]:
        return msgspec.to_builtins(self)

    def to_json(self) -> str:
        return msgspec.json.encode(self).decode()

    def to_yaml(self) -> str:
        return msgspec.yaml.encode(self).decode()


class ChainScheduledJob(msgspec.Struct, kw_only=True):
    """Due-date for (re)dispatching a step. ``picked_up_at`` is None while unclaimed."""

    id: str = msgspec.field(default_factory=new_id)
    step_execution_id: str
    chain_execution_id: str
    scheduled_at: datetime
    picked_up_at: datetime | None = None
    completed_at: datetime | None = None
    failed_at: datetime | None = None
    retry_count: int = 0
    error_message: str | None = None
    created_at: datetime = msgspec.field(default_factory=utcnow)

    @property
    def is_live(self) -> bool:
        return self.completed_at is None and self.failed_at is None


class ChainEntityMapping(msgspec.Struct, kw_only=True, frozen=True):
    """Append-only record of an entity created by a step."""

    id: str = msgspec.field(default_factory=new_id)
    chain_execution_id: str
    step_alias: str
    entity_type: str
    entity_id: str
    module: str
    created_at: datetime = msgspec.field(default_factory=utcnow)
