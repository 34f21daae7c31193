from abc import ABC, abstractmethod
from collections.abc import Callable
from datetime import datetime
from typing import Any

from eventchain.domain.entity import (
    ChainDefinition,
    ChainEntityMapping,
    ChainExecution,
    ChainScheduledJob,
)
from eventchain.domain.port import ActionHandler
from eventchain.domain.value_object import (
    ActionDescriptor,
    ActionKey,
    ActionResult,
    ChainExecutionStatus,
    ChainLifecycleEvent,
    DispatchOutcome,
    TriggerDescriptor,
)


class ChainDefinitionRepository(ABC):
    """Abstract persistence interface for chain definitions."""

    @abstractmethod
    def add(self, definition: ChainDefinition) -> None:
        """
        Store a new definition.

        :param definition: The definition to store
        :type definition: ChainDefinition
        """

    @abstractmethod
    def update(self, definition: ChainDefinition) -> None:
        """
        Overwrite a stored definition.

        :param definition: The definition to store
        :type definition: ChainDefinition
        :raises KeyError: If the definition was never added
        """

    @abstractmethod
    def get(self, definition_id: str) -> ChainDefinition:
        """
        Retrieve a definition by id.

        :param definition_id: The definition identifier
        :type definition_id: str
        :returns: A copy of the stored definition
        :rtype: ChainDefinition
        :raises KeyError: If the definition is not found
        """

    @abstractmethod
    def find(self, family_id: str | None = None, is_enabled: bool | None = None) -> list[ChainDefinition]:
        """
        List definitions, optionally filtered by family and enabled flag.

        :param family_id: Only return definitions owned by this family
        :type family_id: str | None
        :param is_enabled: Only return enabled (True) or disabled (False) definitions
        :type is_enabled: bool | None
        :returns: Matching definitions
        :rtype: list[ChainDefinition]
        """

    @abstractmethod
    def find_enabled_by_trigger(self, event_type: str, module: str | None = None) -> list[ChainDefinition]:
        """
        Find enabled, non-template definitions triggered by the given event.

        :param event_type: The trigger event type
        :type event_type: str
        :param module: The originating module; None matches any module
        :type module: str | None
        :returns: Matching definitions
        :rtype: list[ChainDefinition]
        """


class ChainExecutionRepository(ABC):
    """Abstract persistence interface for executions and their step executions.

    Writes are guarded by the execution's ``version``: ``update`` rejects a stale
    copy with ConcurrencyError and bumps the version on success.
    """

    @abstractmethod
    def add(self, execution: ChainExecution) -> None:
        """
        Store a new execution.

        :param execution: The execution to store
        :type execution: ChainExecution
        """

    @abstractmethod
    def update(self, execution: ChainExecution) -> None:
        """
        Store changes to an execution if nobody else has written it since it was read.

        :param execution: The execution to store; its version is incremented
        :type execution: ChainExecution
        :raises ConcurrencyError: If the stored version differs
        :raises KeyError: If the execution was never added
        """

    @abstractmethod
    def get(self, execution_id: str) -> ChainExecution:
        """
        Retrieve an execution by id.

        :param execution_id: The execution identifier
        :type execution_id: str
        :returns: A copy of the stored execution
        :rtype: ChainExecution
        :raises KeyError: If the execution is not found
        """

    @abstractmethod
    def get_by_step(self, step_execution_id: str) -> ChainExecution:
        """
        Retrieve the execution owning a step execution.

        :param step_execution_id: The step execution identifier
        :type step_execution_id: str
        :returns: A copy of the owning execution
        :rtype: ChainExecution
        :raises KeyError: If no execution owns the step
        """

    @abstractmethod
    def find(
        self,
        definition_id: str | None = None,
        family_id: str | None = None,
        status: ChainExecutionStatus | None = None,
    ) -> list[ChainExecution]:
        """
        List executions, most recent first.

        :returns: Matching executions
        :rtype: list[ChainExecution]
        """


class ScheduledJobRepository(ABC):
    """Abstract persistence interface for retry due-dates."""

    @abstractmethod
    def add(self, job: ChainScheduledJob) -> None: ...

    @abstractmethod
    def update(self, job: ChainScheduledJob) -> None: ...

    @abstractmethod
    def get(self, job_id: str) -> ChainScheduledJob: ...

    @abstractmethod
    def live_for_step(self, step_execution_id: str) -> ChainScheduledJob | None:
        """
        Find the job that has neither completed nor failed for a step.

        :param step_execution_id: The step execution identifier
        :type step_execution_id: str
        :returns: The live job, if any
        :rtype: ChainScheduledJob | None
        """

    @abstractmethod
    def due(self, now: datetime, limit: int) -> list[ChainScheduledJob]:
        """
        Live, unclaimed jobs with ``scheduled_at <= now``, oldest first.

        :param now: The reference time
        :type now: datetime
        :param limit: Maximum number of jobs to return
        :type limit: int
        :returns: Due jobs
        :rtype: list[ChainScheduledJob]
        """

    @abstractmethod
    def claim(self, job_id: str, now: datetime) -> bool:
        """
        Atomically mark a job as picked up if it is still unclaimed and live.

        :param job_id: The job identifier
        :type job_id: str
        :param now: The pickup time
        :type now: datetime
        :returns: True only for the single caller that won the claim
        :rtype: bool
        """

    @abstractmethod
    def claimed_before(self, cutoff: datetime) -> list[ChainScheduledJob]:
        """Live jobs whose claim is older than ``cutoff``."""

    @abstractmethod
    def list_for_execution(self, execution_id: str) -> list[ChainScheduledJob]: ...


class EntityMappingRepository(ABC):
    """Append-only store of entities created by steps."""

    @abstractmethod
    def add(self, mapping: ChainEntityMapping) -> None: ...

    @abstractmethod
    def for_execution(self, execution_id: str) -> list[ChainEntityMapping]: ...

    @abstractmethod
    def find_by_entity(self, entity_id: str, entity_type: str | None = None) -> list[ChainEntityMapping]: ...


class ActionHandlerRegistry(ABC):
    """Abstract base class defining action handler resolution interface."""

    @abstractmethod
    def register(self, handler: type[ActionHandler]) -> None:
        """
        Register a handler class under its ActionKey.

        :param handler: The handler class
        :type handler: type[ActionHandler]
        """

    @abstractmethod
    def resolve(self, key: ActionKey) -> ActionHandler:
        """
        Resolves and returns a handler instance for the key.

        :param key: The composite action key
        :type key: ActionKey
        :returns: The resolved handler instance
        :rtype: ActionHandler
        :raises HandlerNotFoundError: If no handler is registered for the key
        """

    @abstractmethod
    def catalog(self, compatible_with_trigger: str | None = None) -> list[ActionDescriptor]:
        """
        Descriptors of registered handlers.

        :param compatible_with_trigger: Only handlers usable after this event type
        :type compatible_with_trigger: str | None
        :returns: The matching descriptors
        :rtype: list[ActionDescriptor]
        """


class TriggerRegistry(ABC):
    """Abstract interface for the catalog of events chains can listen for."""

    @abstractmethod
    def register(self, trigger: TriggerDescriptor) -> None:
        """
        Add or replace a trigger, keyed by module and event type.

        :param trigger: The trigger to list
        :type trigger: TriggerDescriptor
        """

    @abstractmethod
    def catalog(self) -> list[TriggerDescriptor]:
        """Descriptors of all registered triggers."""


class TaskRunner(ABC):
    """Abstract interface for invoking action handlers."""

    @abstractmethod
    def run(self, handler: ActionHandler, payload: dict[str, Any], timeout: float | None = None) -> ActionResult:
        """
        Run a handler with a resolved payload.

        :param handler: The handler to run
        :type handler: ActionHandler
        :param payload: The resolved input payload
        :type payload: dict[str, Any]
        :param timeout: Seconds to wait before giving up; None waits indefinitely
        :type timeout: float | None
        :returns: The handler's result
        :rtype: ActionResult
        :raises TimeoutError: If the handler does not finish in time
        """


class NotificationPublisher(ABC):
    """Abstract interface for delivering lifecycle notifications."""

    @abstractmethod
    def publish(self, event: ChainLifecycleEvent) -> None:
        """
        Deliver a lifecycle event.

        :param event: The event to deliver
        :type event: ChainLifecycleEvent
        """

    @abstractmethod
    def subscribe(self, callback: Callable[[ChainLifecycleEvent], None]) -> None:
        """
        Register a callback invoked for every published event.

        :param callback: Receives each event after it is published
        :type callback: Callable[[ChainLifecycleEvent], None]
        """


class PlaceholderResolver(ABC):
    """Abstract interface for resolving placeholders in values."""

    @abstractmethod
    def resolve_any(self, value: Any) -> Any:
        """
        Resolve placeholders in any value type.

        :param value: The value that may contain placeholders
        :type value: Any
        :returns: The value with placeholders resolved
        :rtype: Any
        """


class StepResumer(ABC):
    """Something that can re-dispatch a step whose retry has come due."""

    @abstractmethod
    def resume_step(self, step_execution_id: str) -> DispatchOutcome:
        """
        Re-dispatch a retrying step and continue its chain.

        :param step_execution_id: The step execution identifier
        :type step_execution_id: str
        :returns: The outcome of the re-dispatched step
        :rtype: DispatchOutcome
        """
