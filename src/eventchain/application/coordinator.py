"""
Drives chain executions through their lifecycle.

The coordinator is the only writer of executions. Every state-changing call for
one execution id runs under that id's lock, and every write goes through the
repository's optimistic version check. Lifecycle notifications queued on the
execution are published only after the write that produced them succeeded.
"""

import logging
import threading
import weakref
from contextlib import contextmanager
from typing import Any

from eventchain.application.compensation import CompensationCoordinator
from eventchain.application.dispatcher import StepDispatcher
from eventchain.application.port import (
    ChainDefinitionRepository,
    ChainExecutionRepository,
    NotificationPublisher,
    StepResumer,
)
from eventchain.application.scheduler import RetryScheduler
from eventchain.domain.entity import ChainDefinition, ChainExecution, StepExecution
from eventchain.domain.error import DefinitionError
from eventchain.domain.service import validate_definition
from eventchain.domain.value_object import (
    ChainExecutionStatus,
    DispatchOutcome,
    DispatchStatus,
    EngineOptions,
    StepExecutionStatus,
)

logger = logging.getLogger("eventchain.coordinator")

_FINISHED_STEP = (StepExecutionStatus.COMPLETED, StepExecutionStatus.SKIPPED)


class ExecutionLocks:
    """In-process lock per execution id. Locks are dropped once nobody holds a reference."""

    def __init__(self):
        self._guard = threading.Lock()
        self._locks: weakref.WeakValueDictionary[str, Any] = weakref.WeakValueDictionary()

    def get(self, execution_id: str):
        with self._guard:
            lock = self._locks.get(execution_id)
            if lock is None:
                lock = threading.RLock()
                self._locks[execution_id] = lock
            return lock

    @contextmanager
    def hold(self, execution_id: str):
        lock = self.get(execution_id)
        with lock:
            yield


class ExecutionCoordinator(StepResumer):
    """Starts executions, drives their steps in order and settles their final status."""

    def __init__(
        self,
        definitions: ChainDefinitionRepository,
        executions: ChainExecutionRepository,
        dispatcher: StepDispatcher,
        compensation: CompensationCoordinator,
        scheduler: RetryScheduler,
        publisher: NotificationPublisher,
        options: EngineOptions | None = None,
        locks: ExecutionLocks | None = None,
    ):
        self.definitions = definitions
        self.executions = executions
        self.dispatcher = dispatcher
        self.compensation = compensation
        self.scheduler = scheduler
        self.publisher = publisher
        self.options = options if options is not None else EngineOptions()
        self.locks = locks if locks is not None else ExecutionLocks()

    def start(
        self,
        definition: ChainDefinition,
        family_id: str,
        trigger_event_type: str,
        trigger_event_id: str,
        trigger_payload: dict[str, Any],
    ) -> ChainExecution:
        """
        Creates a Pending execution with one Pending step execution per step.

        :param definition: The chain to start
        :type definition: ChainDefinition
        :param family_id: The family the execution runs for
        :type family_id: str
        :param trigger_event_type: Type of the event that triggered the chain
        :type trigger_event_type: str
        :param trigger_event_id: Identifier of the triggering event
        :type trigger_event_id: str
        :param trigger_payload: Payload of the triggering event
        :type trigger_payload: dict[str, Any]
        :returns: The stored execution
        :rtype: ChainExecution
        :raises DefinitionError: If the definition is disabled, a template, or invalid
        """
        if not definition.is_enabled:
            raise DefinitionError(f"Chain '{definition.name}' is disabled")
        if definition.is_template:
            raise DefinitionError(f"Chain '{definition.name}' is a template and cannot be started")
        validate_definition(definition)

        execution = ChainExecution.start(
            chain_definition_id=definition.id,
            family_id=family_id,
            trigger_event_type=trigger_event_type,
            trigger_event_id=trigger_event_id,
            trigger_payload=trigger_payload,
        )
        for step in definition.ordered_steps():
            execution.add_step_execution(
                StepExecution(
                    chain_execution_id=execution.id,
                    step_alias=step.alias,
                    step_name=step.name,
                    action_type=step.action_type,
                    step_order=step.step_order,
                    max_retries=self.options.max_retries,
                )
            )
        self.executions.add(execution)
        logger.info(
            "Started execution %s of chain %s (%d steps)",
            execution.id,
            definition.name,
            len(execution.step_executions),
            extra=self._extra(execution),
        )
        self._publish(execution)
        return execution

    def run(self, execution_id: str) -> ChainExecution:
        """
        Drives an execution until it waits for a retry or stops being active.

        :param execution_id: The execution identifier
        :type execution_id: str
        :returns: The execution as last stored
        :rtype: ChainExecution
        """
        with self.locks.hold(execution_id):
            execution = self.executions.get(execution_id)
            definition = self.definitions.get(execution.chain_definition_id)
            if execution.status == ChainExecutionStatus.PENDING:
                execution.mark_running()
                self._save(execution)
            return self._drive(execution, definition)

    def advance(self, execution: ChainExecution) -> ChainExecution:
        """
        Moves past the current step once it has Completed or been Skipped.

        Calling it on an execution that is no longer active, or whose current
        step has not finished, changes nothing.

        :param execution: The execution to advance
        :type execution: ChainExecution
        :returns: The execution
        :rtype: ChainExecution
        """
        with self.locks.hold(execution.id):
            if self._advance(execution):
                self._save(execution)
            return execution

    def fail(self, execution: ChainExecution, reason: str) -> ChainExecution:
        """
        Fails a running execution and compensates completed steps if any can be compensated.

        :param execution: The execution to fail
        :type execution: ChainExecution
        :param reason: The error that ends the execution
        :type reason: str
        :returns: The execution
        :rtype: ChainExecution
        """
        with self.locks.hold(execution.id):
            definition = self.definitions.get(execution.chain_definition_id)
            self._fail(execution, definition, reason)
            return execution

    def resume_step(self, step_execution_id: str) -> DispatchOutcome:
        """
        Re-dispatches a step whose retry came due and continues its chain.

        :param step_execution_id: The step execution identifier
        :type step_execution_id: str
        :returns: The outcome of the re-dispatch; STALE if the step no longer waits for a retry
        :rtype: DispatchOutcome
        :raises KeyError: If no execution owns the step
        """
        execution_id = self.executions.get_by_step(step_execution_id).id
        with self.locks.hold(execution_id):
            execution = self.executions.get(execution_id)
            step_execution = execution.step_by_id(step_execution_id)
            current = execution.current_step()
            if (
                not execution.is_active
                or step_execution.status != StepExecutionStatus.RETRYING
                or current is None
                or current.id != step_execution.id
            ):
                logger.info(
                    "Ignoring stale retry of step %s (execution %s, step %s)",
                    step_execution.step_alias,
                    execution.status.value,
                    step_execution.status.value,
                    extra=self._extra(execution),
                )
                return DispatchOutcome(status=DispatchStatus.STALE, step_alias=step_execution.step_alias)

            definition = self.definitions.get(execution.chain_definition_id)
            outcome = self._dispatch(execution, definition, step_execution)
            if outcome.status in (DispatchStatus.COMPLETED, DispatchStatus.SKIPPED):
                self._drive(execution, definition)
            return outcome

    def _drive(self, execution: ChainExecution, definition: ChainDefinition) -> ChainExecution:
        while execution.is_active:
            step_execution = execution.current_step()
            if step_execution is None:
                self._finalize(execution)
                self._save(execution)
                break
            if step_execution.status == StepExecutionStatus.RETRYING:
                break
            if step_execution.status in _FINISHED_STEP:
                self.advance(execution)
                continue
            self._dispatch(execution, definition, step_execution)
        return execution

    def _dispatch(
        self, execution: ChainExecution, definition: ChainDefinition, step_execution: StepExecution
    ) -> DispatchOutcome:
        step_definition = definition.step_by_alias(step_execution.step_alias)
        if step_definition is None:
            error = f"Step '{step_execution.step_alias}' no longer exists in chain '{definition.name}'"
            step_execution.mark_failed(error)
            outcome = DispatchOutcome(status=DispatchStatus.FAILED, step_alias=step_execution.step_alias, error=error)
        else:
            outcome = self.dispatcher.dispatch(execution, step_execution, step_definition)

        if outcome.status in (DispatchStatus.COMPLETED, DispatchStatus.SKIPPED):
            self._advance(execution)
            self._save(execution)
        elif outcome.status == DispatchStatus.RETRY_SCHEDULED:
            # the job must not be claimable before the Retrying step is stored
            self._save(execution)
            self.scheduler.schedule(step_execution.id, execution.id, outcome.retry_at)
        else:
            self._fail(execution, definition, f"Step '{outcome.step_alias}' failed: {outcome.error}")
        return outcome

    def _advance(self, execution: ChainExecution) -> bool:
        if not execution.is_active:
            return False
        step_execution = execution.current_step()
        if step_execution is None or step_execution.status not in _FINISHED_STEP:
            return False
        if step_execution.status == StepExecutionStatus.COMPLETED:
            execution.merge_output(step_execution.step_alias, step_execution.output_payload)
        execution.advance_step()
        if execution.current_step() is None:
            self._finalize(execution)
        return True

    def _finalize(self, execution: ChainExecution) -> None:
        if all(s.status == StepExecutionStatus.COMPLETED for s in execution.step_executions):
            execution.mark_completed()
        else:
            execution.mark_partially_completed()
        logger.info(
            "Execution %s finished %s (%d/%d steps completed)",
            execution.id,
            execution.status.value,
            execution.completed_step_count,
            len(execution.step_executions),
            extra=self._extra(execution),
        )

    def _fail(self, execution: ChainExecution, definition: ChainDefinition, reason: str) -> None:
        execution.mark_failed(reason)
        logger.error("Execution %s failed: %s", execution.id, reason, extra=self._extra(execution))
        self._save(execution)
        if self.compensation.compensable_steps(execution, definition):
            self.compensation.compensate(execution, definition)
            self._save(execution)

    def _save(self, execution: ChainExecution) -> None:
        self.executions.update(execution)
        self._publish(execution)

    def _publish(self, execution: ChainExecution) -> None:
        for event in execution.drain_events():
            try:
                self.publisher.publish(event)
            except Exception:
                logger.exception(
                    "Failed to publish %s for execution %s",
                    type(event).__name__,
                    execution.id,
                    extra=self._extra(execution),
                )

    @staticmethod
    def _extra(execution: ChainExecution) -> dict:
        return {"structured": {"correlation_id": execution.correlation_id, "execution_id": execution.id}}
