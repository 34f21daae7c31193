"""
Tests for the step dispatcher.

This module tests StepDispatcher outcomes:
- Skipped, completed, retry scheduled and failed steps
- Classification of handler exceptions
"""

from unittest.mock import Mock

import pytest

from eventchain.application.dispatcher import StepDispatcher
from eventchain.application.port import TaskRunner
from eventchain.application.tracker import EntityMappingTracker
from eventchain.domain.entity import ChainDefinitionStep, ChainExecution, StepExecution
from eventchain.domain.error import PermanentActionError, TransientActionError
from eventchain.domain.port import ActionHandler
from eventchain.domain.value_object import (
    ActionFailure,
    ActionSuccess,
    CreatedEntity,
    DispatchStatus,
    EngineOptions,
    StepExecutionStatus,
)
from eventchain.infrastructure.adapter.in_memory.handler_registry import InMemoryActionHandlerRegistry
from eventchain.infrastructure.adapter.in_memory.repository import InMemoryEntityMappingRepository


class DispatchCreateTask(ActionHandler):
    action_type = "CreateTask"
    module = "tasks"

    def execute(self, payload, cancel):
        return ActionSuccess(output={"task_id": "t-1"})


class TestStepDispatcher:
    """Test cases for StepDispatcher."""

    def setup_method(self):
        """Setup test fixtures."""
        self.task_runner = Mock(spec=TaskRunner)
        self.task_runner.run.return_value = ActionSuccess(
            output={"task_id": "t-1"},
            created_entities=[CreatedEntity("Task", "t-1", "tasks")],
        )

        self.mappings = InMemoryEntityMappingRepository()
        self.options = EngineOptions(max_retries=2, retry_base_delay=10.0, action_timeout=5.0)
        self.tracker = EntityMappingTracker(self.mappings)
        self.dispatcher = StepDispatcher(
            InMemoryActionHandlerRegistry([DispatchCreateTask]),
            self.task_runner,
            self.tracker,
            self.options,
        )
        self.execution = ChainExecution.start("def-1", "fam-1", "Evt", "evt-1", {"title": "Dentist", "urgent": True})
        self.step_execution = StepExecution(
            chain_execution_id=self.execution.id,
            step_alias="create_task",
            step_name="Create task",
            action_type="CreateTask",
            step_order=1,
            max_retries=2,
        )
        self.execution.add_step_execution(self.step_execution)

    def step(self, **kwargs) -> ChainDefinitionStep:
        fields = dict(
            alias="create_task",
            name="Create task",
            action_type="CreateTask",
            module="tasks",
            step_order=1,
            input_mappings='{"title": "${trigger.title}"}',
        )
        fields.update(kwargs)
        return ChainDefinitionStep(**fields)

    def test_success(self):
        """Test a successful dispatch records output and entities."""
        outcome = self.dispatcher.dispatch(self.execution, self.step_execution, self.step())

        assert outcome.status == DispatchStatus.COMPLETED
        assert outcome.output == {"task_id": "t-1"}
        assert self.step_execution.status == StepExecutionStatus.COMPLETED
        assert self.step_execution.input_payload == {"title": "Dentist"}
        handler, payload = self.task_runner.run.call_args.args
        assert isinstance(handler, DispatchCreateTask)
        assert payload == {"title": "Dentist"}
        assert self.task_runner.run.call_args.kwargs == {"timeout": 5.0}
        [mapping] = self.mappings.for_execution(self.execution.id)
        assert (mapping.step_alias, mapping.entity_type, mapping.entity_id) == ("create_task", "Task", "t-1")

    def test_condition_false_skips_without_invoking(self):
        """Test that a false condition skips the step and never calls the handler."""
        outcome = self.dispatcher.dispatch(
            self.execution, self.step_execution, self.step(condition_expression="not ${trigger.urgent}")
        )

        assert outcome.status == DispatchStatus.SKIPPED
        assert self.step_execution.status == StepExecutionStatus.SKIPPED
        self.task_runner.run.assert_not_called()

    def test_retryable_failure_schedules_retry(self):
        """Test that a retryable failure returns its backoff due time."""
        self.task_runner.run.return_value = ActionFailure(error="rate limited", is_retryable=True)

        outcome = self.dispatcher.dispatch(self.execution, self.step_execution, self.step())

        assert outcome.status == DispatchStatus.RETRY_SCHEDULED
        assert self.step_execution.status == StepExecutionStatus.RETRYING
        assert self.step_execution.retry_count == 1
        assert self.step_execution.error_message == "rate limited"
        assert self.step_execution.scheduled_at == outcome.retry_at
        assert (outcome.retry_at - self.step_execution.started_at).total_seconds() >= 9

    def test_retryable_failure_with_exhausted_budget_fails(self):
        """Test that retries stop at max_retries."""
        self.task_runner.run.return_value = ActionFailure(error="rate limited", is_retryable=True)
        self.step_execution.retry_count = 2

        outcome = self.dispatcher.dispatch(self.execution, self.step_execution, self.step())

        assert outcome.status == DispatchStatus.FAILED
        assert self.step_execution.status == StepExecutionStatus.FAILED
        assert outcome.retry_at is None

    def test_non_retryable_failure(self):
        """Test that a permanent failure fails immediately."""
        self.task_runner.run.return_value = ActionFailure(error="invalid title")

        outcome = self.dispatcher.dispatch(self.execution, self.step_execution, self.step())

        assert outcome.status == DispatchStatus.FAILED
        assert outcome.error == "invalid title"
        assert self.step_execution.retry_count == 0

    def test_missing_handler_is_terminal(self):
        """Test that an unknown action key fails without retry."""
        outcome = self.dispatcher.dispatch(
            self.execution, self.step_execution, self.step(action_type="Unknown")
        )

        assert outcome.status == DispatchStatus.FAILED
        assert "tasks:Unknown@1.0" in outcome.error
        self.task_runner.run.assert_not_called()

    def test_expression_error_is_terminal(self):
        """Test that an unresolvable input mapping fails without retry."""
        outcome = self.dispatcher.dispatch(
            self.execution, self.step_execution, self.step(input_mappings='{"x": "${nope.field}"}')
        )

        assert outcome.status == DispatchStatus.FAILED
        assert outcome.error.startswith("Expression error")
        self.task_runner.run.assert_not_called()

    @pytest.mark.parametrize(
        "error,expected",
        [
            (TimeoutError("slow"), DispatchStatus.RETRY_SCHEDULED),
            (TransientActionError("busy"), DispatchStatus.RETRY_SCHEDULED),
            (RuntimeError("surprise"), DispatchStatus.RETRY_SCHEDULED),
            (PermanentActionError("bad input"), DispatchStatus.FAILED),
        ],
    )
    def test_handler_exceptions_are_classified(self, error, expected):
        """Test that exceptions never escape and are classified."""
        self.task_runner.run.side_effect = error

        outcome = self.dispatcher.dispatch(self.execution, self.step_execution, self.step())

        assert outcome.status == expected

    def test_plain_dict_result_is_success(self):
        """Test that a handler returning a dict counts as success."""
        self.task_runner.run.return_value = {"ok": True}

        outcome = self.dispatcher.dispatch(self.execution, self.step_execution, self.step())

        assert outcome.status == DispatchStatus.COMPLETED
        assert self.step_execution.output_payload == {"ok": True}
