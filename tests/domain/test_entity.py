"""
Tests for domain entities.

This module tests the entity classes including:
- ChainDefinition and ChainDefinitionStep authoring rules
- ChainExecution status changes and lifecycle events
- StepExecution state changes
- ChainScheduledJob liveness
"""

from datetime import timedelta

import msgspec
import pytest

from eventchain.domain.entity import (
    ChainDefinition,
    ChainDefinitionStep,
    ChainExecution,
    ChainScheduledJob,
    StepExecution,
)
from eventchain.domain.error import DefinitionError, InvalidTransitionError
from eventchain.domain.service import utcnow
from eventchain.domain.value_object import (
    ChainCompleted,
    ChainExecutionStatus,
    ChainFailed,
    ChainStarted,
    StepExecutionStatus,
)


def make_step(alias: str, order: int, **kwargs) -> ChainDefinitionStep:
    return ChainDefinitionStep(
        alias=alias,
        name=alias.title(),
        action_type=kwargs.pop("action_type", "CreateTask"),
        module=kwargs.pop("module", "tasks"),
        step_order=order,
        **kwargs,
    )


def make_execution(aliases=("first", "second")) -> ChainExecution:
    execution = ChainExecution.start(
        chain_definition_id="def-1",
        family_id="fam-1",
        trigger_event_type="CalendarEventCreated",
        trigger_event_id="evt-1",
        trigger_payload={"title": "Dentist"},
    )
    for order, alias in enumerate(aliases, start=1):
        execution.add_step_execution(
            StepExecution(
                chain_execution_id=execution.id,
                step_alias=alias,
                step_name=alias.title(),
                action_type="CreateTask",
                step_order=order,
            )
        )
    return execution


class TestChainDefinitionStep:
    """Test cases for ChainDefinitionStep validation."""

    def test_valid_step(self):
        """Test that a well-formed step validates."""
        make_step("create_task", 1).validate()

    @pytest.mark.parametrize("alias", ["trigger", "entities"])
    def test_reserved_alias_rejected(self, alias):
        """Test that aliases colliding with placeholder roots are rejected."""
        with pytest.raises(DefinitionError, match="reserved"):
            make_step(alias, 1).validate()

    def test_non_identifier_alias_rejected(self):
        """Test that aliases must be usable inside placeholder paths."""
        with pytest.raises(DefinitionError, match="identifier"):
            make_step("send-reminder", 1).validate()

    def test_compensatable_step_requires_compensation_action(self):
        """Test that a compensatable step must name its undo action."""
        with pytest.raises(DefinitionError, match="no compensation action type"):
            make_step("create_task", 1, is_compensatable=True).validate()

    def test_step_is_frozen(self):
        """Test that steps cannot be mutated after creation."""
        step = make_step("create_task", 1)
        with pytest.raises(AttributeError):
            step.alias = "other"


class TestChainDefinition:
    """Test cases for ChainDefinition."""

    def setup_method(self):
        """Setup test fixtures."""
        self.definition = ChainDefinition(
            name="Appointment follow-up",
            family_id="fam-1",
            trigger_event_type="CalendarEventCreated",
            trigger_module="calendar",
        )

    def test_add_step(self):
        """Test adding steps bumps the version."""
        version = self.definition.version
        self.definition.add_step(make_step("create_task", 1))

        assert [s.alias for s in self.definition.steps] == ["create_task"]
        assert self.definition.version == version + 1

    def test_duplicate_alias_rejected_and_steps_unchanged(self):
        """Test that a duplicate alias raises and leaves the step list as it was."""
        self.definition.add_step(make_step("create_task", 1))

        with pytest.raises(DefinitionError, match="Duplicate step alias"):
            self.definition.add_step(make_step("create_task", 2))

        assert len(self.definition.steps) == 1
        assert self.definition.steps[0].step_order == 1

    def test_duplicate_order_rejected(self):
        """Test that two steps cannot share a position."""
        self.definition.add_step(make_step("create_task", 1))

        with pytest.raises(DefinitionError, match="Duplicate step order"):
            self.definition.add_step(make_step("notify", 1))

        assert len(self.definition.steps) == 1

    def test_ordered_steps(self):
        """Test that steps are returned by step order, not insertion order."""
        self.definition.add_step(make_step("notify", 2))
        self.definition.add_step(make_step("create_task", 1))

        assert [s.alias for s in self.definition.ordered_steps()] == ["create_task", "notify"]

    def test_replace_steps_is_all_or_nothing(self):
        """Test that an invalid replacement leaves the original steps in place."""
        self.definition.add_step(make_step("create_task", 1))

        with pytest.raises(DefinitionError):
            self.definition.replace_steps([make_step("a", 1), make_step("a", 2)])

        assert [s.alias for s in self.definition.steps] == ["create_task"]

        self.definition.replace_steps([make_step("a", 1), make_step("b", 2)])
        assert [s.alias for s in self.definition.steps] == ["a", "b"]

    def test_enable_disable(self):
        """Test toggling the enabled flag."""
        version = self.definition.version
        self.definition.disable()
        assert not self.definition.is_enabled
        self.definition.enable()
        assert self.definition.is_enabled
        assert self.definition.version == version + 2

    def test_update_metadata_rejects_blank_name(self):
        """Test that a chain cannot be renamed to an empty name."""
        with pytest.raises(DefinitionError):
            self.definition.update_metadata(name="  ")

    def test_instantiate_template(self):
        """Test creating a family chain from a template."""
        template = ChainDefinition(
            name="Welcome new member",
            family_id="system",
            trigger_event_type="MemberJoined",
            is_template=True,
            is_enabled=False,
            template_name="welcome",
            steps=[make_step("create_task", 1)],
        )

        chain = template.instantiate("fam-9", created_by_user_id="user-1")

        assert chain.id != template.id
        assert chain.family_id == "fam-9"
        assert chain.is_enabled
        assert not chain.is_template
        assert chain.template_name == "welcome"
        assert chain.steps == template.steps

    def test_instantiate_requires_template(self):
        """Test that only templates can be instantiated."""
        with pytest.raises(DefinitionError, match="not a template"):
            self.definition.instantiate("fam-2")

    def test_serialization(self):
        """Test the dict and JSON views of a definition."""
        self.definition.add_step(make_step("create_task", 1))

        as_dict = self.definition.to_dict()
        assert as_dict["steps"][0]["alias"] == "create_task"
        decoded = msgspec.json.decode(self.definition.to_json(), type=ChainDefinition)
        assert decoded.steps == self.definition.steps


class TestStepExecution:
    """Test cases for StepExecution."""

    def setup_method(self):
        """Setup test fixtures."""
        self.step = StepExecution(
            chain_execution_id="exec-1",
            step_alias="create_task",
            step_name="Create task",
            action_type="CreateTask",
            step_order=1,
        )

    def test_defaults(self):
        """Test a fresh step execution."""
        assert self.step.status == StepExecutionStatus.PENDING
        assert self.step.retry_count == 0
        assert self.step.max_retries == 3
        assert self.step.can_retry

    def test_mark_running_then_completed(self):
        """Test the happy path of a step."""
        self.step.mark_running({"title": "x"})
        started = self.step.started_at
        self.step.mark_completed({"task_id": "t-1"})

        assert self.step.status == StepExecutionStatus.COMPLETED
        assert self.step.input_payload == {"title": "x"}
        assert self.step.output_payload == {"task_id": "t-1"}
        assert self.step.started_at == started
        assert self.step.completed_at is not None

    def test_mark_retrying(self):
        """Test that a retry increments the count and releases the pickup."""
        due = utcnow() + timedelta(seconds=2)
        self.step.mark_running({})
        self.step.mark_retrying("rate limited", due)

        assert self.step.status == StepExecutionStatus.RETRYING
        assert self.step.retry_count == 1
        assert self.step.scheduled_at == due
        assert self.step.picked_up_at is None
        assert self.step.error_message == "rate limited"

    def test_can_retry_exhausted(self):
        """Test that can_retry turns false once the budget is spent."""
        for _ in range(3):
            self.step.mark_retrying("boom", utcnow())
        assert not self.step.can_retry


class TestChainExecution:
    """Test cases for ChainExecution."""

    def test_start_queues_started_event(self):
        """Test that a new execution is Pending and announces itself."""
        execution = make_execution()

        assert execution.status == ChainExecutionStatus.PENDING
        assert execution.status_history == [ChainExecutionStatus.PENDING]
        assert execution.is_active
        assert len(execution.pending_events) == 1
        event = execution.pending_events[0]
        assert isinstance(event, ChainStarted)
        assert event.correlation_id == execution.correlation_id

    def test_illegal_transition(self):
        """Test that skipping Running is rejected."""
        execution = make_execution()

        with pytest.raises(InvalidTransitionError, match="Pending -> Completed"):
            execution.mark_completed()
        assert execution.status == ChainExecutionStatus.PENDING

    def test_complete(self):
        """Test finishing an execution with all steps completed."""
        execution = make_execution()
        execution.drain_events()
        execution.mark_running()
        for step in execution.step_executions:
            step.mark_completed({})
        execution.mark_completed()

        assert execution.status == ChainExecutionStatus.COMPLETED
        assert execution.is_terminal
        assert execution.completed_at is not None
        [event] = execution.drain_events()
        assert isinstance(event, ChainCompleted)
        assert event.completed_steps == 2
        assert event.total_steps == 2
        assert execution.pending_events == []

    def test_mark_failed_records_failing_step(self):
        """Test that failure records the first failed step's alias."""
        execution = make_execution()
        execution.drain_events()
        execution.mark_running()
        execution.step_executions[0].mark_completed({})
        execution.step_executions[1].mark_failed("boom")
        execution.mark_failed("Step 'second' failed: boom")

        assert execution.status == ChainExecutionStatus.FAILED
        assert execution.failed_step_alias == "second"
        assert execution.failed_at is not None
        [event] = execution.drain_events()
        assert isinstance(event, ChainFailed)
        assert event.failed_step_alias == "second"

    def test_compensation_failure_keeps_compensating(self):
        """Test that a failed compensation leaves the execution Compensating with the error."""
        execution = make_execution()
        execution.mark_running()
        execution.mark_failed("boom")
        execution.mark_compensating()
        execution.record_compensation_failure("first", "undo failed")

        assert execution.status == ChainExecutionStatus.COMPENSATING
        assert "first" in execution.error_message
        assert "undo failed" in execution.error_message

    def test_merge_output_and_advance(self):
        """Test that outputs are keyed by alias in the context blob."""
        execution = make_execution()
        execution.merge_output("first", {"task_id": "t-1"})
        execution.merge_output("second", None)
        execution.advance_step()

        assert execution.context == {"first": {"task_id": "t-1"}, "second": {}}
        assert execution.current_step().step_alias == "second"

    def test_lookup_helpers(self):
        """Test step lookups by alias and id."""
        execution = make_execution()
        step = execution.step_executions[1]

        assert execution.step_by_alias("second") is step
        assert execution.step_by_id(step.id) is step
        assert execution.step_by_alias("missing") is None


class TestChainScheduledJob:
    """Test cases for ChainScheduledJob."""

    def test_is_live(self):
        """Test that a job is live until completed or failed."""
        job = ChainScheduledJob(step_execution_id="s-1", chain_execution_id="e-1", scheduled_at=utcnow())
        assert job.is_live
        job.completed_at = utcnow()
        assert not job.is_live
