"""
Tests for in-memory action handler registry.

This module tests the InMemoryActionHandlerRegistry implementation.
"""

import pytest

from eventchain.domain.error import HandlerNotFoundError
from eventchain.domain.port import ActionHandler
from eventchain.domain.value_object import ActionKey, ActionSuccess
from eventchain.infrastructure.adapter.in_memory.handler_registry import InMemoryActionHandlerRegistry


class CreateTask(ActionHandler):
    """Creates a task."""

    module = "tasks"
    is_compensatable = True

    def execute(self, payload, cancel):
        return ActionSuccess()


class CreateTaskV2(ActionHandler):
    """Creates a task with subtasks."""

    action_type = "CreateTask"
    module = "tasks"
    action_version = "2.0"

    def execute(self, payload, cancel):
        return ActionSuccess()


class SendReminder(ActionHandler):
    module = "notifications"

    def execute(self, payload, cancel):
        return ActionSuccess()


class TestInMemoryActionHandlerRegistry:
    """Test cases for InMemoryActionHandlerRegistry."""

    def setup_method(self):
        """Setup test fixtures."""
        self.registry = InMemoryActionHandlerRegistry([CreateTask, CreateTaskV2])

    def test_resolve_returns_instance(self):
        """Test that resolve returns a fresh handler instance."""
        handler = self.registry.resolve(ActionKey("CreateTask", "tasks"))
        assert isinstance(handler, CreateTask)
        assert handler is not self.registry.resolve(ActionKey("CreateTask", "tasks"))

    def test_resolve_by_version(self):
        """Test that versions register side by side."""
        assert isinstance(self.registry.resolve(ActionKey("CreateTask", "tasks", "2.0")), CreateTaskV2)

    def test_resolve_missing(self):
        """Test that an unknown key raises HandlerNotFoundError."""
        with pytest.raises(HandlerNotFoundError, match="notifications:SendReminder@1.0"):
            self.registry.resolve(ActionKey("SendReminder", "notifications"))

    def test_missing_is_key_error(self):
        """Test that HandlerNotFoundError can be caught as KeyError."""
        with pytest.raises(KeyError):
            self.registry.resolve(ActionKey("Nope", "nowhere"))

    def test_register(self):
        """Test registering after construction."""
        self.registry.register(SendReminder)
        assert isinstance(self.registry.resolve(SendReminder.key()), SendReminder)

    def test_register_replaces_same_key(self):
        """Test that re-registering a key keeps the latest handler."""

        class CreateTaskReplacement(ActionHandler):
            action_type = "CreateTask"
            module = "tasks"

            def execute(self, payload, cancel):
                return ActionSuccess()

        self.registry.register(CreateTaskReplacement)
        assert isinstance(self.registry.resolve(ActionKey("CreateTask", "tasks")), CreateTaskReplacement)
        ActionHandler._handlers.remove(CreateTaskReplacement)

    def test_catalog(self):
        """Test that the catalog lists descriptors in a stable order."""
        self.registry.register(SendReminder)

        catalog = self.registry.catalog()

        assert [(d.module, d.action_type, d.version) for d in catalog] == [
            ("notifications", "SendReminder", "1.0"),
            ("tasks", "CreateTask", "1.0"),
            ("tasks", "CreateTask", "2.0"),
        ]
        assert catalog[1].description == "Creates a task."
        assert catalog[1].is_compensatable

    def test_empty(self):
        """Test a registry without handlers."""
        assert InMemoryActionHandlerRegistry().catalog() == []

    def test_catalog_compatible_with_trigger(self):
        """Test that handlers naming triggers are only listed for those triggers."""

        class ShareCalendar(ActionHandler):
            module = "calendar"
            compatible_triggers = ("AppointmentScheduled", "AppointmentMoved")

            def execute(self, payload, cancel):
                return ActionSuccess()

        self.registry.register(ShareCalendar)
        try:
            moved = self.registry.catalog(compatible_with_trigger="AppointmentMoved")
            completed = self.registry.catalog(compatible_with_trigger="TaskCompleted")

            assert [d.action_type for d in moved] == ["ShareCalendar", "CreateTask", "CreateTask"]
            assert [d.action_type for d in completed] == ["CreateTask", "CreateTask"]
            assert len(self.registry.catalog()) == 3
        finally:
            ActionHandler._handlers.remove(ShareCalendar)
