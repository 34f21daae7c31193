"""
Tests for application adapters.

This module tests the application layer adapters including:
- ExecutionContext
- VariableResolver
- InputMappingResolver
- ConditionEvaluator
"""

import pytest

from eventchain.application.adapter import (
    ConditionEvaluator,
    ExecutionContext,
    InputMappingResolver,
    VariableResolver,
)
from eventchain.domain.entity import ChainExecution
from eventchain.domain.error import ExpressionError


def make_context() -> ExecutionContext:
    return ExecutionContext(
        trigger={"title": "Dentist", "attendees": [{"name": "Ada"}, {"name": "Bob"}], "count": 2},
        outputs={"create_task": {"task_id": "t-1", "priority": 3, "done": False}},
        entities={"create_task": {"Task": "t-1"}},
    )


class TestExecutionContext:
    """Test cases for ExecutionContext."""

    def test_roots(self):
        """Test that trigger, entities and step aliases are roots."""
        ctx = make_context()
        assert ctx.get_root("trigger")["title"] == "Dentist"
        assert ctx.get_root("entities") == {"create_task": {"Task": "t-1"}}
        assert ctx.get_root("create_task")["task_id"] == "t-1"

    def test_unknown_root(self):
        """Test that an unknown alias raises KeyError."""
        with pytest.raises(KeyError):
            make_context().get_root("nope")

    def test_for_execution(self):
        """Test building a context from an execution."""
        execution = ChainExecution.start("d", "f", "Evt", "e", {"a": 1})
        execution.merge_output("step1", {"b": 2})

        ctx = ExecutionContext.for_execution(execution, {"step1": {"Task": "t"}})

        assert ctx.trigger == {"a": 1}
        assert ctx.outputs == {"step1": {"b": 2}}
        assert ctx.entities == {"step1": {"Task": "t"}}


class TestVariableResolver:
    """Test cases for VariableResolver."""

    def setup_method(self):
        """Setup test fixtures."""
        self.resolver = VariableResolver(make_context())

    def test_exact_placeholder_keeps_type(self):
        """Test that a lone placeholder returns the raw value."""
        assert self.resolver.resolve_any("${create_task.priority}") == 3
        assert self.resolver.resolve_any("${trigger.attendees}") == [{"name": "Ada"}, {"name": "Bob"}]

    def test_interpolation(self):
        """Test that embedded placeholders are converted to text."""
        assert self.resolver.resolve_any("Prepare for ${trigger.title} (${trigger.count})") == "Prepare for Dentist (2)"

    def test_surrounding_whitespace_is_kept(self):
        """Test that a placeholder with surrounding text is interpolated, not returned raw."""
        assert self.resolver.resolve_any(" ${create_task.priority} ") == " 3 "
        assert self.resolver.resolve_any("${trigger.count}\n") == "2\n"

    def test_index_path(self):
        """Test list indexing inside a path."""
        assert self.resolver.resolve_any("${trigger.attendees[1].name}") == "Bob"

    def test_entities_path(self):
        """Test the entities namespace."""
        assert self.resolver.resolve_any("${entities.create_task.Task}") == "t-1"

    def test_nested_structures(self):
        """Test resolution inside dicts and lists."""
        value = {"ids": ["${create_task.task_id}", 5], "meta": {"t": "${trigger.title}"}}
        assert self.resolver.resolve_any(value) == {"ids": ["t-1", 5], "meta": {"t": "Dentist"}}

    @pytest.mark.parametrize(
        "placeholder",
        ["${missing.field}", "${trigger.nope}", "${trigger.attendees[5].name}", "${trigger.title.inner}"],
    )
    def test_unknown_path(self, placeholder):
        """Test that unresolvable paths raise ExpressionError."""
        with pytest.raises(ExpressionError, match="Unknown placeholder"):
            self.resolver.resolve_any(placeholder)

    def test_lookup(self):
        """Test resolving a bare path."""
        assert self.resolver.lookup(" trigger.count ") == 2


class TestInputMappingResolver:
    """Test cases for InputMappingResolver."""

    def setup_method(self):
        """Setup test fixtures."""
        self.resolver = InputMappingResolver(VariableResolver(make_context()))

    @pytest.mark.parametrize("mappings", [None, "", "  ", "{}"])
    def test_empty(self, mappings):
        """Test that missing or empty mappings give an empty payload."""
        assert self.resolver.resolve(mappings) == {}

    def test_resolves_values(self):
        """Test a typical mapping."""
        mappings = '{"title": "Follow up: ${trigger.title}", "task": "${create_task.task_id}", "n": 1}'
        assert self.resolver.resolve(mappings) == {"title": "Follow up: Dentist", "task": "t-1", "n": 1}

    def test_invalid_json(self):
        """Test that malformed JSON is an expression error."""
        with pytest.raises(ExpressionError, match="not valid JSON"):
            self.resolver.resolve("{title: ")

    def test_not_an_object(self):
        """Test that mappings must be a JSON object."""
        with pytest.raises(ExpressionError, match="JSON object"):
            self.resolver.resolve('["a"]')


class TestConditionEvaluator:
    """Test cases for ConditionEvaluator."""

    def setup_method(self):
        """Setup test fixtures."""
        self.evaluator = ConditionEvaluator(VariableResolver(make_context()))

    @pytest.mark.parametrize("expression", [None, "", "   "])
    def test_empty_is_true(self, expression):
        """Test that a missing condition always passes."""
        assert self.evaluator.evaluate(expression) is True

    @pytest.mark.parametrize(
        "expression,expected",
        [
            ('${trigger.title} == "Dentist"', True),
            ("${trigger.title} == 'Doctor'", False),
            ("${trigger.count} > 1", True),
            ("${trigger.count} >= 3", False),
            ("${create_task.priority} <= 3", True),
            ("${create_task.priority} != 3", False),
            ("${create_task.done} == false", True),
            ("${trigger.count} == 2.0", True),
        ],
    )
    def test_comparisons(self, expression, expected):
        """Test comparison operators against literals."""
        assert self.evaluator.evaluate(expression) is expected

    def test_boolean_operators(self):
        """Test and, or, not and parentheses."""
        assert self.evaluator.evaluate('${trigger.count} > 1 and ${trigger.title} == "Dentist"')
        assert not self.evaluator.evaluate("${trigger.count} > 5 and ${trigger.count} < 10")
        assert self.evaluator.evaluate("${trigger.count} > 5 or ${create_task.priority} == 3")
        assert self.evaluator.evaluate("not ${create_task.done}")
        assert not self.evaluator.evaluate("not (${trigger.count} == 2 or false)")
        assert self.evaluator.evaluate("true AND NOT false")

    def test_truthiness(self):
        """Test that a bare operand is tested for truthiness."""
        assert self.evaluator.evaluate("${create_task.task_id}")
        assert not self.evaluator.evaluate("${create_task.done}")

    def test_exists(self):
        """Test that exists never raises for missing paths."""
        assert self.evaluator.evaluate("exists ${create_task.task_id}")
        assert not self.evaluator.evaluate("exists ${later_step.id}")
        assert self.evaluator.evaluate("not exists ${later_step.id} and ${trigger.count} == 2")

    def test_escaped_string(self):
        """Test backslash escapes inside string literals."""
        ctx = ExecutionContext(trigger={"q": 'say "hi"'}, outputs={})
        assert ConditionEvaluator(VariableResolver(ctx)).evaluate('${trigger.q} == "say \\"hi\\""')

    def test_missing_path_in_comparison(self):
        """Test that a comparison against a missing path is an error."""
        with pytest.raises(ExpressionError):
            self.evaluator.evaluate("${trigger.missing_field} == null")

    @pytest.mark.parametrize(
        "expression",
        ["${trigger.count} >", "(${trigger.count} > 1", "${trigger.count} > 1 1", "exists 5", "# nope", "banana"],
    )
    def test_syntax_errors(self, expression):
        """Test malformed conditions."""
        with pytest.raises(ExpressionError):
            self.evaluator.evaluate(expression)

    def test_incomparable_types(self):
        """Test that ordering a string against a number is an error."""
        with pytest.raises(ExpressionError, match="Cannot compare"):
            self.evaluator.evaluate("${trigger.title} > 3")
