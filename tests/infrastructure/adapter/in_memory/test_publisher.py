"""
Tests for in-memory notification publisher.
"""

from unittest.mock import Mock

import pytest

from eventchain.domain.service import utcnow
from eventchain.domain.value_object import ChainStarted
from eventchain.infrastructure.adapter.in_memory.publisher import InMemoryNotificationPublisher


def make_event() -> ChainStarted:
    return ChainStarted(
        execution_id="exec-1",
        chain_definition_id="def-1",
        family_id="fam-1",
        correlation_id="corr-1",
        trigger_event_type="Evt",
        occurred_at=utcnow(),
    )


class TestInMemoryNotificationPublisher:
    """Test cases for InMemoryNotificationPublisher."""

    def test_publish_records_event(self):
        """Test that published events are kept in order."""
        publisher = InMemoryNotificationPublisher()
        first, second = make_event(), make_event()

        publisher.publish(first)
        publisher.publish(second)

        assert publisher.events == [first, second]

    def test_subscribers_receive_events(self):
        """Test that every subscriber is called with the event."""
        publisher = InMemoryNotificationPublisher()
        a, b = Mock(), Mock()
        publisher.subscribe(a)
        publisher.subscribe(b)
        event = make_event()

        publisher.publish(event)

        a.assert_called_once_with(event)
        b.assert_called_once_with(event)

    def test_subscriber_error_propagates(self):
        """Test that a failing subscriber surfaces to the publishing caller."""
        publisher = InMemoryNotificationPublisher()
        publisher.subscribe(Mock(side_effect=RuntimeError("listener broke")))

        with pytest.raises(RuntimeError, match="listener broke"):
            publisher.publish(make_event())
        assert len(publisher.events) == 1
