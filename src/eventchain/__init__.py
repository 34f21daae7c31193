"""
eventchain - Saga-style event chain orchestration

Runs an ordered chain of actions in response to a domain event, retries
transient failures on a backoff schedule and compensates completed steps when
a chain cannot finish.
"""

from eventchain.backend import BackendType
from eventchain.client import Client
from eventchain.config import load_options
from eventchain.domain.entity import ChainDefinition, ChainDefinitionStep, ChainExecution
from eventchain.domain.error import (
    DefinitionError,
    EventChainError,
    PermanentActionError,
    TransientActionError,
)
from eventchain.domain.port import ActionHandler
from eventchain.domain.value_object import (
    ActionFailure,
    ActionSuccess,
    ChainCompleted,
    ChainExecutionStatus,
    ChainFailed,
    ChainStarted,
    CreatedEntity,
    EngineOptions,
    StepExecutionStatus,
    TriggerDescriptor,
)
from eventchain.factory import create
from eventchain.log import configure_logging

__all__ = [
    "Client",
    "BackendType",
    "create",
    "load_options",
    "configure_logging",
    "ActionHandler",
    "ActionSuccess",
    "ActionFailure",
    "CreatedEntity",
    "ChainDefinition",
    "ChainDefinitionStep",
    "ChainExecution",
    "ChainExecutionStatus",
    "StepExecutionStatus",
    "TriggerDescriptor",
    "ChainStarted",
    "ChainCompleted",
    "ChainFailed",
    "EngineOptions",
    "EventChainError",
    "DefinitionError",
    "TransientActionError",
    "PermanentActionError",
]
