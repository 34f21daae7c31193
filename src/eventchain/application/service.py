from collections.abc import Callable
from datetime import datetime
from typing import Any

import msgspec

from eventchain.application.compensation import CompensationCoordinator
from eventchain.application.coordinator import ExecutionCoordinator, ExecutionLocks
from eventchain.application.dispatcher import StepDispatcher
from eventchain.application.port import (
    ActionHandlerRegistry,
    ChainDefinitionRepository,
    ChainExecutionRepository,
    EntityMappingRepository,
    NotificationPublisher,
    ScheduledJobRepository,
    TaskRunner,
    TriggerRegistry,
)
from eventchain.application.scheduler import RetryScheduler
from eventchain.application.tracker import EntityMappingTracker
from eventchain.domain.entity import ChainDefinition, ChainDefinitionStep
from eventchain.domain.error import DefinitionError
from eventchain.domain.service import utcnow, validate_definition
from eventchain.domain.value_object import EngineOptions


def load_chain_definition(data: dict | str | bytes | ChainDefinition) -> ChainDefinition:
    """
    Decodes and validates a chain definition.

    Strings and bytes are read as JSON when they start with ``{`` and as YAML otherwise.

    :param data: The definition as a dictionary, JSON/YAML document or ChainDefinition instance
    :type data: dict | str | bytes | ChainDefinition
    :returns: A validated ChainDefinition
    :rtype: ChainDefinition
    :raises DefinitionError: If the document cannot be decoded or the definition is invalid
    """
    if isinstance(data, ChainDefinition):
        validate_definition(data)
        return data

    try:
        if isinstance(data, (str, bytes)):
            raw = data.encode("utf-8") if isinstance(data, str) else data
            if raw.lstrip().startswith(b"{"):
                definition = msgspec.json.decode(raw, type=ChainDefinition)
            else:
                definition = msgspec.yaml.decode(raw, type=ChainDefinition)
        else:
            definition = msgspec.convert(data, type=ChainDefinition)
    except (msgspec.ValidationError, msgspec.DecodeError) as e:
        raise DefinitionError(f"Invalid chain definition: {e}") from None
    validate_definition(definition)
    return definition


def load_chain_step(data: dict | ChainDefinitionStep) -> ChainDefinitionStep:
    """
    Decodes and validates a single chain step.

    :param data: The step as a dictionary or ChainDefinitionStep instance
    :type data: dict | ChainDefinitionStep
    :returns: A validated ChainDefinitionStep
    :rtype: ChainDefinitionStep
    :raises DefinitionError: If the step cannot be decoded or is invalid
    """
    if not isinstance(data, ChainDefinitionStep):
        try:
            data = msgspec.convert(data, type=ChainDefinitionStep)
        except msgspec.ValidationError as e:
            raise DefinitionError(f"Invalid chain step: {e}") from None
    data.validate()
    return data


def decode_payload(payload: dict[str, Any] | str | bytes | None) -> dict[str, Any]:
    """
    Normalizes a trigger payload to a dictionary.

    :param payload: JSON text, JSON bytes, a dictionary, or None
    :type payload: dict[str, Any] | str | bytes | None
    :returns: The payload as a dictionary
    :rtype: dict[str, Any]
    :raises ValueError: If the payload is not a JSON object
    """
    if payload is None:
        return {}
    if isinstance(payload, dict):
        return payload
    try:
        decoded = msgspec.json.decode(payload)
    except msgspec.DecodeError as e:
        raise ValueError(f"Trigger payload is not valid JSON: {e}") from None
    if not isinstance(decoded, dict):
        raise ValueError("Trigger payload must be a JSON object")
    return decoded


class ChainEngine:
    """
    Wires the application services around a set of ports.

    .. note::
        Concrete adapters are chosen by the backend ``create()`` functions and
        injected here; nothing in this class knows about storage.
    """

    def __init__(
        self,
        definitions: ChainDefinitionRepository,
        executions: ChainExecutionRepository,
        jobs: ScheduledJobRepository,
        mappings: EntityMappingRepository,
        registry: ActionHandlerRegistry,
        triggers: TriggerRegistry,
        task_runner: TaskRunner,
        publisher: NotificationPublisher,
        options: EngineOptions | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.options = options if options is not None else EngineOptions()
        self.definitions = definitions
        self.executions = executions
        self.jobs = jobs
        self.mappings = mappings
        self.registry = registry
        self.triggers = triggers
        self.task_runner = task_runner
        self.publisher = publisher
        self.tracker = EntityMappingTracker(mappings)
        self.scheduler = RetryScheduler(jobs, self.options, clock)
        self.dispatcher = StepDispatcher(registry, task_runner, self.tracker, self.options, clock)
        self.compensation = CompensationCoordinator(registry, task_runner, self.options)
        self.coordinator = ExecutionCoordinator(
            definitions,
            executions,
            self.dispatcher,
            self.compensation,
            self.scheduler,
            publisher,
            self.options,
            ExecutionLocks(),
        )
