from collections.abc import Callable
from datetime import datetime

from eventchain.application.service import ChainEngine
from eventchain.domain.port import ActionHandler
from eventchain.domain.service import utcnow
from eventchain.domain.value_object import EngineOptions
from eventchain.infrastructure.adapter.in_memory.handler_registry import InMemoryActionHandlerRegistry
from eventchain.infrastructure.adapter.in_memory.publisher import InMemoryNotificationPublisher
from eventchain.infrastructure.adapter.in_memory.repository import (
    InMemoryChainDefinitionRepository,
    InMemoryChainExecutionRepository,
    InMemoryEntityMappingRepository,
    InMemoryScheduledJobRepository,
)
from eventchain.infrastructure.adapter.in_memory.task_runner import InMemoryTaskRunner
from eventchain.infrastructure.adapter.in_memory.trigger_registry import InMemoryTriggerRegistry


class InMemoryEngine(ChainEngine):
    pass


def create(
    handlers: list[type[ActionHandler]],
    options: EngineOptions | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> InMemoryEngine:
    """
    Creates an InMemoryEngine with the specified action handlers.

    :param handlers: List of action handler classes to register
    :type handlers: list[type[ActionHandler]]
    :param options: Retry, timeout and polling settings
    :type options: EngineOptions | None
    :param clock: Source of the current time
    :type clock: Callable[[], datetime]
    :returns: Configured InMemoryEngine instance
    :rtype: InMemoryEngine
    """
    return InMemoryEngine(
        definitions=InMemoryChainDefinitionRepository(),
        executions=InMemoryChainExecutionRepository(),
        jobs=InMemoryScheduledJobRepository(),
        mappings=InMemoryEntityMappingRepository(),
        registry=InMemoryActionHandlerRegistry(handlers),
        triggers=InMemoryTriggerRegistry(),
        task_runner=InMemoryTaskRunner(),
        publisher=InMemoryNotificationPublisher(),
        options=options,
        clock=clock,
    )
