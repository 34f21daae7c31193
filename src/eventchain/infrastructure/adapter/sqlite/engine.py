from collections.abc import Callable
from datetime import datetime

from eventchain.application.service import ChainEngine
from eventchain.domain.port import ActionHandler
from eventchain.domain.service import utcnow
from eventchain.domain.value_object import EngineOptions
from eventchain.infrastructure.adapter.in_memory.handler_registry import InMemoryActionHandlerRegistry
from eventchain.infrastructure.adapter.in_memory.publisher import InMemoryNotificationPublisher
from eventchain.infrastructure.adapter.in_memory.task_runner import InMemoryTaskRunner
from eventchain.infrastructure.adapter.in_memory.trigger_registry import InMemoryTriggerRegistry
from eventchain.infrastructure.adapter.sqlite.repository import (
    SQLiteChainDefinitionRepository,
    SQLiteChainExecutionRepository,
    SQLiteDatabase,
    SQLiteEntityMappingRepository,
    SQLiteScheduledJobRepository,
)


class SQLiteEngine(ChainEngine):
    """SQLite-backed chain engine."""

    def __init__(self, db: SQLiteDatabase, **kwargs):
        super().__init__(**kwargs)
        self.db = db

    def close(self) -> None:
        self.db.close()


def create(
    handlers: list[type[ActionHandler]],
    db_path: str = ":memory:",
    options: EngineOptions | None = None,
    clock: Callable[[], datetime] = utcnow,
) -> SQLiteEngine:
    """
    Creates a SQLiteEngine with the specified action handlers and database path.

    :param handlers: List of action handler classes to register
    :type handlers: list[type[ActionHandler]]
    :param db_path: Path to SQLite database file (defaults to in-memory)
    :type db_path: str
    :param options: Retry, timeout and polling settings
    :type options: EngineOptions | None
    :param clock: Source of the current time
    :type clock: Callable[[], datetime]
    :returns: Configured SQLiteEngine instance
    :rtype: SQLiteEngine
    """
    db = SQLiteDatabase(db_path=db_path)
    return SQLiteEngine(
        db=db,
        definitions=SQLiteChainDefinitionRepository(db),
        executions=SQLiteChainExecutionRepository(db),
        jobs=SQLiteScheduledJobRepository(db),
        mappings=SQLiteEntityMappingRepository(db),
        registry=InMemoryActionHandlerRegistry(handlers),
        triggers=InMemoryTriggerRegistry(),
        task_runner=InMemoryTaskRunner(),
        publisher=InMemoryNotificationPublisher(),
        options=options,
        clock=clock,
    )
