import threading
from datetime import datetime
from typing import TypeVar

import msgspec
from msgspec import structs

from eventchain.application.port import (
    ChainDefinitionRepository,
    ChainExecutionRepository,
    EntityMappingRepository,
    ScheduledJobRepository,
)
from eventchain.domain.entity import (
    ChainDefinition,
    ChainEntityMapping,
    ChainExecution,
    ChainScheduledJob,
)
from eventchain.domain.error import ConcurrencyError
from eventchain.domain.value_object import ChainExecutionStatus

T = TypeVar("T", bound=msgspec.Struct)


def _copy(obj: T) -> T:
    # Stored objects never share mutable state with the caller's copy
    return msgspec.json.decode(msgspec.json.encode(obj), type=type(obj))


class InMemoryChainDefinitionRepository(ChainDefinitionRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._definitions: dict[str, ChainDefinition] = {}

    def add(self, definition: ChainDefinition) -> None:
        with self._lock:
            if definition.id in self._definitions:
                raise ValueError(f"Chain definition '{definition.id}' already exists")
            self._definitions[definition.id] = _copy(definition)

    def update(self, definition: ChainDefinition) -> None:
        with self._lock:
            if definition.id not in self._definitions:
                raise KeyError(f"Chain definition '{definition.id}' not found")
            self._definitions[definition.id] = _copy(definition)

    def get(self, definition_id: str) -> ChainDefinition:
        with self._lock:
            try:
                return _copy(self._definitions[definition_id])
            except KeyError:
                raise KeyError(f"Chain definition '{definition_id}' not found") from None

    def find(self, family_id: str | None = None, is_enabled: bool | None = None) -> list[ChainDefinition]:
        with self._lock:
            found = [
                _copy(d)
                for d in self._definitions.values()
                if (family_id is None or d.family_id == family_id)
                and (is_enabled is None or d.is_enabled == is_enabled)
            ]
        return sorted(found, key=lambda d: d.created_at)

    def find_enabled_by_trigger(self, event_type: str, module: str | None = None) -> list[ChainDefinition]:
        with self._lock:
            found = [
                _copy(d)
                for d in self._definitions.values()
                if d.is_enabled
                and not d.is_template
                and d.trigger_event_type == event_type
                and (module is None or not d.trigger_module or d.trigger_module == module)
            ]
        return sorted(found, key=lambda d: d.created_at)


class InMemoryChainExecutionRepository(ChainExecutionRepository):
    """Keeps executions as detached copies and enforces the optimistic version on update."""

    def __init__(self):
        self._lock = threading.Lock()
        self._executions: dict[str, ChainExecution] = {}
        self._step_index: dict[str, str] = {}

    def add(self, execution: ChainExecution) -> None:
        with self._lock:
            if execution.id in self._executions:
                raise ValueError(f"Chain execution '{execution.id}' already exists")
            self._store(execution)

    def update(self, execution: ChainExecution) -> None:
        with self._lock:
            try:
                stored = self._executions[execution.id]
            except KeyError:
                raise KeyError(f"Chain execution '{execution.id}' not found") from None
            if stored.version != execution.version:
                raise ConcurrencyError(
                    f"Chain execution '{execution.id}' was modified concurrently "
                    f"(expected version {execution.version}, found {stored.version})"
                )
            execution.version += 1
            self._store(execution)

    def get(self, execution_id: str) -> ChainExecution:
        with self._lock:
            try:
                return _copy(self._executions[execution_id])
            except KeyError:
                raise KeyError(f"Chain execution '{execution_id}' not found") from None

    def get_by_step(self, step_execution_id: str) -> ChainExecution:
        with self._lock:
            try:
                execution_id = self._step_index[step_execution_id]
            except KeyError:
                raise KeyError(f"No chain execution owns step execution '{step_execution_id}'") from None
            return _copy(self._executions[execution_id])

    def find(
        self,
        definition_id: str | None = None,
        family_id: str | None = None,
        status: ChainExecutionStatus | None = None,
    ) -> list[ChainExecution]:
        with self._lock:
            found = [
                _copy(e)
                for e in self._executions.values()
                if (definition_id is None or e.chain_definition_id == definition_id)
                and (family_id is None or e.family_id == family_id)
                and (status is None or e.status == status)
            ]
        return sorted(found, key=lambda e: e.started_at, reverse=True)

    def _store(self, execution: ChainExecution) -> None:
        self._executions[execution.id] = _copy(structs.replace(execution, pending_events=[]))
        for step in execution.step_executions:
            self._step_index[step.id] = execution.id


class InMemoryScheduledJobRepository(ScheduledJobRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._jobs: dict[str, ChainScheduledJob] = {}

    def add(self, job: ChainScheduledJob) -> None:
        with self._lock:
            if job.id in self._jobs:
                raise ValueError(f"Scheduled job '{job.id}' already exists")
            self._jobs[job.id] = _copy(job)

    def update(self, job: ChainScheduledJob) -> None:
        with self._lock:
            if job.id not in self._jobs:
                raise KeyError(f"Scheduled job '{job.id}' not found")
            self._jobs[job.id] = _copy(job)

    def get(self, job_id: str) -> ChainScheduledJob:
        with self._lock:
            try:
                return _copy(self._jobs[job_id])
            except KeyError:
                raise KeyError(f"Scheduled job '{job_id}' not found") from None

    def live_for_step(self, step_execution_id: str) -> ChainScheduledJob | None:
        with self._lock:
            for job in self._jobs.values():
                if job.step_execution_id == step_execution_id and job.is_live:
                    return _copy(job)
        return None

    def due(self, now: datetime, limit: int) -> list[ChainScheduledJob]:
        with self._lock:
            due = [j for j in self._jobs.values() if j.is_live and j.picked_up_at is None and j.scheduled_at <= now]
            due.sort(key=lambda j: j.scheduled_at)
            return [_copy(j) for j in due[:limit]]

    def claim(self, job_id: str, now: datetime) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_live or job.picked_up_at is not None:
                return False
            job.picked_up_at = now
            return True

    def claimed_before(self, cutoff: datetime) -> list[ChainScheduledJob]:
        with self._lock:
            return [
                _copy(j)
                for j in self._jobs.values()
                if j.is_live and j.picked_up_at is not None and j.picked_up_at < cutoff
            ]

    def list_for_execution(self, execution_id: str) -> list[ChainScheduledJob]:
        with self._lock:
            jobs = [_copy(j) for j in self._jobs.values() if j.chain_execution_id == execution_id]
        return sorted(jobs, key=lambda j: j.created_at)


class InMemoryEntityMappingRepository(EntityMappingRepository):
    def __init__(self):
        self._lock = threading.Lock()
        self._mappings: list[ChainEntityMapping] = []

    def add(self, mapping: ChainEntityMapping) -> None:
        with self._lock:
            self._mappings.append(mapping)

    def for_execution(self, execution_id: str) -> list[ChainEntityMapping]:
        with self._lock:
            return [m for m in self._mappings if m.chain_execution_id == execution_id]

    def find_by_entity(self, entity_id: str, entity_type: str | None = None) -> list[ChainEntityMapping]:
        with self._lock:
            return [
                m
                for m in self._mappings
                if m.entity_id == entity_id and (entity_type is None or m.entity_type == entity_type)
            ]
