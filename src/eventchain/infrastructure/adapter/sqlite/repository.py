import sqlite3
import threading
from datetime import datetime, timezone

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

_SCHEMA = """
CREATE TABLE IF NOT EXISTS chain_definitions (
    id TEXT PRIMARY KEY,
    family_id TEXT NOT NULL,
    name TEXT NOT NULL,
    trigger_event_type TEXT NOT NULL,
    trigger_module TEXT NOT NULL,
    is_enabled INTEGER NOT NULL,
    is_template INTEGER NOT NULL,
    created_at TEXT NOT NULL,
    body TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_chain_definitions_trigger
    ON chain_definitions (trigger_event_type, is_enabled);
CREATE INDEX IF NOT EXISTS ix_chain_definitions_family
    ON chain_definitions (family_id);

CREATE TABLE IF NOT EXISTS chain_executions (
    id TEXT PRIMARY KEY,
    chain_definition_id TEXT NOT NULL,
    family_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    version INTEGER NOT NULL,
    body TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_chain_executions_definition
    ON chain_executions (chain_definition_id);
CREATE INDEX IF NOT EXISTS ix_chain_executions_family_status
    ON chain_executions (family_id, status);

CREATE TABLE IF NOT EXISTS step_executions (
    id TEXT PRIMARY KEY,
    chain_execution_id TEXT NOT NULL REFERENCES chain_executions (id),
    step_alias TEXT NOT NULL,
    step_order INTEGER NOT NULL,
    status TEXT NOT NULL,
    UNIQUE (chain_execution_id, step_alias)
);

CREATE TABLE IF NOT EXISTS chain_scheduled_jobs (
    id TEXT PRIMARY KEY,
    step_execution_id TEXT NOT NULL,
    chain_execution_id TEXT NOT NULL,
    scheduled_at TEXT NOT NULL,
    picked_up_at TEXT,
    completed_at TEXT,
    failed_at TEXT,
    retry_count INTEGER NOT NULL DEFAULT 0,
    error_message TEXT,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_chain_scheduled_jobs_ready
    ON chain_scheduled_jobs (scheduled_at)
    WHERE picked_up_at IS NULL AND completed_at IS NULL AND failed_at IS NULL;
CREATE INDEX IF NOT EXISTS ix_chain_scheduled_jobs_step
    ON chain_scheduled_jobs (step_execution_id);

CREATE TABLE IF NOT EXISTS chain_entity_mappings (
    id TEXT PRIMARY KEY,
    chain_execution_id TEXT NOT NULL,
    step_alias TEXT NOT NULL,
    entity_type TEXT NOT NULL,
    entity_id TEXT NOT NULL,
    module TEXT NOT NULL,
    created_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS ix_chain_entity_mappings_execution
    ON chain_entity_mappings (chain_execution_id);
CREATE INDEX IF NOT EXISTS ix_chain_entity_mappings_entity
    ON chain_entity_mappings (entity_type, entity_id);
"""

_LIVE = "completed_at IS NULL AND failed_at IS NULL"


def _ts(value: datetime | None) -> str | None:
    # Fixed-width UTC text so that string comparison in SQL orders by time
    if value is None:
        return None
    return value.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%S.%f+00:00")


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value is not None else None


class SQLiteDatabase:
    """A shared sqlite3 connection, its schema, and the lock serializing access to it."""

    def __init__(self, db_path: str = ":memory:"):
        """
        Initialize the database.

        :param db_path: Path to SQLite database file (defaults to in-memory)
        :type db_path: str
        """
        self.db_path = db_path
        self.lock = threading.RLock()
        self._conn = None
        self._init_database()

    def connection(self) -> sqlite3.Connection:
        """Get or create database connection."""
        if self._conn is None:
            self._conn = sqlite3.connect(self.db_path, check_same_thread=False)
            self._conn.row_factory = sqlite3.Row
        return self._conn

    def _init_database(self):
        """Initialize the database schema."""
        with self.lock:
            conn = self.connection()
            conn.executescript(_SCHEMA)
            conn.commit()

    def close(self):
        with self.lock:
            if self._conn is not None:
                self._conn.close()
                self._conn = None

    def __del__(self):
        """Close the database connection on cleanup."""
        if self._conn:
            self._conn.close()


class SQLiteChainDefinitionRepository(ChainDefinitionRepository):
    """Definitions are stored as JSON documents next to the columns they are queried by."""

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def add(self, definition: ChainDefinition) -> None:
        with self.db.lock:
            conn = self.db.connection()
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO chain_definitions (id, family_id, name, trigger_event_type, trigger_module, "
                        "is_enabled, is_template, created_at, body) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            definition.id,
                            definition.family_id,
                            definition.name,
                            definition.trigger_event_type,
                            definition.trigger_module,
                            int(definition.is_enabled),
                            int(definition.is_template),
                            _ts(definition.created_at),
                            msgspec.json.encode(definition).decode("utf-8"),
                        ),
                    )
            except sqlite3.IntegrityError:
                raise ValueError(f"Chain definition '{definition.id}' already exists") from None

    def update(self, definition: ChainDefinition) -> None:
        with self.db.lock:
            conn = self.db.connection()
            with conn:
                cursor = conn.execute(
                    "UPDATE chain_definitions SET family_id = ?, name = ?, trigger_event_type = ?, "
                    "trigger_module = ?, is_enabled = ?, is_template = ?, body = ? WHERE id = ?",
                    (
                        definition.family_id,
                        definition.name,
                        definition.trigger_event_type,
                        definition.trigger_module,
                        int(definition.is_enabled),
                        int(definition.is_template),
                        msgspec.json.encode(definition).decode("utf-8"),
                        definition.id,
                    ),
                )
            if cursor.rowcount == 0:
                raise KeyError(f"Chain definition '{definition.id}' not found")

    def get(self, definition_id: str) -> ChainDefinition:
        with self.db.lock:
            row = self.db.connection().execute(
                "SELECT body FROM chain_definitions WHERE id = ?", (definition_id,)
            ).fetchone()
        if row is None:
            raise KeyError(f"Chain definition '{definition_id}' not found")
        return msgspec.json.decode(row["body"], type=ChainDefinition)

    def find(self, family_id: str | None = None, is_enabled: bool | None = None) -> list[ChainDefinition]:
        clauses, params = [], []
        if family_id is not None:
            clauses.append("family_id = ?")
            params.append(family_id)
        if is_enabled is not None:
            clauses.append("is_enabled = ?")
            params.append(int(is_enabled))
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.lock:
            rows = self.db.connection().execute(
                f"SELECT body FROM chain_definitions{where} ORDER BY created_at", params
            ).fetchall()
        return [msgspec.json.decode(row["body"], type=ChainDefinition) for row in rows]

    def find_enabled_by_trigger(self, event_type: str, module: str | None = None) -> list[ChainDefinition]:
        query = (
            "SELECT body FROM chain_definitions "
            "WHERE trigger_event_type = ? AND is_enabled = 1 AND is_template = 0"
        )
        params: list = [event_type]
        if module is not None:
            query += " AND (trigger_module = '' OR trigger_module = ?)"
            params.append(module)
        with self.db.lock:
            rows = self.db.connection().execute(query + " ORDER BY created_at", params).fetchall()
        return [msgspec.json.decode(row["body"], type=ChainDefinition) for row in rows]


class SQLiteChainExecutionRepository(ChainExecutionRepository):
    """
    Executions are stored as JSON documents guarded by a ``version`` column.

    Step executions are additionally indexed in their own table so that a
    scheduled job can find its execution by step id.
    """

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def add(self, execution: ChainExecution) -> None:
        with self.db.lock:
            conn = self.db.connection()
            try:
                with conn:
                    conn.execute(
                        "INSERT INTO chain_executions (id, chain_definition_id, family_id, status, started_at, "
                        "version, body) VALUES (?, ?, ?, ?, ?, ?, ?)",
                        (
                            execution.id,
                            execution.chain_definition_id,
                            execution.family_id,
                            execution.status.value,
                            _ts(execution.started_at),
                            execution.version,
                            self._encode(execution, execution.version),
                        ),
                    )
                    self._index_steps(conn, execution)
            except sqlite3.IntegrityError:
                raise ValueError(f"Chain execution '{execution.id}' already exists") from None

    def update(self, execution: ChainExecution) -> None:
        new_version = execution.version + 1
        with self.db.lock:
            conn = self.db.connection()
            with conn:
                cursor = conn.execute(
                    "UPDATE chain_executions SET status = ?, version = ?, body = ? WHERE id = ? AND version = ?",
                    (
                        execution.status.value,
                        new_version,
                        self._encode(execution, new_version),
                        execution.id,
                        execution.version,
                    ),
                )
                if cursor.rowcount == 0:
                    row = conn.execute("SELECT version FROM chain_executions WHERE id = ?", (execution.id,)).fetchone()
                    if row is None:
                        raise KeyError(f"Chain execution '{execution.id}' not found")
                    raise ConcurrencyError(
                        f"Chain execution '{execution.id}' was modified concurrently "
                        f"(expected version {execution.version}, found {row['version']})"
                    )
                self._index_steps(conn, execution)
        execution.version = new_version

    def get(self, execution_id: str) -> ChainExecution:
        with self.db.lock:
            row = self.db.connection().execute(
                "SELECT body FROM chain_executions WHERE id = ?", (execution_id,)
            ).fetchone()
        if row is None:
            raise KeyError(f"Chain execution '{execution_id}' not found")
        return msgspec.json.decode(row["body"], type=ChainExecution)

    def get_by_step(self, step_execution_id: str) -> ChainExecution:
        with self.db.lock:
            row = self.db.connection().execute(
                "SELECT e.body FROM chain_executions e "
                "JOIN step_executions s ON s.chain_execution_id = e.id WHERE s.id = ?",
                (step_execution_id,),
            ).fetchone()
        if row is None:
            raise KeyError(f"No chain execution owns step execution '{step_execution_id}'")
        return msgspec.json.decode(row["body"], type=ChainExecution)

    def find(
        self,
        definition_id: str | None = None,
        family_id: str | None = None,
        status: ChainExecutionStatus | None = None,
    ) -> list[ChainExecution]:
        clauses, params = [], []
        if definition_id is not None:
            clauses.append("chain_definition_id = ?")
            params.append(definition_id)
        if family_id is not None:
            clauses.append("family_id = ?")
            params.append(family_id)
        if status is not None:
            clauses.append("status = ?")
            params.append(ChainExecutionStatus(status).value)
        where = f" WHERE {' AND '.join(clauses)}" if clauses else ""
        with self.db.lock:
            rows = self.db.connection().execute(
                f"SELECT body FROM chain_executions{where} ORDER BY started_at DESC", params
            ).fetchall()
        return [msgspec.json.decode(row["body"], type=ChainExecution) for row in rows]

    @staticmethod
    def _encode(execution: ChainExecution, version: int) -> str:
        stored = structs.replace(execution, version=version, pending_events=[])
        return msgspec.json.encode(stored).decode("utf-8")

    @staticmethod
    def _index_steps(conn: sqlite3.Connection, execution: ChainExecution) -> None:
        conn.executemany(
            "INSERT INTO step_executions (id, chain_execution_id, step_alias, step_order, status) "
            "VALUES (?, ?, ?, ?, ?) ON CONFLICT (id) DO UPDATE SET status = excluded.status",
            [
                (step.id, execution.id, step.step_alias, step.step_order, step.status.value)
                for step in execution.step_executions
            ],
        )


class SQLiteScheduledJobRepository(ScheduledJobRepository):
    """Scheduled jobs with an atomic conditional-update claim."""

    _COLUMNS = (
        "id, step_execution_id, chain_execution_id, scheduled_at, picked_up_at, "
        "completed_at, failed_at, retry_count, error_message, created_at"
    )

    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def add(self, job: ChainScheduledJob) -> None:
        with self.db.lock:
            conn = self.db.connection()
            try:
                with conn:
                    conn.execute(
                        f"INSERT INTO chain_scheduled_jobs ({self._COLUMNS}) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                        (
                            job.id,
                            job.step_execution_id,
                            job.chain_execution_id,
                            _ts(job.scheduled_at),
                            _ts(job.picked_up_at),
                            _ts(job.completed_at),
                            _ts(job.failed_at),
                            job.retry_count,
                            job.error_message,
                            _ts(job.created_at),
                        ),
                    )
            except sqlite3.IntegrityError:
                raise ValueError(f"Scheduled job '{job.id}' already exists") from None

    def update(self, job: ChainScheduledJob) -> None:
        with self.db.lock:
            conn = self.db.connection()
            with conn:
                cursor = conn.execute(
                    "UPDATE chain_scheduled_jobs SET scheduled_at = ?, picked_up_at = ?, completed_at = ?, "
                    "failed_at = ?, retry_count = ?, error_message = ? WHERE id = ?",
                    (
                        _ts(job.scheduled_at),
                        _ts(job.picked_up_at),
                        _ts(job.completed_at),
                        _ts(job.failed_at),
                        job.retry_count,
                        job.error_message,
                        job.id,
                    ),
                )
            if cursor.rowcount == 0:
                raise KeyError(f"Scheduled job '{job.id}' not found")

    def get(self, job_id: str) -> ChainScheduledJob:
        rows = self._select("id = ?", (job_id,))
        if not rows:
            raise KeyError(f"Scheduled job '{job_id}' not found")
        return rows[0]

    def live_for_step(self, step_execution_id: str) -> ChainScheduledJob | None:
        rows = self._select(f"step_execution_id = ? AND {_LIVE}", (step_execution_id,))
        return rows[0] if rows else None

    def due(self, now: datetime, limit: int) -> list[ChainScheduledJob]:
        return self._select(
            f"picked_up_at IS NULL AND {_LIVE} AND scheduled_at <= ? ORDER BY scheduled_at LIMIT ?",
            (_ts(now), limit),
        )

    def claim(self, job_id: str, now: datetime) -> bool:
        with self.db.lock:
            conn = self.db.connection()
            with conn:
                cursor = conn.execute(
                    f"UPDATE chain_scheduled_jobs SET picked_up_at = ? WHERE id = ? AND picked_up_at IS NULL AND {_LIVE}",
                    (_ts(now), job_id),
                )
            return cursor.rowcount == 1

    def claimed_before(self, cutoff: datetime) -> list[ChainScheduledJob]:
        return self._select(f"picked_up_at IS NOT NULL AND picked_up_at < ? AND {_LIVE}", (_ts(cutoff),))

    def list_for_execution(self, execution_id: str) -> list[ChainScheduledJob]:
        return self._select("chain_execution_id = ? ORDER BY created_at", (execution_id,))

    def _select(self, where: str, params: tuple) -> list[ChainScheduledJob]:
        with self.db.lock:
            rows = self.db.connection().execute(
                f"SELECT {self._COLUMNS} FROM chain_scheduled_jobs WHERE {where}", params
            ).fetchall()
        return [
            ChainScheduledJob(
                id=row["id"],
                step_execution_id=row["step_execution_id"],
                chain_execution_id=row["chain_execution_id"],
                scheduled_at=_dt(row["scheduled_at"]),
                picked_up_at=_dt(row["picked_up_at"]),
                completed_at=_dt(row["completed_at"]),
                failed_at=_dt(row["failed_at"]),
                retry_count=row["retry_count"],
                error_message=row["error_message"],
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]


class SQLiteEntityMappingRepository(EntityMappingRepository):
    def __init__(self, db: SQLiteDatabase):
        self.db = db

    def add(self, mapping: ChainEntityMapping) -> None:
        with self.db.lock:
            conn = self.db.connection()
            with conn:
                conn.execute(
                    "INSERT INTO chain_entity_mappings (id, chain_execution_id, step_alias, entity_type, entity_id, "
                    "module, created_at) VALUES (?, ?, ?, ?, ?, ?, ?)",
                    (
                        mapping.id,
                        mapping.chain_execution_id,
                        mapping.step_alias,
                        mapping.entity_type,
                        mapping.entity_id,
                        mapping.module,
                        _ts(mapping.created_at),
                    ),
                )

    def for_execution(self, execution_id: str) -> list[ChainEntityMapping]:
        return self._select("chain_execution_id = ?", (execution_id,))

    def find_by_entity(self, entity_id: str, entity_type: str | None = None) -> list[ChainEntityMapping]:
        if entity_type is None:
            return self._select("entity_id = ?", (entity_id,))
        return self._select("entity_type = ? AND entity_id = ?", (entity_type, entity_id))

    def _select(self, where: str, params: tuple) -> list[ChainEntityMapping]:
        with self.db.lock:
            rows = self.db.connection().execute(
                "SELECT id, chain_execution_id, step_alias, entity_type, entity_id, module, created_at "
                f"FROM chain_entity_mappings WHERE {where} ORDER BY created_at, rowid",
                params,
            ).fetchall()
        return [
            ChainEntityMapping(
                id=row["id"],
                chain_execution_id=row["chain_execution_id"],
                step_alias=row["step_alias"],
                entity_type=row["entity_type"],
                entity_id=row["entity_id"],
                module=row["module"],
                created_at=_dt(row["created_at"]),
            )
            for row in rows
        ]
