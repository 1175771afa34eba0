"""PostgreSQL-backed resource-state store with automatic table migration."""

from __future__ import annotations

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from typing import Any

from nexus_bridge.errors import StorageError
from nexus_bridge.storage.models import (
    TERMINAL_TASK_STATUSES,
    PipelineRecord,
    PipelineStep,
    ResourceGroupRecord,
    SessionRecord,
    StateSnapshot,
    TaskRecord,
    WorkerRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

_TABLES = ("sessions", "resource_groups", "workers", "pipelines", "tasks")


class PostgresResourceStateStore:
    """Persist the session and resource mirror in PostgreSQL."""

    def __init__(self, database_url: str) -> None:
        if not database_url:
            raise ValueError("NEXUS_BRIDGE_DATABASE_URL is required")
        self.database_url = database_url
        self._lock = threading.Lock()
        self._psycopg, self._dict_row, self._json_wrapper = self._load_psycopg()

    def migrate(self) -> None:
        with self._transaction() as conn:
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    user_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    session_token TEXT NOT NULL,
                    expires_at TIMESTAMPTZ NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    authenticated_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS resource_groups (
                    group_id TEXT PRIMARY KEY,
                    topology TEXT NOT NULL,
                    max_workers INTEGER NOT NULL,
                    strategy TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TIMESTAMPTZ NOT NULL,
                    destroyed_at TIMESTAMPTZ
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workers (
                    worker_id TEXT PRIMARY KEY,
                    group_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    name TEXT NOT NULL,
                    capabilities_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipelines (
                    pipeline_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    steps_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    triggers_json JSONB NOT NULL DEFAULT '[]'::jsonb,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TIMESTAMPTZ NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    result_json JSONB,
                    created_at TIMESTAMPTZ NOT NULL,
                    completed_at TIMESTAMPTZ
                )
                """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_groups_status ON resource_groups(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_workers_group ON workers(group_id)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_pipelines_status ON pipelines(status)")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status)")

    def upsert_session(self, record: SessionRecord) -> SessionRecord:
        with self._transaction() as conn:
            if record.status == "active":
                conn.execute(
                    "UPDATE sessions SET status = 'inactive' "
                    "WHERE status = 'active' AND user_id <> %s",
                    (record.user_id,),
                )
            conn.execute(
                """
                INSERT INTO sessions (
                    user_id, email, session_token, expires_at, status, authenticated_at
                ) VALUES (%s, %s, %s, %s, %s, %s)
                ON CONFLICT (user_id) DO UPDATE SET
                    email = EXCLUDED.email,
                    session_token = EXCLUDED.session_token,
                    expires_at = EXCLUDED.expires_at,
                    status = EXCLUDED.status,
                    authenticated_at = EXCLUDED.authenticated_at
                """,
                (
                    record.user_id,
                    record.email,
                    record.session_token,
                    record.expires_at,
                    record.status,
                    record.authenticated_at,
                ),
            )
        return record

    def get_active_session(self, now: datetime | None = None) -> SessionRecord | None:
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE status = 'active' ORDER BY authenticated_at DESC"
            ).fetchall()
        for row in rows:
            session = SessionRecord.model_validate(dict(row))
            if session.is_valid(now):
                return session
        return None

    def upsert_group(self, record: ResourceGroupRecord) -> ResourceGroupRecord:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO resource_groups (
                    group_id, topology, max_workers, strategy, status, created_at, destroyed_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (group_id) DO UPDATE SET
                    topology = EXCLUDED.topology,
                    max_workers = EXCLUDED.max_workers,
                    strategy = EXCLUDED.strategy,
                    status = EXCLUDED.status,
                    destroyed_at = EXCLUDED.destroyed_at
                """,
                (
                    record.group_id,
                    record.topology,
                    record.max_workers,
                    record.strategy,
                    record.status,
                    record.created_at,
                    record.destroyed_at,
                ),
            )
        return record

    def upsert_worker(self, record: WorkerRecord) -> WorkerRecord:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO workers (
                    worker_id, group_id, role, name, capabilities_json, status, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (worker_id) DO UPDATE SET
                    group_id = EXCLUDED.group_id,
                    role = EXCLUDED.role,
                    name = EXCLUDED.name,
                    capabilities_json = EXCLUDED.capabilities_json,
                    status = EXCLUDED.status
                """,
                (
                    record.worker_id,
                    record.group_id,
                    record.role,
                    record.name,
                    self._json_wrapper(record.capabilities),
                    record.status,
                    record.created_at,
                ),
            )
        return record

    def upsert_pipeline(self, record: PipelineRecord) -> PipelineRecord:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pipelines (
                    pipeline_id, name, description, steps_json, triggers_json, status, created_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (pipeline_id) DO UPDATE SET
                    name = EXCLUDED.name,
                    description = EXCLUDED.description,
                    steps_json = EXCLUDED.steps_json,
                    triggers_json = EXCLUDED.triggers_json,
                    status = EXCLUDED.status
                """,
                (
                    record.pipeline_id,
                    record.name,
                    record.description,
                    self._json_wrapper([step.model_dump(mode="json") for step in record.steps]),
                    self._json_wrapper(record.triggers),
                    record.status,
                    record.created_at,
                ),
            )
        return record

    def upsert_task(self, record: TaskRecord) -> TaskRecord:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO tasks (
                    task_id, description, priority, strategy, status,
                    result_json, created_at, completed_at
                ) VALUES (%s, %s, %s, %s, %s, %s, %s, %s)
                ON CONFLICT (task_id) DO UPDATE SET
                    description = EXCLUDED.description,
                    priority = EXCLUDED.priority,
                    strategy = EXCLUDED.strategy,
                    status = EXCLUDED.status,
                    result_json = EXCLUDED.result_json,
                    completed_at = EXCLUDED.completed_at
                """,
                (
                    record.task_id,
                    record.description,
                    record.priority,
                    record.strategy,
                    record.status,
                    self._json_wrapper(record.result) if record.result is not None else None,
                    record.created_at,
                    record.completed_at,
                ),
            )
        return record

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE task_id = %s", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def snapshot_active_state(self, now: datetime | None = None) -> StateSnapshot:
        session = self.get_active_session(now)
        with self._transaction() as conn:
            groups = conn.execute(
                "SELECT * FROM resource_groups WHERE status = 'active' ORDER BY created_at"
            ).fetchall()
            workers = conn.execute(
                "SELECT * FROM workers WHERE status = 'active' ORDER BY created_at"
            ).fetchall()
            pipelines = conn.execute(
                "SELECT * FROM pipelines WHERE status = 'active' ORDER BY created_at"
            ).fetchall()
            tasks = conn.execute(
                "SELECT * FROM tasks WHERE NOT (status = ANY(%s)) ORDER BY created_at",
                (sorted(TERMINAL_TASK_STATUSES),),
            ).fetchall()
        return StateSnapshot(
            session=session,
            groups=[ResourceGroupRecord.model_validate(dict(row)) for row in groups],
            workers=[self._row_to_worker(row) for row in workers],
            pipelines=[self._row_to_pipeline(row) for row in pipelines],
            tasks=[self._row_to_task(row) for row in tasks],
        )

    def clear_session(self) -> None:
        with self._transaction() as conn:
            conn.execute(
                "UPDATE sessions SET status = 'inactive', session_token = '' WHERE status = 'active'"
            )
            self._retire(conn)
        logger.info("store event=session_cleared backend=postgres")

    def retire_resources(self) -> None:
        with self._transaction() as conn:
            self._retire(conn)
        logger.info("store event=resources_retired backend=postgres")

    @staticmethod
    def _retire(conn: Any) -> None:
        conn.execute(
            "UPDATE resource_groups SET status = 'destroyed', destroyed_at = %s "
            "WHERE status = 'active'",
            (utcnow(),),
        )
        conn.execute("UPDATE workers SET status = 'destroyed' WHERE status = 'active'")
        conn.execute("UPDATE pipelines SET status = 'inactive' WHERE status = 'active'")

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._transaction() as conn:
            for table in _TABLES:
                row = conn.execute(f"SELECT COUNT(*) AS total FROM {table}").fetchone()
                counts[table] = int(row["total"])
        return counts

    def close(self) -> None:
        return None

    @contextmanager
    def _transaction(self) -> Iterator[Any]:
        try:
            with self._lock, self._connect() as conn:
                yield conn
                conn.commit()
        except self._psycopg.Error as exc:
            raise StorageError(f"PostgreSQL operation failed: {exc}") from exc

    def _connect(self) -> Any:
        """Open a psycopg connection that yields dict-like rows."""
        return self._psycopg.connect(self.database_url, row_factory=self._dict_row)

    @staticmethod
    def _load_psycopg() -> tuple[Any, Any, Any]:
        """Import psycopg and helpers with a friendly install hint on failure."""
        try:
            import psycopg
            from psycopg.rows import dict_row
            from psycopg.types.json import Json
        except ImportError as exc:  # pragma: no cover - exercised only without dependency
            raise RuntimeError(
                "PostgreSQL backend requires psycopg. Install with: "
                'python -m pip install "psycopg[binary]>=3.2,<4.0"'
            ) from exc
        return psycopg, dict_row, Json

    @staticmethod
    def _row_to_worker(row: Any) -> WorkerRecord:
        return WorkerRecord(
            worker_id=row["worker_id"],
            group_id=row["group_id"],
            role=row["role"],
            name=row["name"],
            capabilities=list(row["capabilities_json"] or []),
            status=row["status"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_pipeline(row: Any) -> PipelineRecord:
        return PipelineRecord(
            pipeline_id=row["pipeline_id"],
            name=row["name"],
            description=row["description"],
            steps=[PipelineStep.model_validate(step) for step in row["steps_json"] or []],
            triggers=list(row["triggers_json"] or []),
            status=row["status"],
            created_at=row["created_at"],
        )

    @staticmethod
    def _row_to_task(row: Any) -> TaskRecord:
        result = row["result_json"]
        return TaskRecord(
            task_id=row["task_id"],
            description=row["description"],
            priority=row["priority"],
            strategy=row["strategy"],
            status=row["status"],
            result=result if isinstance(result, dict) else None,
            created_at=row["created_at"],
            completed_at=row["completed_at"],
        )
