"""SQLite storage backend for the local resource-state mirror.

Terms used in this file:
- Upsert: insert a row, or overwrite the existing row with the same id.
- WAL: write-ahead logging journal mode; readers do not block the writer.
- Record transaction: each write commits on its own; kinds are never batched.
"""

from __future__ import annotations

import json
import logging
import sqlite3
import threading
from collections.abc import Iterator
from contextlib import closing, contextmanager
from datetime import datetime
from pathlib import Path
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


class SQLiteResourceStateStore:
    """Thread-safe SQLite-backed mirror of sessions and resource handles."""

    def __init__(self, db_path: Path | str) -> None:
        self.db_path = Path(db_path).expanduser()
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        # Serializes writers that share this instance; SQLite locks the file for others.
        self._lock = threading.Lock()
        self.migrate()

    def migrate(self) -> None:
        """Create tables and indexes if they do not already exist."""
        with self._transaction() as conn:
            conn.execute("PRAGMA journal_mode=WAL;")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS sessions (
                    user_id TEXT PRIMARY KEY,
                    email TEXT NOT NULL,
                    session_token TEXT NOT NULL,
                    expires_at TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    authenticated_at TEXT NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS resource_groups (
                    group_id TEXT PRIMARY KEY,
                    topology TEXT NOT NULL,
                    max_workers INTEGER NOT NULL,
                    strategy TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL,
                    destroyed_at TEXT
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS workers (
                    worker_id TEXT PRIMARY KEY,
                    group_id TEXT NOT NULL,
                    role TEXT NOT NULL,
                    name TEXT NOT NULL,
                    capabilities_json TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS pipelines (
                    pipeline_id TEXT PRIMARY KEY,
                    name TEXT NOT NULL,
                    description TEXT NOT NULL DEFAULT '',
                    steps_json TEXT NOT NULL DEFAULT '[]',
                    triggers_json TEXT NOT NULL DEFAULT '[]',
                    status TEXT NOT NULL DEFAULT 'active',
                    created_at TEXT NOT NULL
                )
                """)
            conn.execute("""
                CREATE TABLE IF NOT EXISTS tasks (
                    task_id TEXT PRIMARY KEY,
                    description TEXT NOT NULL,
                    priority TEXT NOT NULL,
                    strategy TEXT NOT NULL,
                    status TEXT NOT NULL DEFAULT 'pending',
                    result_json TEXT,
                    created_at TEXT NOT NULL,
                    completed_at TEXT
                )
                """)
            conn.execute("CREATE INDEX IF NOT EXISTS idx_sessions_status ON sessions(status);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_groups_status ON resource_groups(status);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_workers_group ON workers(group_id);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_workers_status ON workers(status);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_pipelines_status ON pipelines(status);")
            conn.execute("CREATE INDEX IF NOT EXISTS idx_tasks_status ON tasks(status);")

    def upsert_session(self, record: SessionRecord) -> SessionRecord:
        """Store ``record``; any other active session is flipped to inactive."""
        with self._transaction() as conn:
            if record.status == "active":
                conn.execute(
                    "UPDATE sessions SET status = 'inactive' WHERE status = 'active' AND user_id != ?",
                    (record.user_id,),
                )
            conn.execute(
                """
                INSERT INTO sessions (
                    user_id, email, session_token, expires_at, status, authenticated_at
                ) VALUES (?, ?, ?, ?, ?, ?)
                ON CONFLICT(user_id) DO UPDATE SET
                    email = excluded.email,
                    session_token = excluded.session_token,
                    expires_at = excluded.expires_at,
                    status = excluded.status,
                    authenticated_at = excluded.authenticated_at
                """,
                (
                    record.user_id,
                    record.email,
                    record.session_token,
                    record.expires_at.isoformat(),
                    record.status,
                    record.authenticated_at.isoformat(),
                ),
            )
        return record

    def get_active_session(self, now: datetime | None = None) -> SessionRecord | None:
        """Most recent active session, or None when absent or already expired."""
        with self._transaction() as conn:
            rows = conn.execute(
                "SELECT * FROM sessions WHERE status = 'active' ORDER BY authenticated_at DESC"
            ).fetchall()
        for row in rows:
            session = self._row_to_session(row)
            if session.is_valid(now):
                return session
        return None

    def upsert_group(self, record: ResourceGroupRecord) -> ResourceGroupRecord:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO resource_groups (
                    group_id, topology, max_workers, strategy, status, created_at, destroyed_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(group_id) DO UPDATE SET
                    topology = excluded.topology,
                    max_workers = excluded.max_workers,
                    strategy = excluded.strategy,
                    status = excluded.status,
                    destroyed_at = excluded.destroyed_at
                """,
                (
                    record.group_id,
                    record.topology,
                    record.max_workers,
                    record.strategy,
                    record.status,
                    record.created_at.isoformat(),
                    _iso_or_none(record.destroyed_at),
                ),
            )
        return record

    def upsert_worker(self, record: WorkerRecord) -> WorkerRecord:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO workers (
                    worker_id, group_id, role, name, capabilities_json, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(worker_id) DO UPDATE SET
                    group_id = excluded.group_id,
                    role = excluded.role,
                    name = excluded.name,
                    capabilities_json = excluded.capabilities_json,
                    status = excluded.status
                """,
                (
                    record.worker_id,
                    record.group_id,
                    record.role,
                    record.name,
                    json.dumps(record.capabilities),
                    record.status,
                    record.created_at.isoformat(),
                ),
            )
        return record

    def upsert_pipeline(self, record: PipelineRecord) -> PipelineRecord:
        with self._transaction() as conn:
            conn.execute(
                """
                INSERT INTO pipelines (
                    pipeline_id, name, description, steps_json, triggers_json, status, created_at
                ) VALUES (?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(pipeline_id) DO UPDATE SET
                    name = excluded.name,
                    description = excluded.description,
                    steps_json = excluded.steps_json,
                    triggers_json = excluded.triggers_json,
                    status = excluded.status
                """,
                (
                    record.pipeline_id,
                    record.name,
                    record.description,
                    json.dumps([step.model_dump(mode="json") for step in record.steps]),
                    json.dumps(record.triggers),
                    record.status,
                    record.created_at.isoformat(),
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
                ) VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                ON CONFLICT(task_id) DO UPDATE SET
                    description = excluded.description,
                    priority = excluded.priority,
                    strategy = excluded.strategy,
                    status = excluded.status,
                    result_json = excluded.result_json,
                    completed_at = excluded.completed_at
                """,
                (
                    record.task_id,
                    record.description,
                    record.priority,
                    record.strategy,
                    record.status,
                    json.dumps(record.result) if record.result is not None else None,
                    record.created_at.isoformat(),
                    _iso_or_none(record.completed_at),
                ),
            )
        return record

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._transaction() as conn:
            row = conn.execute("SELECT * FROM tasks WHERE task_id = ?", (task_id,)).fetchone()
        if row is None:
            return None
        return self._row_to_task(row)

    def snapshot_active_state(self, now: datetime | None = None) -> StateSnapshot:
        """Read every active record. Each kind is read independently."""
        session = self.get_active_session(now)
        with self._transaction() as conn:
            groups = conn.execute(
                "SELECT * FROM resource_groups WHERE status = 'active' ORDER BY created_at"
            ).fetchall()
            workers = conn.execute(
                "SELECT * FROM workers WHERE status = 'active' ORDER BY created_at, rowid"
            ).fetchall()
            pipelines = conn.execute(
                "SELECT * FROM pipelines WHERE status = 'active' ORDER BY created_at, rowid"
            ).fetchall()
            placeholders = ", ".join("?" for _ in TERMINAL_TASK_STATUSES)
            tasks = conn.execute(
                f"SELECT * FROM tasks WHERE status NOT IN ({placeholders}) ORDER BY created_at",
                tuple(sorted(TERMINAL_TASK_STATUSES)),
            ).fetchall()
        return StateSnapshot(
            session=session,
            groups=[self._row_to_group(row) for row in groups],
            workers=[self._row_to_worker(row) for row in workers],
            pipelines=[self._row_to_pipeline(row) for row in pipelines],
            tasks=[self._row_to_task(row) for row in tasks],
        )

    def clear_session(self) -> None:
        """Deactivate the session and retire every owned resource in one transaction."""
        with self._transaction() as conn:
            conn.execute(
                "UPDATE sessions SET status = 'inactive', session_token = '' WHERE status = 'active'"
            )
            self._retire(conn)
        logger.info("store event=session_cleared db_path=%s", self.db_path)

    def retire_resources(self) -> None:
        """Retire active groups, workers and pipelines; the session is left alone."""
        with self._transaction() as conn:
            self._retire(conn)
        logger.info("store event=resources_retired db_path=%s", self.db_path)

    @staticmethod
    def _retire(conn: sqlite3.Connection) -> None:
        conn.execute(
            "UPDATE resource_groups SET status = 'destroyed', destroyed_at = ? "
            "WHERE status = 'active'",
            (utcnow().isoformat(),),
        )
        conn.execute("UPDATE workers SET status = 'destroyed' WHERE status = 'active'")
        conn.execute("UPDATE pipelines SET status = 'inactive' WHERE status = 'active'")

    def stats(self) -> dict[str, int]:
        counts: dict[str, int] = {}
        with self._transaction() as conn:
            for table in _TABLES:
                counts[table] = int(conn.execute(f"SELECT COUNT(*) FROM {table}").fetchone()[0])
        return counts

    def close(self) -> None:
        return None

    @contextmanager
    def _transaction(self) -> Iterator[sqlite3.Connection]:
        """One connection, one transaction: commit on success, roll back on error."""
        try:
            with self._lock, closing(self._connect()) as conn:
                with conn:
                    yield conn
        except sqlite3.Error as exc:
            raise StorageError(
                f"SQLite operation failed: {exc}", context={"db_path": str(self.db_path)}
            ) from exc

    def _connect(self) -> sqlite3.Connection:
        conn = sqlite3.connect(self.db_path, timeout=5.0)
        conn.row_factory = sqlite3.Row
        return conn

    @staticmethod
    def _row_to_session(row: sqlite3.Row) -> SessionRecord:
        return SessionRecord(
            user_id=row["user_id"],
            email=row["email"],
            session_token=row["session_token"],
            expires_at=_parse_datetime(row["expires_at"]),
            status=row["status"],
            authenticated_at=_parse_datetime(row["authenticated_at"]),
        )

    @staticmethod
    def _row_to_group(row: sqlite3.Row) -> ResourceGroupRecord:
        return ResourceGroupRecord(
            group_id=row["group_id"],
            topology=row["topology"],
            max_workers=row["max_workers"],
            strategy=row["strategy"],
            status=row["status"],
            created_at=_parse_datetime(row["created_at"]),
            destroyed_at=_parse_optional_datetime(row["destroyed_at"]),
        )

    @staticmethod
    def _row_to_worker(row: sqlite3.Row) -> WorkerRecord:
        return WorkerRecord(
            worker_id=row["worker_id"],
            group_id=row["group_id"],
            role=row["role"],
            name=row["name"],
            capabilities=_parse_json_list(row["capabilities_json"]),
            status=row["status"],
            created_at=_parse_datetime(row["created_at"]),
        )

    @staticmethod
    def _row_to_pipeline(row: sqlite3.Row) -> PipelineRecord:
        return PipelineRecord(
            pipeline_id=row["pipeline_id"],
            name=row["name"],
            description=row["description"],
            steps=[PipelineStep.model_validate(step) for step in _parse_json_list(row["steps_json"])],
            triggers=_parse_json_list(row["triggers_json"]),
            status=row["status"],
            created_at=_parse_datetime(row["created_at"]),
        )

    @staticmethod
    def _row_to_task(row: sqlite3.Row) -> TaskRecord:
        result_raw = row["result_json"]
        result = json.loads(result_raw) if result_raw else None
        return TaskRecord(
            task_id=row["task_id"],
            description=row["description"],
            priority=row["priority"],
            strategy=row["strategy"],
            status=row["status"],
            result=result if isinstance(result, dict) else None,
            created_at=_parse_datetime(row["created_at"]),
            completed_at=_parse_optional_datetime(row["completed_at"]),
        )


def _iso_or_none(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_datetime(raw: Any) -> datetime:
    if isinstance(raw, datetime):
        return raw
    if isinstance(raw, str):
        return datetime.fromisoformat(raw)
    raise TypeError(f"Unsupported datetime value: {type(raw)!r}")


def _parse_optional_datetime(raw: Any) -> datetime | None:
    if raw is None or raw == "":
        return None
    return _parse_datetime(raw)


def _parse_json_list(raw: Any) -> list[Any]:
    if raw is None:
        return []
    parsed = json.loads(raw) if isinstance(raw, str) else raw
    if isinstance(parsed, list):
        return parsed
    return []
