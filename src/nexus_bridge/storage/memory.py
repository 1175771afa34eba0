"""In-memory resource-state store for unit tests only."""

from __future__ import annotations

import threading
from datetime import datetime

from nexus_bridge.storage.models import (
    TERMINAL_TASK_STATUSES,
    PipelineRecord,
    ResourceGroupRecord,
    SessionRecord,
    StateSnapshot,
    TaskRecord,
    WorkerRecord,
    utcnow,
)


class InMemoryResourceStateStore:
    """Dict-backed implementation of ``ResourceStateStore``."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sessions: dict[str, SessionRecord] = {}
        self._groups: dict[str, ResourceGroupRecord] = {}
        self._workers: dict[str, WorkerRecord] = {}
        self._pipelines: dict[str, PipelineRecord] = {}
        self._tasks: dict[str, TaskRecord] = {}

    def migrate(self) -> None:
        return None

    def upsert_session(self, record: SessionRecord) -> SessionRecord:
        with self._lock:
            if record.status == "active":
                for user_id, existing in self._sessions.items():
                    if user_id != record.user_id and existing.status == "active":
                        self._sessions[user_id] = existing.model_copy(update={"status": "inactive"})
            self._sessions[record.user_id] = record.model_copy(deep=True)
        return record

    def get_active_session(self, now: datetime | None = None) -> SessionRecord | None:
        with self._lock:
            candidates = [s for s in self._sessions.values() if s.status == "active"]
        candidates.sort(key=lambda s: s.authenticated_at, reverse=True)
        for session in candidates:
            if session.is_valid(now):
                return session.model_copy(deep=True)
        return None

    def upsert_group(self, record: ResourceGroupRecord) -> ResourceGroupRecord:
        with self._lock:
            self._groups[record.group_id] = record.model_copy(deep=True)
        return record

    def upsert_worker(self, record: WorkerRecord) -> WorkerRecord:
        with self._lock:
            self._workers[record.worker_id] = record.model_copy(deep=True)
        return record

    def upsert_pipeline(self, record: PipelineRecord) -> PipelineRecord:
        with self._lock:
            self._pipelines[record.pipeline_id] = record.model_copy(deep=True)
        return record

    def upsert_task(self, record: TaskRecord) -> TaskRecord:
        with self._lock:
            self._tasks[record.task_id] = record.model_copy(deep=True)
        return record

    def get_task(self, task_id: str) -> TaskRecord | None:
        with self._lock:
            task = self._tasks.get(task_id)
        return task.model_copy(deep=True) if task else None

    def snapshot_active_state(self, now: datetime | None = None) -> StateSnapshot:
        session = self.get_active_session(now)
        with self._lock:
            return StateSnapshot(
                session=session,
                groups=[g.model_copy(deep=True) for g in self._groups.values() if g.status == "active"],
                workers=[w.model_copy(deep=True) for w in self._workers.values() if w.status == "active"],
                pipelines=[
                    p.model_copy(deep=True) for p in self._pipelines.values() if p.status == "active"
                ],
                tasks=[
                    t.model_copy(deep=True)
                    for t in self._tasks.values()
                    if t.status not in TERMINAL_TASK_STATUSES
                ],
            )

    def clear_session(self) -> None:
        with self._lock:
            for key, session in self._sessions.items():
                if session.status == "active":
                    self._sessions[key] = session.model_copy(
                        update={"status": "inactive", "session_token": ""}
                    )
            self._retire(utcnow())

    def retire_resources(self) -> None:
        with self._lock:
            self._retire(utcnow())

    def _retire(self, now: datetime) -> None:
        for key, group in self._groups.items():
            if group.status == "active":
                self._groups[key] = group.model_copy(
                    update={"status": "destroyed", "destroyed_at": now}
                )
        for key, worker in self._workers.items():
            if worker.status == "active":
                self._workers[key] = worker.model_copy(update={"status": "destroyed"})
        for key, pipeline in self._pipelines.items():
            if pipeline.status == "active":
                self._pipelines[key] = pipeline.model_copy(update={"status": "inactive"})

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "sessions": len(self._sessions),
                "resource_groups": len(self._groups),
                "workers": len(self._workers),
                "pipelines": len(self._pipelines),
                "tasks": len(self._tasks),
            }

    def close(self) -> None:
        return None
