"""Storage interface for the local resource-state mirror."""

from __future__ import annotations

from datetime import datetime
from typing import Protocol

from nexus_bridge.storage.models import (
    PipelineRecord,
    ResourceGroupRecord,
    SessionRecord,
    StateSnapshot,
    TaskRecord,
    WorkerRecord,
)


class ResourceStateStore(Protocol):
    """Record-granular store; no multi-record transactions are offered."""

    def migrate(self) -> None: ...

    def upsert_session(self, record: SessionRecord) -> SessionRecord: ...

    def get_active_session(self, now: datetime | None = None) -> SessionRecord | None: ...

    def upsert_group(self, record: ResourceGroupRecord) -> ResourceGroupRecord: ...

    def upsert_worker(self, record: WorkerRecord) -> WorkerRecord: ...

    def upsert_pipeline(self, record: PipelineRecord) -> PipelineRecord: ...

    def upsert_task(self, record: TaskRecord) -> TaskRecord: ...

    def get_task(self, task_id: str) -> TaskRecord | None: ...

    def snapshot_active_state(self, now: datetime | None = None) -> StateSnapshot: ...

    def clear_session(self) -> None: ...

    def retire_resources(self) -> None: ...

    def stats(self) -> dict[str, int]: ...

    def close(self) -> None: ...
