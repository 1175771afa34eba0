"""Storage models mirroring the remote session and resource handles.

Terms used in this file:
- Group: a set of workers coordinated under one topology on the remote service.
- Worker: one named unit with a role and capability set, owned by a group.
- Pipeline: a named, ordered list of steps with trigger conditions.
- Snapshot: every active-status record of every kind, read at one moment.
"""

from __future__ import annotations

from datetime import UTC, datetime
from typing import Any, Literal

from pydantic import BaseModel, Field

SessionStatus = Literal["active", "inactive"]
ResourceStatus = Literal["active", "destroyed"]
PipelineStatus = Literal["active", "inactive"]
TaskStatus = Literal["pending", "running", "completed", "failed"]
TaskPriority = Literal["low", "medium", "high", "critical"]
TaskStrategy = Literal["parallel", "sequential", "adaptive"]
Topology = Literal["hierarchical", "mesh", "ring", "star"]

TERMINAL_TASK_STATUSES: frozenset[str] = frozenset({"completed", "failed"})


def utcnow() -> datetime:
    return datetime.now(tz=UTC)


class SessionRecord(BaseModel):
    """The single authenticated session mirrored from the remote service."""

    user_id: str
    email: str
    # Opaque bearer token; blanked on logout.
    session_token: str
    expires_at: datetime
    status: SessionStatus = "active"
    authenticated_at: datetime = Field(default_factory=utcnow)

    def is_valid(self, now: datetime | None = None) -> bool:
        """Active and not yet expired at ``now``."""
        current = now or utcnow()
        return self.status == "active" and _aware(self.expires_at) > _aware(current)


class ResourceGroupRecord(BaseModel):
    group_id: str
    topology: Topology
    max_workers: int = Field(ge=1)
    strategy: str
    status: ResourceStatus = "active"
    created_at: datetime = Field(default_factory=utcnow)
    destroyed_at: datetime | None = None


class WorkerRecord(BaseModel):
    worker_id: str
    # Reference only; a worker never outlives the store's view of its group.
    group_id: str
    role: str
    name: str
    capabilities: list[str] = Field(default_factory=list)
    status: ResourceStatus = "active"
    created_at: datetime = Field(default_factory=utcnow)


class PipelineStep(BaseModel):
    name: str
    role: str
    description: str = ""


class PipelineRecord(BaseModel):
    pipeline_id: str
    name: str
    description: str = ""
    steps: list[PipelineStep] = Field(default_factory=list)
    triggers: list[str] = Field(default_factory=list)
    status: PipelineStatus = "active"
    created_at: datetime = Field(default_factory=utcnow)


class TaskRecord(BaseModel):
    task_id: str
    description: str
    priority: TaskPriority = "medium"
    strategy: TaskStrategy = "adaptive"
    status: TaskStatus = "pending"
    result: dict[str, Any] | None = None
    created_at: datetime = Field(default_factory=utcnow)
    completed_at: datetime | None = None


class StateSnapshot(BaseModel):
    """Active records of every kind as of one read."""

    session: SessionRecord | None = None
    groups: list[ResourceGroupRecord] = Field(default_factory=list)
    workers: list[WorkerRecord] = Field(default_factory=list)
    pipelines: list[PipelineRecord] = Field(default_factory=list)
    tasks: list[TaskRecord] = Field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "sessions": 1 if self.session else 0,
            "groups": len(self.groups),
            "workers": len(self.workers),
            "pipelines": len(self.pipelines),
            "tasks": len(self.tasks),
        }


def _aware(value: datetime) -> datetime:
    """Treat naive datetimes read back from a store as UTC."""
    if value.tzinfo is None:
        return value.replace(tzinfo=UTC)
    return value
