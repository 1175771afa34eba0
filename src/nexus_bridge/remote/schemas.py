"""Argument and result schemas for remote service operations."""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field

from nexus_bridge.storage.models import PipelineStep, TaskPriority, TaskStrategy, Topology

EMAIL_PATTERN = r"^[^\s@]+@[^\s@]+\.[^\s@]+$"

RemoteErrorKind = Literal["rejected", "invalid_credentials", "unavailable", "not_found"]


class StrictModel(BaseModel):
    model_config = ConfigDict(extra="forbid")


class RegisterUserInput(StrictModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1)
    full_name: str = Field(default="Nexus Bridge User", min_length=1)


class LoginUserInput(StrictModel):
    email: str = Field(pattern=EMAIL_PATTERN)
    password: str = Field(min_length=1)


class LogoutUserInput(StrictModel):
    pass


class CreateGroupInput(StrictModel):
    topology: Topology
    max_workers: int = Field(ge=1, le=100)
    strategy: str = Field(min_length=1)


class SpawnWorkerInput(StrictModel):
    role: str = Field(min_length=1)
    name: str = Field(min_length=1)
    capabilities: list[str] = Field(default_factory=list)


class CreatePipelineInput(StrictModel):
    name: str = Field(min_length=1)
    description: str = ""
    steps: list[PipelineStep] = Field(default_factory=list)
    triggers: list[str] = Field(default_factory=list)


class ExecutePipelineInput(StrictModel):
    pipeline_id: str = Field(min_length=1)
    input_data: dict[str, Any] = Field(default_factory=dict)
    run_async: bool = True


class OrchestrateTaskInput(StrictModel):
    task: str = Field(min_length=1)
    strategy: TaskStrategy = "adaptive"
    priority: TaskPriority = "medium"
    max_workers: int = Field(default=3, ge=1)


class TaskStatusInput(StrictModel):
    task_id: str = Field(min_length=1)


class RemoteResult(BaseModel):
    """Structured outcome of one remote call."""

    success: bool
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None
    error_kind: RemoteErrorKind | None = None

    @classmethod
    def ok(cls, **data: Any) -> "RemoteResult":
        return cls(success=True, data=data)

    @classmethod
    def failed(cls, error: str, kind: RemoteErrorKind = "rejected") -> "RemoteResult":
        return cls(success=False, error=error, error_kind=kind)


class PipelineExecution(BaseModel):
    """Handle returned for an asynchronous pipeline run."""

    pipeline_name: str
    pipeline_id: str
    execution_id: str
    status: str = "running"
    detail: dict[str, Any] = Field(default_factory=dict)
