"""Typed manifest of every remote operation this bridge is allowed to call."""

from __future__ import annotations

import json
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel

from nexus_bridge.errors import BridgeError, InvalidCredentials, RemoteRejected
from nexus_bridge.remote.schemas import (
    CreateGroupInput,
    CreatePipelineInput,
    ExecutePipelineInput,
    LoginUserInput,
    LogoutUserInput,
    OrchestrateTaskInput,
    RegisterUserInput,
    SpawnWorkerInput,
    TaskStatusInput,
)


@dataclass(frozen=True)
class CapabilitySpec:
    input_model: type[BaseModel]
    category: str
    # Command-line arguments for adapters that drive the remote CLI.
    cli_args: Callable[[Any], list[str]]
    # Error raised when the remote refuses the call.
    rejection: type[BridgeError] = RemoteRejected
    creates_resource: bool = False
    # Secrets must not appear in logs or error context.
    sensitive: bool = False


def _register_args(payload: RegisterUserInput) -> list[str]:
    return [
        "auth",
        "register",
        "-e",
        payload.email,
        "-p",
        payload.password,
        "--name",
        payload.full_name,
    ]


def _login_args(payload: LoginUserInput) -> list[str]:
    return ["auth", "login", "-e", payload.email, "-p", payload.password]


def _create_group_args(payload: CreateGroupInput) -> list[str]:
    return [
        "swarm",
        "init",
        "--topology",
        payload.topology,
        "--max-agents",
        str(payload.max_workers),
        "--strategy",
        payload.strategy,
    ]


def _spawn_worker_args(payload: SpawnWorkerInput) -> list[str]:
    return [
        "agent",
        "spawn",
        "--type",
        payload.role,
        "--name",
        payload.name,
        "--capabilities",
        json.dumps(payload.capabilities),
    ]


def _create_pipeline_args(payload: CreatePipelineInput) -> list[str]:
    return [
        "workflow",
        "create",
        "--name",
        payload.name,
        "--description",
        payload.description,
        "--steps",
        json.dumps([step.model_dump(mode="json") for step in payload.steps]),
        "--triggers",
        json.dumps(payload.triggers),
    ]


def _execute_pipeline_args(payload: ExecutePipelineInput) -> list[str]:
    args = [
        "workflow",
        "execute",
        "--workflow-id",
        payload.pipeline_id,
        "--input",
        json.dumps(payload.input_data),
    ]
    if payload.run_async:
        args.append("--async")
    return args


def _orchestrate_task_args(payload: OrchestrateTaskInput) -> list[str]:
    return [
        "task",
        "orchestrate",
        "--task",
        payload.task,
        "--strategy",
        payload.strategy,
        "--priority",
        payload.priority,
        "--max-agents",
        str(payload.max_workers),
    ]


def _task_status_args(payload: TaskStatusInput) -> list[str]:
    return ["task", "status", "--task-id", payload.task_id]


CAPABILITIES: dict[str, CapabilitySpec] = {
    "register_user": CapabilitySpec(
        input_model=RegisterUserInput,
        category="auth",
        cli_args=_register_args,
        sensitive=True,
    ),
    "login_user": CapabilitySpec(
        input_model=LoginUserInput,
        category="auth",
        cli_args=_login_args,
        rejection=InvalidCredentials,
        sensitive=True,
    ),
    "logout_user": CapabilitySpec(
        input_model=LogoutUserInput,
        category="auth",
        cli_args=lambda _payload: ["auth", "logout"],
    ),
    "create_group": CapabilitySpec(
        input_model=CreateGroupInput,
        category="group",
        cli_args=_create_group_args,
        creates_resource=True,
    ),
    "spawn_worker": CapabilitySpec(
        input_model=SpawnWorkerInput,
        category="group",
        cli_args=_spawn_worker_args,
        creates_resource=True,
    ),
    "create_pipeline": CapabilitySpec(
        input_model=CreatePipelineInput,
        category="pipeline",
        cli_args=_create_pipeline_args,
        creates_resource=True,
    ),
    "execute_pipeline": CapabilitySpec(
        input_model=ExecutePipelineInput,
        category="pipeline",
        cli_args=_execute_pipeline_args,
    ),
    "orchestrate_task": CapabilitySpec(
        input_model=OrchestrateTaskInput,
        category="task",
        cli_args=_orchestrate_task_args,
    ),
    "get_task_status": CapabilitySpec(
        input_model=TaskStatusInput,
        category="task",
        cli_args=_task_status_args,
    ),
}


def list_capabilities(category: str | None = None) -> list[str]:
    return sorted(
        name for name, spec in CAPABILITIES.items() if category is None or spec.category == category
    )


def resource_creating_capabilities() -> frozenset[str]:
    return frozenset(name for name, spec in CAPABILITIES.items() if spec.creates_resource)
