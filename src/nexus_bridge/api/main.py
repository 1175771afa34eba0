"""FastAPI surface over the bridge application.

Terms used in this file:
- Lifespan: startup/shutdown hook; startup resolves credentials or restores.
- app.state.bridge: the shared ``BridgeApplication`` used by every route.
- Error mapping: each ``BridgeError`` code maps to one HTTP status.
"""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from nexus_bridge.app import BridgeApplication, BridgeStatus
from nexus_bridge.config.settings import get_settings
from nexus_bridge.errors import BridgeError
from nexus_bridge.remote.schemas import PipelineExecution
from nexus_bridge.session.auth import AuthOutcome, Credentials
from nexus_bridge.storage.models import TaskPriority, TaskRecord, TaskStrategy

logger = logging.getLogger(__name__)

HTTP_STATUS_BY_CODE: dict[str, int] = {
    "validation_error": 422,
    "invalid_credentials": 401,
    "not_authenticated": 401,
    "no_credentials_available": 401,
    "pipeline_not_found": 404,
    "task_not_found": 404,
    "already_authenticating": 409,
    "remote_rejected": 502,
    "remote_unavailable": 503,
    "storage_error": 500,
}


class LoginRequest(BaseModel):
    email: str
    password: str


class RegisterRequest(LoginRequest):
    full_name: str | None = None


class CreateTaskRequest(BaseModel):
    task: str = Field(min_length=1)
    strategy: TaskStrategy = "adaptive"
    priority: TaskPriority = "medium"
    max_workers: int = Field(default=3, ge=1)


class ExecutePipelineRequest(BaseModel):
    input_data: dict[str, Any] = Field(default_factory=dict)


def create_app(bridge: BridgeApplication | None = None) -> FastAPI:
    """Application factory.

    Pass ``bridge`` to reuse an already wired application (tests do this);
    otherwise one is built from ``get_settings()``.
    """
    bridge = bridge or BridgeApplication(get_settings())

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await app.state.bridge.start()
        try:
            yield
        finally:
            await app.state.bridge.shutdown()

    app = FastAPI(title="nexus_bridge", version="0.1.0", lifespan=lifespan)
    app.state.bridge = bridge

    @app.exception_handler(BridgeError)
    async def bridge_error_handler(_: Request, exc: BridgeError) -> JSONResponse:
        status_code = HTTP_STATUS_BY_CODE.get(exc.code, 500)
        logger.info("api event=error code=%s status=%d", exc.code, status_code)
        return JSONResponse(status_code=status_code, content={"error": exc.to_dict()})

    @app.get("/health")
    @app.get("/healthz")
    def health() -> dict[str, Any]:
        return {"status": "ok", "authenticated": app.state.bridge.client.is_authenticated}

    @app.get("/status", response_model=BridgeStatus)
    def status() -> BridgeStatus:
        return app.state.bridge.status()

    @app.post("/auth/login", response_model=AuthOutcome)
    async def login(payload: LoginRequest) -> AuthOutcome:
        return await app.state.bridge.auth.authenticate(
            Credentials(email=payload.email, password=payload.password, action="login")
        )

    @app.post("/auth/register", response_model=AuthOutcome)
    async def register(payload: RegisterRequest) -> AuthOutcome:
        return await app.state.bridge.auth.authenticate(
            Credentials(
                email=payload.email,
                password=payload.password,
                action="register",
                display_name=payload.full_name,
            )
        )

    @app.post("/auth/logout")
    async def logout() -> dict[str, str]:
        await app.state.bridge.auth.logout()
        return {"status": "logged_out"}

    @app.post("/tasks", response_model=TaskRecord)
    async def create_task(payload: CreateTaskRequest) -> TaskRecord:
        return await app.state.bridge.client.orchestrate_task(
            payload.task,
            {
                "strategy": payload.strategy,
                "priority": payload.priority,
                "max_workers": payload.max_workers,
            },
        )

    @app.get("/tasks/{task_id}", response_model=TaskRecord)
    async def get_task(task_id: str) -> TaskRecord:
        return await app.state.bridge.client.task_status(task_id)

    @app.post("/pipelines/{name}/execute", response_model=PipelineExecution)
    async def execute_pipeline(
        name: str, payload: ExecutePipelineRequest | None = None
    ) -> PipelineExecution:
        input_data = payload.input_data if payload else {}
        return await app.state.bridge.client.execute_named_pipeline(name, input_data)

    return app
