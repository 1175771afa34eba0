"""Authenticated facade over the remote orchestration service.

Terms used in this file:
- Handle: the in-memory copy of a remote resource (group, worker, pipeline).
- Provisioning: the one-time creation of the default group, workers and
  pipelines right after a fresh authentication.
- Restore: rebuilding handles from a stored snapshot without remote calls.
"""

from __future__ import annotations

import asyncio
import logging
from datetime import timedelta
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field

from nexus_bridge.errors import (
    AlreadyAuthenticating,
    BridgeError,
    NotAuthenticated,
    PipelineNotFound,
    RemoteUnavailable,
)
from nexus_bridge.remote.gateway import RemoteGateway
from nexus_bridge.remote.schemas import PipelineExecution
from nexus_bridge.session.provisioning import (
    DEFAULT_GROUP,
    DEFAULT_PIPELINES,
    DEFAULT_WORKERS,
    GroupBlueprint,
    PipelineBlueprint,
    ProvisioningReport,
    StepFailure,
    WorkerBlueprint,
)
from nexus_bridge.storage.base import ResourceStateStore
from nexus_bridge.storage.models import (
    TERMINAL_TASK_STATUSES,
    PipelineRecord,
    ResourceGroupRecord,
    SessionRecord,
    StateSnapshot,
    TaskRecord,
    TaskStatus,
    WorkerRecord,
    utcnow,
)

logger = logging.getLogger(__name__)

_TASK_STATUS_ALIASES: dict[str, TaskStatus] = {
    "pending": "pending",
    "queued": "pending",
    "running": "running",
    "started": "running",
    "in_progress": "running",
    "completed": "completed",
    "succeeded": "completed",
    "success": "completed",
    "done": "completed",
    "failed": "failed",
    "error": "failed",
    "cancelled": "failed",
}


class AuthenticationResult(BaseModel):
    action: str
    session: SessionRecord
    provisioning: ProvisioningReport | None = None


class ClientStatus(BaseModel):
    authenticated: bool
    authenticating: bool
    restored: bool
    user_id: str | None = None
    email: str | None = None
    group_id: str | None = None
    workers: list[WorkerRecord] = Field(default_factory=list)
    pipelines: list[str] = Field(default_factory=list)
    last_provisioning: ProvisioningReport | None = None
    last_error: dict[str, Any] | None = None


class RemoteSessionClient:
    """Owns the session and resource handles for one user of the remote service."""

    def __init__(
        self,
        gateway: RemoteGateway,
        store: ResourceStateStore,
        *,
        session_ttl: timedelta = timedelta(hours=24),
        auto_provision: bool = True,
    ) -> None:
        self.gateway = gateway
        self.store = store
        self.session_ttl = session_ttl
        self.auto_provision = auto_provision
        self._auth_lock = asyncio.Lock()
        self._session: SessionRecord | None = None
        self._group: ResourceGroupRecord | None = None
        self._workers: dict[str, WorkerRecord] = {}
        self._pipelines: dict[str, PipelineRecord] = {}
        self._restored = False
        self._last_report: ProvisioningReport | None = None
        self._last_error: dict[str, Any] | None = None

    @property
    def is_authenticated(self) -> bool:
        return self._session is not None and self._session.is_valid()

    @property
    def authenticating(self) -> bool:
        return self._auth_lock.locked()

    @property
    def last_provisioning(self) -> ProvisioningReport | None:
        return self._last_report

    async def register(
        self, email: str, password: str, display_name: str | None = None
    ) -> AuthenticationResult:
        args: dict[str, Any] = {"email": email, "password": password}
        if display_name:
            args["full_name"] = display_name
        return await self._authenticate("register", "register_user", args, email)

    async def login(self, email: str, password: str) -> AuthenticationResult:
        return await self._authenticate(
            "login", "login_user", {"email": email, "password": password}, email
        )

    async def logout(self) -> None:
        """Invalidate the remote session when possible, then clear local state."""
        if self._session is not None:
            try:
                await self.gateway.call("logout_user", {})
            except BridgeError as exc:
                logger.warning("session event=logout_remote_failed code=%s reason=%s", exc.code, exc)
        user_id = self._session.user_id if self._session else None
        self._reset_handles()
        self.store.clear_session()
        logger.info("session event=logged_out user_id=%s", user_id)

    async def provision(self) -> ProvisioningReport:
        """Create the default group, workers and pipelines, persisting each step.

        A group failure aborts the run. Worker and pipeline failures are
        recorded in the report and skipped without retry.
        """
        self._require_authenticated()
        report = ProvisioningReport()
        self._last_report = report

        try:
            group = await self._create_group(DEFAULT_GROUP)
        except BridgeError as exc:
            logger.error("provisioning event=group_failed code=%s reason=%s", exc.code, exc)
            report.aborted = True
            report.errors.append(f"group: {exc.message}")
            self._last_error = exc.to_dict()
            return report
        report.group_id = group.group_id

        for blueprint in DEFAULT_WORKERS:
            try:
                worker = await self._spawn_worker(group, blueprint)
            except BridgeError as exc:
                logger.warning(
                    "provisioning event=worker_failed role=%s code=%s reason=%s",
                    blueprint.role,
                    exc.code,
                    exc,
                )
                report.workers_failed.append(_failure("worker", blueprint.role, exc))
                report.errors.append(f"worker {blueprint.role}: {exc.message}")
                continue
            report.workers_created.append(worker.worker_id)

        for pipeline_blueprint in DEFAULT_PIPELINES:
            try:
                pipeline = await self._create_pipeline(pipeline_blueprint)
            except BridgeError as exc:
                logger.warning(
                    "provisioning event=pipeline_failed name=%s code=%s reason=%s",
                    pipeline_blueprint.name,
                    exc.code,
                    exc,
                )
                report.pipelines_failed.append(_failure("pipeline", pipeline_blueprint.name, exc))
                report.errors.append(f"pipeline {pipeline_blueprint.name}: {exc.message}")
                continue
            report.pipelines_created.append(pipeline.name)

        logger.info(
            "provisioning event=completed group_id=%s workers=%d/%d pipelines=%d/%d",
            report.group_id,
            len(report.workers_created),
            len(DEFAULT_WORKERS),
            len(report.pipelines_created),
            len(DEFAULT_PIPELINES),
        )
        return report

    async def restore(self, snapshot: StateSnapshot) -> None:
        """Rebuild handles from ``snapshot``. Never calls the remote service."""
        session = snapshot.session
        if session is None or not session.is_valid():
            raise NotAuthenticated("Snapshot does not contain a valid session")

        self._session = session
        groups = sorted(snapshot.groups, key=lambda g: g.created_at, reverse=True)
        self._group = groups[0] if groups else None
        self._workers = {worker.worker_id: worker for worker in snapshot.workers}
        self._pipelines = {pipeline.name: pipeline for pipeline in snapshot.pipelines}
        self._restored = True
        self._last_error = None
        logger.info(
            "session event=restored user_id=%s group_id=%s workers=%d pipelines=%d",
            session.user_id,
            self._group.group_id if self._group else None,
            len(self._workers),
            len(self._pipelines),
        )

    async def orchestrate_task(
        self, description: str, options: dict[str, Any] | None = None
    ) -> TaskRecord:
        self._require_authenticated()
        options = dict(options or {})
        data = await self.gateway.call("orchestrate_task", {**options, "task": description})

        record = TaskRecord(
            task_id=_first(data, "task_id", "taskId", "id") or f"task-{uuid4().hex[:12]}",
            description=description,
            priority=options.get("priority", "medium"),
            strategy=options.get("strategy", "adaptive"),
            status=_task_status(data.get("status"), default="running"),
            result=_as_dict(data.get("result")),
        )
        if record.status in TERMINAL_TASK_STATUSES:
            record.completed_at = utcnow()
        self.store.upsert_task(record)
        logger.info(
            "task event=orchestrated task_id=%s priority=%s strategy=%s status=%s",
            record.task_id,
            record.priority,
            record.strategy,
            record.status,
        )
        return record

    async def task_status(self, task_id: str) -> TaskRecord:
        """Refresh one task from the remote service; falls back to the stored copy."""
        self._require_authenticated()
        existing = self.store.get_task(task_id)
        try:
            data = await self.gateway.call("get_task_status", {"task_id": task_id})
        except RemoteUnavailable as exc:
            if existing is None:
                raise
            logger.warning("task event=status_stale task_id=%s reason=%s", task_id, exc)
            return existing

        status = _task_status(data.get("status"), default=existing.status if existing else "running")
        base = existing or TaskRecord(
            task_id=task_id,
            description=str(data.get("task") or data.get("description") or ""),
        )
        updates: dict[str, Any] = {"status": status}
        result = _as_dict(data.get("result"))
        if result is not None:
            updates["result"] = result
        if status in TERMINAL_TASK_STATUSES and base.completed_at is None:
            updates["completed_at"] = utcnow()
        record = base.model_copy(update=updates)
        self.store.upsert_task(record)
        return record

    async def execute_named_pipeline(
        self, name: str, input_data: dict[str, Any] | None = None
    ) -> PipelineExecution:
        self._require_authenticated()
        pipeline = self._pipelines.get(name)
        if pipeline is None:
            raise PipelineNotFound(
                f"Pipeline '{name}' not found",
                context={"pipeline": name, "available": sorted(self._pipelines)},
            )
        data = await self.gateway.call(
            "execute_pipeline",
            {"pipeline_id": pipeline.pipeline_id, "input_data": input_data or {}, "run_async": True},
        )
        execution = PipelineExecution(
            pipeline_name=name,
            pipeline_id=pipeline.pipeline_id,
            execution_id=_first(data, "execution_id", "executionId", "id")
            or f"exec-{uuid4().hex[:12]}",
            status=str(data.get("status") or "running"),
            detail=data,
        )
        logger.info(
            "pipeline event=started name=%s execution_id=%s", name, execution.execution_id
        )
        return execution

    def status(self) -> ClientStatus:
        session = self._session
        return ClientStatus(
            authenticated=self.is_authenticated,
            authenticating=self.authenticating,
            restored=self._restored,
            user_id=session.user_id if session else None,
            email=session.email if session else None,
            group_id=self._group.group_id if self._group else None,
            workers=[worker.model_copy() for worker in self._workers.values()],
            pipelines=sorted(self._pipelines),
            last_provisioning=self._last_report,
            last_error=self._last_error,
        )

    async def _authenticate(
        self, action: str, operation: str, args: dict[str, Any], email: str
    ) -> AuthenticationResult:
        if self._auth_lock.locked():
            raise AlreadyAuthenticating("An authentication attempt is already in progress")
        async with self._auth_lock:
            logger.info("session event=authenticating action=%s", action)
            try:
                data = await self.gateway.call(operation, args)
                session = self._session_from(data, email)
                self.store.upsert_session(session)
                # A fresh login replaces any topology left from an earlier session.
                self.store.retire_resources()
            except BridgeError as exc:
                self._last_error = exc.to_dict()
                logger.warning(
                    "session event=authentication_failed action=%s code=%s", action, exc.code
                )
                raise

            self._reset_handles()
            self._session = session
            self._last_error = None
            logger.info("session event=authenticated action=%s user_id=%s", action, session.user_id)

            report = await self.provision() if self.auto_provision else None
            return AuthenticationResult(action=action, session=session, provisioning=report)

    def _session_from(self, data: dict[str, Any], email: str) -> SessionRecord:
        user = _as_dict(data.get("user")) or {}
        session = _as_dict(data.get("session")) or {}
        now = utcnow()
        return SessionRecord(
            user_id=_first(user, "id", "user_id") or _first(data, "user_id") or email,
            email=str(user.get("email") or email),
            session_token=_first(session, "access_token", "token")
            or _first(data, "session_token", "access_token")
            or "",
            expires_at=now + self.session_ttl,
            authenticated_at=now,
        )

    async def _create_group(self, blueprint: GroupBlueprint) -> ResourceGroupRecord:
        data = await self.gateway.call(
            "create_group",
            {
                "topology": blueprint.topology,
                "max_workers": blueprint.max_workers,
                "strategy": blueprint.strategy,
            },
        )
        record = ResourceGroupRecord(
            group_id=_first(data, "swarm_id", "swarmId", "group_id", "id")
            or f"group-{uuid4().hex[:12]}",
            topology=blueprint.topology,
            max_workers=blueprint.max_workers,
            strategy=blueprint.strategy,
        )
        self.store.upsert_group(record)
        self._group = record
        logger.info("provisioning event=group_created group_id=%s", record.group_id)
        return record

    async def _spawn_worker(
        self, group: ResourceGroupRecord, blueprint: WorkerBlueprint
    ) -> WorkerRecord:
        data = await self.gateway.call(
            "spawn_worker",
            {
                "role": blueprint.role,
                "name": blueprint.name,
                "capabilities": list(blueprint.capabilities),
            },
        )
        record = WorkerRecord(
            worker_id=_first(data, "agent_id", "agentId", "worker_id", "id")
            or f"{blueprint.role}-{uuid4().hex[:12]}",
            group_id=group.group_id,
            role=blueprint.role,
            name=blueprint.name,
            capabilities=list(blueprint.capabilities),
        )
        self.store.upsert_worker(record)
        self._workers[record.worker_id] = record
        logger.info(
            "provisioning event=worker_created role=%s worker_id=%s", record.role, record.worker_id
        )
        return record

    async def _create_pipeline(self, blueprint: PipelineBlueprint) -> PipelineRecord:
        data = await self.gateway.call(
            "create_pipeline",
            {
                "name": blueprint.name,
                "description": blueprint.description,
                "steps": [step.model_dump() for step in blueprint.steps],
                "triggers": list(blueprint.triggers),
            },
        )
        record = PipelineRecord(
            pipeline_id=_first(data, "workflow_id", "workflowId", "pipeline_id", "id")
            or blueprint.name,
            name=blueprint.name,
            description=blueprint.description,
            steps=list(blueprint.steps),
            triggers=list(blueprint.triggers),
        )
        self.store.upsert_pipeline(record)
        self._pipelines[record.name] = record
        logger.info(
            "provisioning event=pipeline_created name=%s pipeline_id=%s",
            record.name,
            record.pipeline_id,
        )
        return record

    def _require_authenticated(self) -> None:
        if not self.is_authenticated:
            raise NotAuthenticated("Authentication required")

    def _reset_handles(self) -> None:
        self._session = None
        self._group = None
        self._workers = {}
        self._pipelines = {}
        self._restored = False


def _first(data: dict[str, Any], *keys: str) -> str | None:
    for key in keys:
        value = data.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _as_dict(value: Any) -> dict[str, Any] | None:
    return value if isinstance(value, dict) else None


def _task_status(raw: Any, *, default: TaskStatus) -> TaskStatus:
    if raw is None:
        return default
    return _TASK_STATUS_ALIASES.get(str(raw).strip().lower(), default)


def _failure(kind: str, name: str, exc: BridgeError) -> StepFailure:
    return StepFailure(kind=kind, name=name, code=exc.code, reason=exc.message)
