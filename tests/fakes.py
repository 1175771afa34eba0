"""Test doubles shared across the suite."""

from __future__ import annotations

import itertools
from collections import defaultdict
from typing import Any

from nexus_bridge.errors import BridgeError
from nexus_bridge.remote.manifest import resource_creating_capabilities
from nexus_bridge.remote.schemas import RemoteResult

VALID_PASSWORD = "s3cret-pass"


class FakeRemoteService:
    """Test-only remote service that answers like the orchestration CLI would.

    ``script(operation, *outcomes)`` queues per-call outcomes: ``None`` means
    answer normally, a ``BridgeError`` is raised, a ``RemoteResult`` is
    returned as-is. Unscripted calls answer normally.
    """

    def __init__(self) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.task_statuses: dict[str, dict[str, Any]] = {}
        self._scripted: dict[str, list[Any]] = defaultdict(list)
        self._ids = itertools.count(1)

    def script(self, operation: str, *outcomes: Any) -> None:
        self._scripted[operation].extend(outcomes)

    def calls_for(self, operation: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.calls if name == operation]

    @property
    def creation_calls(self) -> list[str]:
        creating = resource_creating_capabilities() | {"login_user", "register_user"}
        return [name for name, _ in self.calls if name in creating]

    async def invoke(self, operation: str, payload: dict[str, Any]) -> RemoteResult:
        self.calls.append((operation, payload))
        if self._scripted[operation]:
            outcome = self._scripted[operation].pop(0)
            if isinstance(outcome, BridgeError):
                raise outcome
            if isinstance(outcome, RemoteResult):
                return outcome
        return self._answer(operation, payload)

    def _answer(self, operation: str, payload: dict[str, Any]) -> RemoteResult:
        n = next(self._ids)
        if operation in {"login_user", "register_user"}:
            if payload["password"] != VALID_PASSWORD:
                return RemoteResult.failed("Invalid login credentials", "invalid_credentials")
            return RemoteResult.ok(
                user={"id": f"user-{payload['email']}", "email": payload["email"]},
                session={"access_token": f"token-{n}"},
            )
        if operation == "logout_user":
            return RemoteResult.ok()
        if operation == "create_group":
            return RemoteResult.ok(swarm_id=f"group-{n}")
        if operation == "spawn_worker":
            return RemoteResult.ok(agent_id=f"{payload['role']}-{n}")
        if operation == "create_pipeline":
            return RemoteResult.ok(workflow_id=f"wf-{payload['name']}")
        if operation == "execute_pipeline":
            return RemoteResult.ok(execution_id=f"exec-{n}", status="running")
        if operation == "orchestrate_task":
            return RemoteResult.ok(task_id=f"task-{n}", status="pending")
        if operation == "get_task_status":
            answer = self.task_statuses.get(payload["task_id"])
            if answer is None:
                return RemoteResult.failed("Task not found", "not_found")
            return RemoteResult.ok(task_id=payload["task_id"], **answer)
        return RemoteResult.failed(f"unsupported operation {operation}")
