from __future__ import annotations

import asyncio
import sys
import textwrap
from pathlib import Path
from typing import Any

import pytest

from nexus_bridge.errors import (
    InvalidCredentials,
    PipelineNotFound,
    RemoteRejected,
    RemoteUnavailable,
    TaskNotFound,
    ValidationError,
)
from nexus_bridge.remote.cli_service import CommandLineRemoteService
from nexus_bridge.remote.gateway import RemoteGateway
from nexus_bridge.remote.manifest import CAPABILITIES, list_capabilities, resource_creating_capabilities
from nexus_bridge.remote.schemas import RemoteResult
from tests.fakes import VALID_PASSWORD, FakeRemoteService


def test_manifest_lists_every_remote_operation() -> None:
    assert list_capabilities() == sorted(
        [
            "create_group",
            "create_pipeline",
            "execute_pipeline",
            "get_task_status",
            "login_user",
            "logout_user",
            "orchestrate_task",
            "register_user",
            "spawn_worker",
        ]
    )
    assert list_capabilities("auth") == ["login_user", "logout_user", "register_user"]
    assert resource_creating_capabilities() == {"create_group", "spawn_worker", "create_pipeline"}


def test_manifest_builds_cli_arguments() -> None:
    spec = CAPABILITIES["create_group"]
    payload = spec.input_model.model_validate(
        {"topology": "hierarchical", "max_workers": 8, "strategy": "specialized"}
    )

    assert spec.cli_args(payload) == [
        "swarm",
        "init",
        "--topology",
        "hierarchical",
        "--max-agents",
        "8",
        "--strategy",
        "specialized",
    ]


@pytest.mark.asyncio
async def test_invalid_arguments_never_reach_the_service(remote: FakeRemoteService) -> None:
    gateway = RemoteGateway(remote)

    with pytest.raises(ValidationError) as excinfo:
        await gateway.call("login_user", {"email": "not-an-email", "password": VALID_PASSWORD})

    assert excinfo.value.context["fields"] == ["email"]
    assert VALID_PASSWORD not in str(excinfo.value.to_dict())
    assert remote.calls == []


@pytest.mark.asyncio
async def test_unknown_operation_and_extra_fields_are_rejected(remote: FakeRemoteService) -> None:
    gateway = RemoteGateway(remote)

    with pytest.raises(ValidationError):
        await gateway.call("destroy_everything", {})
    with pytest.raises(ValidationError):
        await gateway.call("get_task_status", {"task_id": "t-1", "verbose": True})
    assert remote.calls == []


@pytest.mark.asyncio
async def test_unavailable_is_retried_until_success(remote: FakeRemoteService) -> None:
    remote.script("create_group", RemoteUnavailable("connection reset"), RemoteResult.failed("503", "unavailable"))
    gateway = RemoteGateway(remote, max_retries=2, backoff_s=0.0)

    data = await gateway.call(
        "create_group", {"topology": "mesh", "max_workers": 4, "strategy": "balanced"}
    )

    assert data["swarm_id"].startswith("group-")
    assert len(remote.calls_for("create_group")) == 3


@pytest.mark.asyncio
async def test_unavailable_after_retries_is_raised(remote: FakeRemoteService) -> None:
    remote.script("orchestrate_task", *[RemoteUnavailable("down")] * 3)
    gateway = RemoteGateway(remote, max_retries=1)

    with pytest.raises(RemoteUnavailable):
        await gateway.call("orchestrate_task", {"task": "collect spend data"})

    assert len(remote.calls_for("orchestrate_task")) == 2


@pytest.mark.asyncio
async def test_rejections_are_not_retried(remote: FakeRemoteService) -> None:
    remote.script("spawn_worker", RemoteResult.failed("quota exceeded"))
    gateway = RemoteGateway(remote, max_retries=3)

    with pytest.raises(RemoteRejected, match="quota exceeded"):
        await gateway.call("spawn_worker", {"role": "analyst", "name": "nexus-analyst"})

    assert len(remote.calls_for("spawn_worker")) == 1


@pytest.mark.asyncio
async def test_failure_kinds_map_to_error_taxonomy(remote: FakeRemoteService) -> None:
    gateway = RemoteGateway(remote)

    with pytest.raises(InvalidCredentials):
        await gateway.call("login_user", {"email": "a@example.com", "password": "wrong"})

    remote.script("login_user", RemoteResult.failed("account locked"))
    with pytest.raises(InvalidCredentials):
        await gateway.call("login_user", {"email": "a@example.com", "password": VALID_PASSWORD})

    remote.script("execute_pipeline", RemoteResult.failed("no such workflow", "not_found"))
    with pytest.raises(PipelineNotFound):
        await gateway.call("execute_pipeline", {"pipeline_id": "wf-missing"})

    with pytest.raises(TaskNotFound):
        await gateway.call("get_task_status", {"task_id": "t-missing"})


@pytest.mark.asyncio
async def test_secrets_echoed_by_the_remote_are_masked(
    remote: FakeRemoteService, caplog: pytest.LogCaptureFixture
) -> None:
    gateway = RemoteGateway(remote, max_retries=1)
    remote.script(
        "register_user",
        RemoteResult.failed(f"usage error near '-p {VALID_PASSWORD}'"),
    )

    with pytest.raises(RemoteRejected) as excinfo:
        await gateway.call("register_user", {"email": "a@example.com", "password": VALID_PASSWORD})
    assert VALID_PASSWORD not in str(excinfo.value.to_dict())
    assert "-p ***" in excinfo.value.message

    remote.script(
        "login_user",
        RemoteUnavailable(f"network down while sending {VALID_PASSWORD}"),
        RemoteUnavailable(f"network down while sending {VALID_PASSWORD}"),
    )
    with caplog.at_level("WARNING", logger="nexus_bridge.remote.gateway"):
        with pytest.raises(RemoteUnavailable) as unavailable:
            await gateway.call("login_user", {"email": "a@example.com", "password": VALID_PASSWORD})
    assert VALID_PASSWORD not in unavailable.value.message
    assert VALID_PASSWORD not in caplog.text


@pytest.mark.asyncio
async def test_timeout_becomes_unavailable() -> None:
    class SlowService:
        async def invoke(self, operation: str, payload: dict[str, Any]) -> RemoteResult:
            await asyncio.sleep(5)
            return RemoteResult.ok()

    gateway = RemoteGateway(SlowService(), timeout_s=0.05)

    with pytest.raises(RemoteUnavailable, match="timed out"):
        await gateway.call("logout_user", {})


def _fake_cli(tmp_path: Path) -> list[str]:
    script = tmp_path / "flow_cli.py"
    script.write_text(
        textwrap.dedent(
            """
            import json, sys
            args = sys.argv[1:]
            if args[:2] == ["auth", "login"]:
                password = args[args.index("-p") + 1]
                if password != "s3cret-pass":
                    print("Error: Invalid login credentials", file=sys.stderr)
                    sys.exit(1)
                print("Connecting to orchestration service...")
                print(json.dumps({"success": True, "user": {"id": "u-1", "email": args[args.index("-e") + 1]}}))
            elif args[:2] == ["swarm", "init"]:
                print(json.dumps({"success": True, "swarm_id": "swarm-42", "args": args}))
            elif args[:2] == ["workflow", "execute"]:
                print(json.dumps({"success": False, "error": "Workflow not found"}))
            elif args[:2] == ["auth", "logout"]:
                print("Logged out")
            else:
                print("Error: network unreachable (ECONNREFUSED)", file=sys.stderr)
                sys.exit(2)
            """
        ),
        encoding="utf-8",
    )
    return [sys.executable, str(script)]


@pytest.mark.asyncio
async def test_cli_service_parses_json_after_diagnostic_lines(tmp_path: Path) -> None:
    service = CommandLineRemoteService(_fake_cli(tmp_path))

    result = await service.invoke("login_user", {"email": "a@example.com", "password": VALID_PASSWORD})

    assert result.success is True
    assert result.data["user"]["id"] == "u-1"


@pytest.mark.asyncio
async def test_cli_service_maps_exit_codes_and_errors(tmp_path: Path) -> None:
    gateway = RemoteGateway(CommandLineRemoteService(_fake_cli(tmp_path)))

    group = await gateway.call(
        "create_group", {"topology": "hierarchical", "max_workers": 8, "strategy": "specialized"}
    )
    assert group["swarm_id"] == "swarm-42"
    assert group["args"][2:] == ["--topology", "hierarchical", "--max-agents", "8", "--strategy", "specialized"]

    assert await gateway.call("logout_user", {}) == {"output": "Logged out"}

    with pytest.raises(InvalidCredentials):
        await gateway.call("login_user", {"email": "a@example.com", "password": "wrong"})
    with pytest.raises(PipelineNotFound):
        await gateway.call("execute_pipeline", {"pipeline_id": "wf-1"})
    with pytest.raises(RemoteUnavailable):
        await gateway.call("get_task_status", {"task_id": "t-1"})


@pytest.mark.asyncio
async def test_cli_service_missing_binary_is_unavailable(tmp_path: Path) -> None:
    service = CommandLineRemoteService([str(tmp_path / "no-such-cli")])

    with pytest.raises(RemoteUnavailable):
        await service.invoke("logout_user", {})
