"""Remote service adapter that drives the orchestration service's command-line client."""

from __future__ import annotations

import asyncio
import json
import logging
import os
from collections.abc import Sequence
from typing import Any

from nexus_bridge.errors import RemoteUnavailable
from nexus_bridge.remote.manifest import CAPABILITIES
from nexus_bridge.remote.schemas import RemoteErrorKind, RemoteResult

logger = logging.getLogger(__name__)

_UNAVAILABLE_MARKERS = ("econnrefused", "enotfound", "network", "timed out", "timeout", "503")
_CREDENTIAL_MARKERS = ("invalid login", "invalid credentials", "unauthorized", "wrong password")
_NOT_FOUND_MARKERS = ("not found", "404")


class CommandLineRemoteService:
    """Run one CLI invocation per remote operation and parse its JSON answer.

    The CLI is expected to print a JSON object on stdout. Diagnostic lines
    mixed into stdout are tolerated: the last line that parses as a JSON
    object wins. A zero exit with no JSON at all is treated as success with
    the raw text under ``output``.
    """

    def __init__(
        self,
        command: Sequence[str],
        *,
        env: dict[str, str] | None = None,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self.command = list(command)
        self.env = env or {}

    async def invoke(self, operation: str, payload: dict[str, Any]) -> RemoteResult:
        spec = CAPABILITIES[operation]
        args = spec.cli_args(spec.input_model.model_validate(payload))
        argv = [*self.command, *args]
        logger.debug("remote_cli event=spawn operation=%s program=%s", operation, argv[0])

        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env={**os.environ, **self.env},
            )
        except OSError as exc:
            raise RemoteUnavailable(
                f"Failed to execute remote CLI: {exc}", context={"operation": operation}
            ) from exc

        try:
            raw_stdout, raw_stderr = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise

        stdout = raw_stdout.decode("utf-8", errors="replace")
        stderr = raw_stderr.decode("utf-8", errors="replace")
        parsed = _last_json_object(stdout)

        if process.returncode != 0:
            message = (parsed or {}).get("error") or stderr.strip() or stdout.strip()
            message = message or f"Command failed with code {process.returncode}"
            return RemoteResult.failed(str(message), _classify_failure(str(message)))

        if parsed is None:
            return RemoteResult.ok(output=stdout.strip())
        if parsed.get("success", True) is False:
            message = str(parsed.get("error") or f"Remote operation '{operation}' failed")
            return RemoteResult.failed(message, _classify_failure(message))
        return RemoteResult(success=True, data=parsed)


def _last_json_object(text: str) -> dict[str, Any] | None:
    stripped = text.strip()
    if not stripped:
        return None
    try:
        whole = json.loads(stripped)
    except json.JSONDecodeError:
        whole = None
    if isinstance(whole, dict):
        return whole
    for line in reversed(stripped.splitlines()):
        line = line.strip()
        if not line.startswith("{"):
            continue
        try:
            candidate = json.loads(line)
        except json.JSONDecodeError:
            continue
        if isinstance(candidate, dict):
            return candidate
    return None


def _classify_failure(message: str) -> RemoteErrorKind:
    lowered = message.lower()
    if any(marker in lowered for marker in _CREDENTIAL_MARKERS):
        return "invalid_credentials"
    if any(marker in lowered for marker in _UNAVAILABLE_MARKERS):
        return "unavailable"
    if any(marker in lowered for marker in _NOT_FOUND_MARKERS):
        return "not_found"
    return "rejected"
