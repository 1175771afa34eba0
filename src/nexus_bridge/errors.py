"""Error taxonomy shared by the session, storage, remote and relay layers.

Every error carries a stable ``code`` so the host status accessor and the HTTP
surface can report failures without string matching on messages.
"""

from __future__ import annotations

from typing import Any


class BridgeError(Exception):
    """Base class for all nexus-bridge errors."""

    code = "bridge_error"

    def __init__(self, message: str, *, context: dict[str, Any] | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.context = context or {}

    def to_dict(self) -> dict[str, Any]:
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.context:
            payload["context"] = dict(self.context)
        return payload


class ValidationError(BridgeError):
    """Malformed input. Surfaced immediately and never retried."""

    code = "validation_error"


class InvalidCredentials(BridgeError):
    code = "invalid_credentials"


class RemoteRejected(BridgeError):
    """The remote service refused the request."""

    code = "remote_rejected"


class RemoteUnavailable(BridgeError):
    """The remote service could not be reached. Callers may retry."""

    code = "remote_unavailable"


class NotAuthenticated(BridgeError):
    code = "not_authenticated"


class PipelineNotFound(BridgeError):
    code = "pipeline_not_found"


class TaskNotFound(BridgeError):
    code = "task_not_found"


class AlreadyAuthenticating(BridgeError):
    """A second authentication attempt started while one was still in flight."""

    code = "already_authenticating"


class NoCredentialsAvailable(BridgeError):
    code = "no_credentials_available"


class StorageError(BridgeError):
    """A local store operation failed. Fatal to that operation only."""

    code = "storage_error"


class RelaySpawnError(BridgeError):
    """The relay could not launch its child process."""

    code = "relay_spawn_error"
