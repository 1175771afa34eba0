"""Transport interface for the remote orchestration service."""

from __future__ import annotations

from typing import Any, Protocol

from nexus_bridge.remote.schemas import RemoteResult


class RemoteService(Protocol):
    """Opaque async operation set exposed by the remote service.

    ``operation`` is a key of ``nexus_bridge.remote.manifest.CAPABILITIES`` and
    ``payload`` has already been validated against that operation's input model.
    Implementations return a ``RemoteResult`` for answers the service gave,
    and raise ``RemoteUnavailable`` when no answer could be obtained.
    """

    async def invoke(self, operation: str, payload: dict[str, Any]) -> RemoteResult: ...
