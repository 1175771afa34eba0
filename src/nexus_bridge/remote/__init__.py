"""Remote orchestration service boundary: manifest, gateway and adapters."""

from nexus_bridge.remote.base import RemoteService
from nexus_bridge.remote.cli_service import CommandLineRemoteService
from nexus_bridge.remote.gateway import RemoteGateway
from nexus_bridge.remote.manifest import CAPABILITIES, CapabilitySpec, list_capabilities
from nexus_bridge.remote.schemas import PipelineExecution, RemoteResult

__all__ = [
    "CAPABILITIES",
    "CapabilitySpec",
    "CommandLineRemoteService",
    "PipelineExecution",
    "RemoteGateway",
    "RemoteResult",
    "RemoteService",
    "list_capabilities",
]
