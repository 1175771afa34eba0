"""Session lifecycle: remote client, provisioning and credential resolution."""

from nexus_bridge.session.auth import (
    AuthLifecycleManager,
    AuthOutcome,
    AuthState,
    AuthStatus,
    Credentials,
    stage_credentials,
)
from nexus_bridge.session.client import AuthenticationResult, ClientStatus, RemoteSessionClient
from nexus_bridge.session.provisioning import ProvisioningReport

__all__ = [
    "AuthLifecycleManager",
    "AuthOutcome",
    "AuthState",
    "AuthStatus",
    "AuthenticationResult",
    "ClientStatus",
    "Credentials",
    "ProvisioningReport",
    "RemoteSessionClient",
    "stage_credentials",
]
