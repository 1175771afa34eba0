"""Host application wiring: store, remote gateway, session client and auth manager."""

from __future__ import annotations

import logging
from datetime import timedelta
from typing import Any

from pydantic import BaseModel, Field

from nexus_bridge.config.settings import Settings
from nexus_bridge.errors import BridgeError, NoCredentialsAvailable
from nexus_bridge.remote.base import RemoteService
from nexus_bridge.remote.cli_service import CommandLineRemoteService
from nexus_bridge.remote.gateway import RemoteGateway
from nexus_bridge.session.auth import AuthLifecycleManager, AuthOutcome, AuthStatus, PromptFn
from nexus_bridge.session.client import ClientStatus, RemoteSessionClient
from nexus_bridge.storage import build_store
from nexus_bridge.storage.base import ResourceStateStore

logger = logging.getLogger(__name__)


class BridgeStatus(BaseModel):
    app_name: str
    started: bool
    auth: AuthStatus
    client: ClientStatus
    active_counts: dict[str, int] = Field(default_factory=dict)
    stored_counts: dict[str, int] = Field(default_factory=dict)
    startup_error: dict[str, Any] | None = None


class BridgeApplication:
    """Composite lifecycle used by the HTTP surface and the CLI.

    ``start()`` never raises for authentication or provisioning problems;
    those are reported through ``status()``.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: ResourceStateStore | None = None,
        remote: RemoteService | None = None,
        prompt: PromptFn | None = None,
    ) -> None:
        self.settings = settings
        self.store = store if store is not None else build_store(settings)
        service = remote if remote is not None else CommandLineRemoteService(settings.remote_command)
        self.gateway = RemoteGateway(
            service,
            timeout_s=settings.remote_timeout_s,
            max_retries=settings.remote_max_retries,
            backoff_s=settings.remote_backoff_s,
        )
        self.client = RemoteSessionClient(
            self.gateway,
            self.store,
            session_ttl=timedelta(hours=settings.session_ttl_hours),
            auto_provision=settings.auto_provision,
        )
        self.auth = AuthLifecycleManager(self.client, self.store, settings, prompt=prompt)
        self._started = False
        self._startup_error: dict[str, Any] | None = None

    async def start(self) -> AuthOutcome | None:
        self._started = True
        self._startup_error = None
        try:
            outcome = await self.auth.resolve_and_authenticate()
        except NoCredentialsAvailable as exc:
            logger.info("app event=start_unauthenticated reason=%s", exc.message)
            self._startup_error = exc.to_dict()
            return None
        except BridgeError as exc:
            logger.error("app event=start_failed code=%s reason=%s", exc.code, exc.message)
            self._startup_error = exc.to_dict()
            return None
        logger.info(
            "app event=started source=%s restored=%s user_id=%s",
            outcome.source,
            outcome.restored,
            outcome.user_id,
        )
        return outcome

    async def shutdown(self) -> None:
        """Release local resources. The stored session is kept for the next start."""
        self.store.close()
        self._started = False
        logger.info("app event=shutdown")

    def status(self) -> BridgeStatus:
        return BridgeStatus(
            app_name=self.settings.app_name,
            started=self._started,
            auth=self.auth.status(),
            client=self.client.status(),
            active_counts=self.store.snapshot_active_state().counts(),
            stored_counts=self.store.stats(),
            startup_error=self._startup_error,
        )
