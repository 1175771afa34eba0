"""Credential resolution and the authentication state machine.

Sources are tried in a fixed order and the first one available wins:

1. Environment credentials (``NEXUS_BRIDGE_AUTH_EMAIL`` / ``_PASSWORD`` / ``_ACTION``).
2. A one-shot staged credentials file, deleted as soon as it is read.
3. A still-valid persisted session, which restores instead of logging in.
4. An interactive prompt, only when enabled.

There is no fallback to a later source once an earlier one was chosen.
"""

from __future__ import annotations

import asyncio
import getpass
import json
import logging
import os
import re
import sys
from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel

from nexus_bridge.config.settings import Settings
from nexus_bridge.errors import (
    AlreadyAuthenticating,
    BridgeError,
    NoCredentialsAvailable,
    StorageError,
    ValidationError,
)
from nexus_bridge.remote.schemas import EMAIL_PATTERN
from nexus_bridge.session.client import RemoteSessionClient
from nexus_bridge.session.provisioning import ProvisioningReport
from nexus_bridge.storage.base import ResourceStateStore
from nexus_bridge.storage.models import utcnow

logger = logging.getLogger(__name__)

CredentialSource = Literal["environment", "staged_file", "persisted_session", "prompt", "api"]

_ACTIONS: frozenset[str] = frozenset({"login", "register"})


class AuthState(str, Enum):
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATING = "authenticating"
    AUTHENTICATED = "authenticated"
    FAILED = "failed"


@dataclass(frozen=True)
class Credentials:
    email: str
    password: str = field(repr=False)
    action: str = "login"
    source: CredentialSource = "api"
    display_name: str | None = None


PromptFn = Callable[[], Credentials | None]


class AuthOutcome(BaseModel):
    source: CredentialSource
    action: Literal["login", "register", "restore"]
    restored: bool
    user_id: str
    provisioning: ProvisioningReport | None = None


class AuthStatus(BaseModel):
    state: AuthState
    source: CredentialSource | None = None
    has_staged_credentials: bool
    has_persisted_session: bool
    last_error: dict[str, Any] | None = None


class AuthLifecycleManager:
    """Drives ``RemoteSessionClient`` through login, registration or restore."""

    def __init__(
        self,
        client: RemoteSessionClient,
        store: ResourceStateStore,
        settings: Settings,
        *,
        prompt: PromptFn | None = None,
    ) -> None:
        self.client = client
        self.store = store
        self.settings = settings
        self.prompt = prompt or prompt_for_credentials
        self._state = AuthState.UNAUTHENTICATED
        self._source: CredentialSource | None = None
        self._last_error: dict[str, Any] | None = None

    @property
    def state(self) -> AuthState:
        return self._state

    async def resolve_and_authenticate(self) -> AuthOutcome:
        """Pick the first available credential source and authenticate or restore."""
        self._begin()
        try:
            return self._succeed(await self._resolve())
        except BridgeError as exc:
            self._fail(exc)
            raise
        finally:
            if self._state is AuthState.AUTHENTICATING:
                self._state = AuthState.FAILED

    async def authenticate(self, credentials: Credentials) -> AuthOutcome:
        """Authenticate with explicitly supplied credentials, skipping resolution."""
        self._begin()
        try:
            return self._succeed(await self._authenticate(credentials))
        except BridgeError as exc:
            self._fail(exc)
            raise
        finally:
            if self._state is AuthState.AUTHENTICATING:
                self._state = AuthState.FAILED

    async def logout(self) -> None:
        await self.client.logout()
        self._state = AuthState.UNAUTHENTICATED
        self._source = None
        self._last_error = None

    def status(self) -> AuthStatus:
        return AuthStatus(
            state=self._state,
            source=self._source,
            has_staged_credentials=self.settings.credentials_file.exists(),
            has_persisted_session=self._has_persisted_session(),
            last_error=self._last_error,
        )

    async def _resolve(self) -> AuthOutcome:
        credentials = self._environment_credentials()
        if credentials is None:
            credentials = self._consume_staged_credentials()
        if credentials is None:
            session = self.store.get_active_session()
            if session is not None:
                await self.client.restore(self.store.snapshot_active_state())
                return AuthOutcome(
                    source="persisted_session",
                    action="restore",
                    restored=True,
                    user_id=session.user_id,
                )
        if credentials is None and self.settings.interactive_auth:
            credentials = await asyncio.to_thread(self.prompt)
        if credentials is None:
            raise NoCredentialsAvailable(
                "No credentials in environment, staged file, persisted session or prompt"
            )
        return await self._authenticate(credentials)

    async def _authenticate(self, credentials: Credentials) -> AuthOutcome:
        if credentials.action not in _ACTIONS:
            raise ValidationError(
                f"Unsupported auth action: {credentials.action}",
                context={"source": credentials.source},
            )
        logger.info(
            "auth event=authenticating source=%s action=%s",
            credentials.source,
            credentials.action,
        )
        if credentials.action == "register":
            result = await self.client.register(
                credentials.email, credentials.password, credentials.display_name
            )
        else:
            result = await self.client.login(credentials.email, credentials.password)
        return AuthOutcome(
            source=credentials.source,
            action="register" if credentials.action == "register" else "login",
            restored=False,
            user_id=result.session.user_id,
            provisioning=result.provisioning,
        )

    def _environment_credentials(self) -> Credentials | None:
        if not self.settings.has_env_credentials():
            return None
        return Credentials(
            email=self.settings.auth_email,
            password=self.settings.auth_password,
            action=(self.settings.auth_action or "login").lower(),
            source="environment",
        )

    def _consume_staged_credentials(self) -> Credentials | None:
        path = self.settings.credentials_file
        try:
            raw = path.read_bytes()
        except FileNotFoundError:
            return None
        except OSError as exc:
            raise ValidationError(
                f"Staged credentials file could not be read: {exc.strerror}",
                context={"path": str(path)},
            ) from exc
        finally:
            _discard(path)
        logger.info("auth event=staged_credentials_consumed path=%s", path)

        try:
            payload = json.loads(raw.decode("utf-8"))
        except (UnicodeDecodeError, json.JSONDecodeError) as exc:
            raise ValidationError(
                "Staged credentials file is not valid UTF-8 JSON", context={"path": str(path)}
            ) from exc
        if not isinstance(payload, dict) or not payload.get("email") or not payload.get("password"):
            raise ValidationError(
                "Staged credentials file must contain email and password",
                context={"path": str(path)},
            )
        return Credentials(
            email=str(payload["email"]),
            password=str(payload["password"]),
            action=str(payload.get("action") or "login").lower(),
            source="staged_file",
            display_name=payload.get("full_name"),
        )

    def _has_persisted_session(self) -> bool:
        try:
            return self.store.get_active_session() is not None
        except StorageError as exc:
            logger.warning("auth event=session_lookup_failed reason=%s", exc)
            return False

    def _begin(self) -> None:
        if self._state is AuthState.AUTHENTICATING or self.client.authenticating:
            raise AlreadyAuthenticating("An authentication attempt is already in progress")
        self._state = AuthState.AUTHENTICATING
        self._last_error = None

    def _fail(self, exc: BridgeError) -> None:
        self._state = AuthState.FAILED
        self._last_error = exc.to_dict()
        logger.warning("auth event=failed code=%s reason=%s", exc.code, exc.message)

    def _succeed(self, outcome: AuthOutcome) -> AuthOutcome:
        self._state = AuthState.AUTHENTICATED
        self._source = outcome.source
        logger.info(
            "auth event=authenticated source=%s action=%s user_id=%s",
            outcome.source,
            outcome.action,
            outcome.user_id,
        )
        return outcome


def _discard(path: Path) -> None:
    try:
        path.unlink(missing_ok=True)
    except OSError as exc:
        raise StorageError(
            f"Staged credentials file could not be removed: {exc.strerror}",
            context={"path": str(path)},
        ) from exc


def stage_credentials(path: Path, email: str, password: str, action: str = "login") -> Path:
    """Write a one-shot credentials file readable only by the current user."""
    if not re.fullmatch(EMAIL_PATTERN, email):
        raise ValidationError("Invalid email format", context={"field": "email"})
    if not password:
        raise ValidationError("Password must not be empty", context={"field": "password"})
    if action not in _ACTIONS:
        raise ValidationError(f"Unsupported auth action: {action}", context={"field": "action"})

    path.parent.mkdir(parents=True, exist_ok=True)
    payload = {
        "email": email,
        "password": password,
        "action": action,
        "timestamp": utcnow().isoformat(),
    }
    fd = os.open(path, os.O_WRONLY | os.O_CREAT | os.O_TRUNC, 0o600)
    with os.fdopen(fd, "w", encoding="utf-8") as handle:
        json.dump(payload, handle)
    os.chmod(path, 0o600)
    return path


def prompt_for_credentials() -> Credentials | None:
    """Ask on the terminal; stdout is left untouched. Blank email skips."""
    if not sys.stdin or not sys.stdin.isatty():
        return None
    sys.stderr.write("Email (blank to skip): ")
    sys.stderr.flush()
    email = sys.stdin.readline().strip()
    if not email:
        return None
    password = getpass.getpass("Password: ", stream=sys.stderr)
    sys.stderr.write("Action [login/register] (login): ")
    sys.stderr.flush()
    action = sys.stdin.readline().strip().lower() or "login"
    return Credentials(email=email, password=password, action=action, source="prompt")
