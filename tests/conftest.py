from __future__ import annotations

from pathlib import Path

import pytest

from nexus_bridge.config.settings import Settings
from nexus_bridge.remote.gateway import RemoteGateway
from nexus_bridge.session.client import RemoteSessionClient
from nexus_bridge.storage.memory import InMemoryResourceStateStore
from tests.fakes import FakeRemoteService


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch) -> None:
    for name in ("EMAIL", "PASSWORD", "ACTION"):
        monkeypatch.delenv(f"NEXUS_BRIDGE_AUTH_{name}", raising=False)
    monkeypatch.delenv("NEXUS_BRIDGE_DATABASE_URL", raising=False)
    monkeypatch.delenv("DATABASE_URL", raising=False)


@pytest.fixture
def settings(tmp_path: Path) -> Settings:
    return Settings(
        _env_file=None,
        db_path=tmp_path / "bridge.db",
        credentials_file=tmp_path / "credentials.json",
        interactive_auth=False,
        auth_email="",
        auth_password="",
        remote_max_retries=0,
        remote_backoff_s=0.0,
        remote_timeout_s=5.0,
    )


@pytest.fixture
def remote() -> FakeRemoteService:
    return FakeRemoteService()


@pytest.fixture
def store() -> InMemoryResourceStateStore:
    return InMemoryResourceStateStore()


@pytest.fixture
def gateway(remote: FakeRemoteService) -> RemoteGateway:
    return RemoteGateway(remote, timeout_s=5.0)


@pytest.fixture
def client(gateway: RemoteGateway, store: InMemoryResourceStateStore) -> RemoteSessionClient:
    return RemoteSessionClient(gateway, store)
