from __future__ import annotations

from collections.abc import Iterator
from datetime import timedelta
from pathlib import Path

import pytest

from nexus_bridge.config.settings import Settings
from nexus_bridge.storage import (
    InMemoryResourceStateStore,
    PostgresResourceStateStore,
    SQLiteResourceStateStore,
    build_store,
)
from nexus_bridge.storage.base import ResourceStateStore
from nexus_bridge.storage.models import (
    PipelineRecord,
    PipelineStep,
    ResourceGroupRecord,
    SessionRecord,
    TaskRecord,
    WorkerRecord,
    utcnow,
)


@pytest.fixture(params=["memory", "sqlite"])
def any_store(request: pytest.FixtureRequest, tmp_path: Path) -> Iterator[ResourceStateStore]:
    if request.param == "memory":
        backend: ResourceStateStore = InMemoryResourceStateStore()
    else:
        backend = SQLiteResourceStateStore(tmp_path / "state" / "bridge.db")
    yield backend
    backend.close()


def _session(user_id: str = "user-1", *, hours: float = 24.0) -> SessionRecord:
    now = utcnow()
    return SessionRecord(
        user_id=user_id,
        email=f"{user_id}@example.com",
        session_token=f"token-{user_id}",
        expires_at=now + timedelta(hours=hours),
        authenticated_at=now,
    )


def test_upsert_group_twice_keeps_one_record_with_latest_status(any_store: ResourceStateStore) -> None:
    group = ResourceGroupRecord(group_id="g-1", topology="hierarchical", max_workers=8, strategy="specialized")
    any_store.upsert_group(group)
    any_store.upsert_group(group.model_copy(update={"status": "destroyed"}))

    assert any_store.stats()["resource_groups"] == 1
    assert any_store.snapshot_active_state().groups == []

    any_store.upsert_group(group)
    groups = any_store.snapshot_active_state().groups
    assert [g.group_id for g in groups] == ["g-1"]
    assert groups[0].status == "active"


def test_expired_session_is_not_returned_even_when_status_is_active(
    any_store: ResourceStateStore,
) -> None:
    any_store.upsert_session(_session(hours=-1))

    assert any_store.get_active_session() is None
    assert any_store.snapshot_active_state().session is None
    assert any_store.stats()["sessions"] == 1


def test_session_validity_is_checked_at_read_time(any_store: ResourceStateStore) -> None:
    record = any_store.upsert_session(_session(hours=1))

    assert any_store.get_active_session() is not None
    later = record.expires_at + timedelta(seconds=1)
    assert any_store.get_active_session(now=later) is None


def test_new_active_session_deactivates_previous_one(any_store: ResourceStateStore) -> None:
    any_store.upsert_session(_session("user-1"))
    any_store.upsert_session(_session("user-2"))

    active = any_store.get_active_session()
    assert active is not None
    assert active.user_id == "user-2"
    assert any_store.stats()["sessions"] == 2


def test_snapshot_returns_active_records_and_open_tasks(any_store: ResourceStateStore) -> None:
    any_store.upsert_session(_session())
    any_store.upsert_group(
        ResourceGroupRecord(group_id="g-1", topology="hierarchical", max_workers=8, strategy="specialized")
    )
    any_store.upsert_worker(
        WorkerRecord(
            worker_id="w-1",
            group_id="g-1",
            role="researcher",
            name="nexus-researcher",
            capabilities=["market-research", "competitor-analysis"],
        )
    )
    any_store.upsert_worker(
        WorkerRecord(worker_id="w-2", group_id="g-1", role="analyst", name="a", status="destroyed")
    )
    any_store.upsert_pipeline(
        PipelineRecord(
            pipeline_id="wf-1",
            name="anomaly-detection",
            steps=[PipelineStep(name="data-collection", role="researcher")],
            triggers=["hourly", "real_time"],
        )
    )
    any_store.upsert_task(TaskRecord(task_id="t-open", description="open", status="running"))
    any_store.upsert_task(TaskRecord(task_id="t-done", description="done", status="completed"))

    snapshot = any_store.snapshot_active_state()

    assert snapshot.session is not None
    assert [w.worker_id for w in snapshot.workers] == ["w-1"]
    assert snapshot.workers[0].capabilities == ["market-research", "competitor-analysis"]
    assert snapshot.pipelines[0].steps[0].role == "researcher"
    assert snapshot.pipelines[0].triggers == ["hourly", "real_time"]
    assert [t.task_id for t in snapshot.tasks] == ["t-open"]
    assert snapshot.counts() == {"sessions": 1, "groups": 1, "workers": 1, "pipelines": 1, "tasks": 1}


def test_clear_session_flips_statuses_and_blanks_token(any_store: ResourceStateStore) -> None:
    any_store.upsert_session(_session())
    any_store.upsert_group(
        ResourceGroupRecord(group_id="g-1", topology="mesh", max_workers=4, strategy="balanced")
    )
    any_store.upsert_worker(WorkerRecord(worker_id="w-1", group_id="g-1", role="analyst", name="a"))
    any_store.upsert_pipeline(PipelineRecord(pipeline_id="wf-1", name="campaign-optimization"))

    any_store.clear_session()

    assert any_store.get_active_session() is None
    snapshot = any_store.snapshot_active_state()
    assert snapshot.counts() == {"sessions": 0, "groups": 0, "workers": 0, "pipelines": 0, "tasks": 0}
    assert any_store.stats() == {
        "sessions": 1,
        "resource_groups": 1,
        "workers": 1,
        "pipelines": 1,
        "tasks": 0,
    }


def test_retire_resources_keeps_the_session(any_store: ResourceStateStore) -> None:
    any_store.upsert_session(_session())
    any_store.upsert_group(
        ResourceGroupRecord(group_id="g-1", topology="mesh", max_workers=4, strategy="balanced")
    )
    any_store.upsert_worker(WorkerRecord(worker_id="w-1", group_id="g-1", role="analyst", name="a"))
    any_store.upsert_pipeline(PipelineRecord(pipeline_id="wf-1", name="campaign-optimization"))

    any_store.retire_resources()

    session = any_store.get_active_session()
    assert session is not None and session.session_token == "token-user-1"
    snapshot = any_store.snapshot_active_state()
    assert snapshot.counts() == {"sessions": 1, "groups": 0, "workers": 0, "pipelines": 0, "tasks": 0}

    any_store.upsert_group(
        ResourceGroupRecord(group_id="g-2", topology="mesh", max_workers=4, strategy="balanced")
    )
    assert [g.group_id for g in any_store.snapshot_active_state().groups] == ["g-2"]


def test_task_round_trip_keeps_result_payload(any_store: ResourceStateStore) -> None:
    any_store.upsert_task(
        TaskRecord(
            task_id="t-1",
            description="rebalance budgets",
            priority="high",
            strategy="parallel",
            status="completed",
            result={"reallocated": 3, "channels": ["search", "social"]},
            completed_at=utcnow(),
        )
    )

    task = any_store.get_task("t-1")
    assert task is not None
    assert task.priority == "high"
    assert task.result == {"reallocated": 3, "channels": ["search", "social"]}
    assert task.completed_at is not None
    assert any_store.get_task("missing") is None


def test_sqlite_store_persists_across_instances(tmp_path: Path) -> None:
    db_path = tmp_path / "bridge.db"
    first = SQLiteResourceStateStore(db_path)
    first.upsert_session(_session())
    first.upsert_group(
        ResourceGroupRecord(group_id="g-1", topology="hierarchical", max_workers=8, strategy="specialized")
    )

    second = SQLiteResourceStateStore(db_path)
    snapshot = second.snapshot_active_state()
    assert snapshot.session is not None
    assert snapshot.session.session_token == "token-user-1"
    assert [g.group_id for g in snapshot.groups] == ["g-1"]


def test_build_store_defaults_to_sqlite(settings: Settings) -> None:
    store = build_store(settings)

    assert isinstance(store, SQLiteResourceStateStore)
    assert store.db_path == settings.db_path
    assert settings.db_path.exists()


def test_build_store_uses_postgres_when_url_is_set(
    monkeypatch: pytest.MonkeyPatch, settings: Settings
) -> None:
    migrated: list[str] = []
    monkeypatch.setattr(
        PostgresResourceStateStore, "migrate", lambda self: migrated.append(self.database_url)
    )
    configured = settings.model_copy(update={"database_url": "postgresql://u:p@localhost:5432/bridge"})

    store = build_store(configured)

    assert isinstance(store, PostgresResourceStateStore)
    assert migrated == ["postgresql://u:p@localhost:5432/bridge"]


def test_postgres_store_requires_url() -> None:
    with pytest.raises(ValueError):
        PostgresResourceStateStore("")
