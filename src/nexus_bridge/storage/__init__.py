"""Storage backends and models for the local resource-state mirror."""

from nexus_bridge.config.settings import Settings
from nexus_bridge.storage.base import ResourceStateStore
from nexus_bridge.storage.memory import InMemoryResourceStateStore
from nexus_bridge.storage.models import (
    PipelineRecord,
    PipelineStep,
    ResourceGroupRecord,
    SessionRecord,
    StateSnapshot,
    TaskRecord,
    WorkerRecord,
)
from nexus_bridge.storage.postgres import PostgresResourceStateStore
from nexus_bridge.storage.sqlite import SQLiteResourceStateStore


def build_store(settings: Settings) -> ResourceStateStore:
    """PostgreSQL when a database URL is configured, else the embedded SQLite file."""
    database_url = settings.resolved_database_url()
    if database_url:
        store: ResourceStateStore = PostgresResourceStateStore(database_url)
        store.migrate()
        return store
    return SQLiteResourceStateStore(settings.db_path)


__all__ = [
    "InMemoryResourceStateStore",
    "PipelineRecord",
    "PipelineStep",
    "PostgresResourceStateStore",
    "ResourceGroupRecord",
    "ResourceStateStore",
    "SQLiteResourceStateStore",
    "SessionRecord",
    "StateSnapshot",
    "TaskRecord",
    "WorkerRecord",
    "build_store",
]
