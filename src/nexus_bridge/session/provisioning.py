"""Fixed resource topology created once after a fresh authentication.

Terms used in this file:
- Blueprint: the static description of a group, worker or pipeline to create.
- Report: what provisioning actually achieved, including per-step failures.
"""

from __future__ import annotations

from dataclasses import dataclass

from pydantic import BaseModel, Field

from nexus_bridge.storage.models import PipelineStep, Topology

WORKER_NAME_PREFIX = "nexus"


@dataclass(frozen=True)
class GroupBlueprint:
    topology: Topology
    max_workers: int
    strategy: str


@dataclass(frozen=True)
class WorkerBlueprint:
    role: str
    capabilities: tuple[str, ...]

    @property
    def name(self) -> str:
        return f"{WORKER_NAME_PREFIX}-{self.role}"


@dataclass(frozen=True)
class PipelineBlueprint:
    name: str
    description: str
    steps: tuple[PipelineStep, ...]
    triggers: tuple[str, ...]


DEFAULT_GROUP = GroupBlueprint(topology="hierarchical", max_workers=8, strategy="specialized")

# Spawned strictly in this order.
DEFAULT_WORKERS: tuple[WorkerBlueprint, ...] = (
    WorkerBlueprint("researcher", ("market-research", "competitor-analysis")),
    WorkerBlueprint("analyst", ("performance-analysis", "anomaly-detection")),
    WorkerBlueprint("optimizer", ("budget-optimization", "bid-management")),
    WorkerBlueprint("coordinator", ("workflow-management", "task-orchestration")),
)

DEFAULT_PIPELINES: tuple[PipelineBlueprint, ...] = (
    PipelineBlueprint(
        name="campaign-optimization",
        description="Campaign optimization and budget reallocation",
        steps=(
            PipelineStep(
                name="performance-analysis",
                role="analyst",
                description="Analyze current campaign performance metrics",
            ),
            PipelineStep(
                name="optimization-recommendations",
                role="optimizer",
                description="Generate optimization recommendations",
            ),
            PipelineStep(
                name="budget-reallocation",
                role="optimizer",
                description="Execute budget reallocation based on recommendations",
            ),
        ),
        triggers=("daily", "budget_threshold", "performance_anomaly"),
    ),
    PipelineBlueprint(
        name="anomaly-detection",
        description="Spend anomaly detection and alerting",
        steps=(
            PipelineStep(
                name="data-collection",
                role="researcher",
                description="Collect latest spend and performance data",
            ),
            PipelineStep(
                name="anomaly-analysis",
                role="analyst",
                description="Detect spending anomalies",
            ),
            PipelineStep(
                name="alert-generation",
                role="coordinator",
                description="Generate alerts for detected anomalies",
            ),
        ),
        triggers=("hourly", "real_time"),
    ),
)


class StepFailure(BaseModel):
    kind: str
    name: str
    code: str
    reason: str


class ProvisioningReport(BaseModel):
    """Outcome of one provisioning run; partial success is a normal result."""

    group_id: str | None = None
    workers_created: list[str] = Field(default_factory=list)
    workers_failed: list[StepFailure] = Field(default_factory=list)
    pipelines_created: list[str] = Field(default_factory=list)
    pipelines_failed: list[StepFailure] = Field(default_factory=list)
    aborted: bool = False
    errors: list[str] = Field(default_factory=list)

    @property
    def complete(self) -> bool:
        return (
            not self.aborted
            and not self.workers_failed
            and not self.pipelines_failed
            and self.group_id is not None
        )
