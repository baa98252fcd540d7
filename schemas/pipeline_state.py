"""Pipeline run schema.

Data model for a single build -> push -> deploy run: the stage log, the
state-machine position and the terminal status.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_serializer, field_validator

from .artifact import ArtifactRef


class RunStatus(str, Enum):
    """Overall pipeline run status."""

    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"


class PipelineState(str, Enum):
    """Position of a run in the pipeline state machine."""

    PENDING = "pending"
    CHECKOUT = "checkout"
    BUILDING = "building"
    PUSHING = "pushing"
    DEPLOYING = "deploying"
    VERIFYING = "verifying"
    ROLLING_BACK = "rolling_back"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    ROLLED_BACK = "rolled_back"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset(
    {PipelineState.SUCCEEDED, PipelineState.FAILED, PipelineState.ROLLED_BACK}
)


class Stage(str, Enum):
    """Kind of work a stage performs. Declaration order is log order."""

    CHECKOUT = "checkout"
    BUILD = "build"
    PUSH = "push"
    DEPLOY = "deploy"
    VERIFY = "verify"
    ROLLBACK = "rollback"

    @property
    def order(self) -> int:
        return _STAGE_ORDER[self]


_STAGE_ORDER = {stage: i for i, stage in enumerate(Stage)}


class StageOutcome(str, Enum):
    """Outcome of one stage attempt."""

    SUCCESS = "success"
    FAILED = "failed"
    RETRIED = "retried"
    SKIPPED = "skipped"


class RunFinalizedError(Exception):
    """Raised when a finished run is modified."""

    pass


class StageResult(BaseModel):
    """Result of a single stage attempt. Never mutated after creation."""

    model_config = ConfigDict(frozen=True)

    stage: Stage = Field(..., description="Stage kind")
    outcome: StageOutcome = Field(..., description="Attempt outcome")
    attempt: int = Field(1, ge=1, description="Attempt number, starting at 1")
    duration_ms: int = Field(0, ge=0, description="Attempt duration in milliseconds")
    message: str | None = Field(None, description="Error or summary message")
    artifact: str | None = Field(None, description="Artifact reference the attempt acted on")
    recorded_at: datetime = Field(default_factory=datetime.now)


class RolloutSnapshot(BaseModel):
    """Replica counts observed by one rollout-status poll."""

    model_config = ConfigDict(frozen=True)

    desired_replicas: int = Field(0, ge=0)
    ready_replicas: int = Field(0, ge=0)
    updated_replicas: int = Field(0, ge=0)
    timestamp: datetime = Field(default_factory=datetime.now)

    def converged(self, desired: int | None = None) -> bool:
        """Check whether ready and updated replicas both match ``desired``."""
        target = self.desired_replicas if desired is None else desired
        return self.ready_replicas == target and self.updated_replicas == target


class PipelineRun(BaseModel):
    """Complete record of one pipeline execution.

    Owned by a single PipelineRunner for the run's lifetime. Stage results
    are append-only and the run becomes read-only once ``final_status``
    leaves RUNNING.
    """

    model_config = ConfigDict(arbitrary_types_allowed=True)

    id: str = Field(..., description="Unique run identifier")
    artifact: ArtifactRef = Field(..., description="Artifact this run builds and deploys")
    stages: list[StageResult] = Field(default_factory=list)
    final_status: RunStatus = Field(RunStatus.RUNNING)
    state: PipelineState = Field(PipelineState.PENDING)

    commit: str | None = Field(None, description="Source commit checked out")
    deployed_artifact: ArtifactRef | None = Field(
        None, description="Artifact running in the cluster when the run ended"
    )
    error: str | None = Field(None, description="Failure reason for failed runs")

    started_at: datetime = Field(default_factory=datetime.now)
    completed_at: datetime | None = None

    @field_validator("artifact", "deployed_artifact", mode="before")
    @classmethod
    def _parse_artifact(cls, value: Any) -> Any:
        if isinstance(value, str):
            return ArtifactRef.parse(value)
        return value

    @field_serializer("artifact", "deployed_artifact")
    def _serialize_artifact(self, value: ArtifactRef | None) -> str | None:
        return value.reference() if value is not None else None

    @property
    def is_finished(self) -> bool:
        return self.final_status != RunStatus.RUNNING

    def append(self, result: StageResult) -> None:
        """Append a stage result, keeping stage order non-decreasing."""
        if self.is_finished:
            raise RunFinalizedError(f"Run {self.id} is already {self.final_status.value}")
        if self.stages and result.stage.order < self.stages[-1].stage.order:
            raise ValueError(
                f"Stage {result.stage.value} recorded after {self.stages[-1].stage.value}"
            )
        self.stages.append(result)

    def finish(self, status: RunStatus, error: str | None = None) -> None:
        """Set the terminal status. Allowed exactly once."""
        if self.is_finished:
            raise RunFinalizedError(f"Run {self.id} is already {self.final_status.value}")
        if status == RunStatus.RUNNING:
            raise ValueError("Terminal status required")
        self.final_status = status
        if error is not None:
            self.error = error
        self.completed_at = datetime.now()

    def results_for(self, stage: Stage) -> list[StageResult]:
        """All attempts recorded for a stage, in order."""
        return [r for r in self.stages if r.stage == stage]

    def summary(self) -> dict[str, Any]:
        """Short report of the run for CLI/report output."""
        return {
            "run_id": self.id,
            "artifact": self.artifact.reference(),
            "status": self.final_status.value,
            "state": self.state.value,
            "deployed": self.deployed_artifact.reference() if self.deployed_artifact else None,
            "attempts": len(self.stages),
            "stages": {
                stage.value: results[-1].outcome.value
                for stage in Stage
                if (results := self.results_for(stage))
            },
        }
