"""Schemas module for pipeline run data.

Provides:
- Artifact references (registry/repository:tag)
- Stage results and the per-run stage log
- Pipeline run status and state-machine positions
- Rollout snapshots
"""

from .artifact import ArtifactRef, InvalidArtifact
from .pipeline_state import (
    TERMINAL_STATES,
    PipelineRun,
    PipelineState,
    RolloutSnapshot,
    RunFinalizedError,
    RunStatus,
    Stage,
    StageOutcome,
    StageResult,
)

__all__ = [
    "ArtifactRef",
    "InvalidArtifact",
    "TERMINAL_STATES",
    "PipelineRun",
    "PipelineState",
    "RolloutSnapshot",
    "RunFinalizedError",
    "RunStatus",
    "Stage",
    "StageOutcome",
    "StageResult",
]
