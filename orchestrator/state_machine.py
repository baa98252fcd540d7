"""State machine implementation for pipeline orchestration."""

import logging
from dataclasses import dataclass
from typing import Any, Callable

from schemas.artifact import ArtifactRef
from schemas.pipeline_state import (
    PipelineRun,
    PipelineState,
    RunStatus,
    Stage,
    StageOutcome,
    StageResult,
)

from .run_store import RunStore

logger = logging.getLogger(__name__)


class InvalidTransition(Exception):
    """Raised when a transition is not allowed from the current state."""

    pass


@dataclass
class Transition:
    """Defines a valid state transition."""

    from_state: PipelineState
    to_state: PipelineState
    condition: Callable[["StateMachine"], bool] | None = None
    description: str = ""


class StateMachine:
    """State machine for one pipeline run.

    Manages:
    - Valid state transitions
    - The run's stage log
    - Failure resolution (abort vs rollback)
    - State persistence
    """

    # Define valid transitions
    TRANSITIONS: list[Transition] = [
        # Happy path
        Transition(PipelineState.PENDING, PipelineState.CHECKOUT),
        Transition(PipelineState.CHECKOUT, PipelineState.BUILDING),
        Transition(PipelineState.BUILDING, PipelineState.PUSHING),
        Transition(PipelineState.PUSHING, PipelineState.DEPLOYING),
        Transition(
            PipelineState.DEPLOYING,
            PipelineState.VERIFYING,
            condition=lambda sm: sm.converged,
            description="rollout has not converged",
        ),
        Transition(PipelineState.VERIFYING, PipelineState.SUCCEEDED),
        # Abort
        Transition(PipelineState.PENDING, PipelineState.FAILED),
        Transition(PipelineState.CHECKOUT, PipelineState.FAILED),
        Transition(PipelineState.BUILDING, PipelineState.FAILED),
        Transition(PipelineState.PUSHING, PipelineState.FAILED),
        Transition(PipelineState.DEPLOYING, PipelineState.FAILED),
        Transition(PipelineState.VERIFYING, PipelineState.FAILED),
        # Rollback once the cluster has been touched
        Transition(
            PipelineState.DEPLOYING,
            PipelineState.ROLLING_BACK,
            condition=lambda sm: sm.can_roll_back,
            description="rollback disabled or no prior artifact",
        ),
        Transition(
            PipelineState.VERIFYING,
            PipelineState.ROLLING_BACK,
            condition=lambda sm: sm.can_roll_back,
            description="rollback disabled or no prior artifact",
        ),
        Transition(PipelineState.ROLLING_BACK, PipelineState.ROLLED_BACK),
        # A failed rollback is final; never roll back a rollback
        Transition(PipelineState.ROLLING_BACK, PipelineState.FAILED),
    ]

    # Next state after the current stage succeeds
    FORWARD: dict[PipelineState, PipelineState] = {
        PipelineState.PENDING: PipelineState.CHECKOUT,
        PipelineState.CHECKOUT: PipelineState.BUILDING,
        PipelineState.BUILDING: PipelineState.PUSHING,
        PipelineState.PUSHING: PipelineState.DEPLOYING,
        PipelineState.DEPLOYING: PipelineState.VERIFYING,
        PipelineState.VERIFYING: PipelineState.SUCCEEDED,
        PipelineState.ROLLING_BACK: PipelineState.ROLLED_BACK,
    }

    # Stage executed while in each working state
    STAGES: dict[PipelineState, Stage] = {
        PipelineState.CHECKOUT: Stage.CHECKOUT,
        PipelineState.BUILDING: Stage.BUILD,
        PipelineState.PUSHING: Stage.PUSH,
        PipelineState.DEPLOYING: Stage.DEPLOY,
        PipelineState.VERIFYING: Stage.VERIFY,
        PipelineState.ROLLING_BACK: Stage.ROLLBACK,
    }

    TERMINAL_STATUS: dict[PipelineState, RunStatus] = {
        PipelineState.SUCCEEDED: RunStatus.SUCCEEDED,
        PipelineState.FAILED: RunStatus.FAILED,
        PipelineState.ROLLED_BACK: RunStatus.ROLLED_BACK,
    }

    # States from which a failure may be rolled back
    ROLLBACK_STATES = {PipelineState.DEPLOYING, PipelineState.VERIFYING}

    def __init__(
        self,
        run: PipelineRun,
        rollback_enabled: bool = False,
        prior_artifact: ArtifactRef | None = None,
        store: RunStore | None = None,
    ) -> None:
        """Initialize state machine.

        Args:
            run: Run whose state this machine drives
            rollback_enabled: Whether failed rollouts may be rolled back
            prior_artifact: Last known-good artifact to roll back to
            store: Optional persistence for transitions and stage results
        """
        self.run = run
        self.rollback_enabled = rollback_enabled
        self.prior_artifact = prior_artifact
        self.store = store
        self._converged = False

        # Build transition map for quick lookup
        self._transition_map: dict[PipelineState, list[Transition]] = {}
        for t in self.TRANSITIONS:
            self._transition_map.setdefault(t.from_state, []).append(t)

    @property
    def state(self) -> PipelineState:
        return self.run.state

    @property
    def current_stage(self) -> Stage | None:
        """Stage executed in the current state, if any."""
        return self.STAGES.get(self.run.state)

    @property
    def converged(self) -> bool:
        """Whether the current rollout has been observed converged."""
        return self._converged

    @property
    def can_roll_back(self) -> bool:
        return (
            self.rollback_enabled
            and self.prior_artifact is not None
            and self.prior_artifact != self.run.artifact
        )

    def is_terminal(self) -> bool:
        return self.run.state.is_terminal

    def _find(self, to_state: PipelineState) -> Transition | None:
        for t in self._transition_map.get(self.run.state, []):
            if t.to_state == to_state:
                return t
        return None

    def can_transition(self, to_state: PipelineState) -> bool:
        """Check if transition to target state is valid.

        Args:
            to_state: Target state

        Returns:
            True if the edge exists and its condition holds
        """
        transition = self._find(to_state)
        if transition is None:
            return False
        return transition.condition is None or transition.condition(self)

    def transition(self, to_state: PipelineState, error: str | None = None) -> None:
        """Move to a new state.

        Args:
            to_state: Target state
            error: Failure reason, kept on the run for terminal failures

        Raises:
            InvalidTransition: If the edge does not exist or its condition fails
        """
        from_state = self.run.state
        transition = self._find(to_state)
        if transition is None:
            raise InvalidTransition(f"No transition {from_state.value} -> {to_state.value}")
        if transition.condition and not transition.condition(self):
            raise InvalidTransition(
                f"Cannot move {from_state.value} -> {to_state.value}: {transition.description}"
            )

        self.run.state = to_state
        if to_state in (PipelineState.DEPLOYING, PipelineState.ROLLING_BACK):
            self._converged = False
        if to_state.is_terminal:
            self.run.finish(self.TERMINAL_STATUS[to_state], error=error)
        logger.info("PIPELINE: %s %s -> %s", self.run.id, from_state.value, to_state.value)

        if self.store:
            self._persist(self.store.record_state, self.run.id, to_state)
            if to_state.is_terminal:
                self._persist(self.store.finish, self.run)

    def advance(self) -> PipelineState:
        """Move forward after the current stage succeeded.

        Returns:
            The new state
        """
        next_state = self.FORWARD.get(self.run.state)
        if next_state is None:
            raise InvalidTransition(f"No forward transition from {self.run.state.value}")
        self.transition(next_state)
        return next_state

    def mark_converged(self) -> None:
        """Record that the rollout of the current deploy converged."""
        if self.run.state not in (PipelineState.DEPLOYING, PipelineState.ROLLING_BACK):
            raise InvalidTransition(f"No rollout in progress in state {self.run.state.value}")
        self._converged = True

    def resolve_failure(self, error: str) -> PipelineState:
        """Decide where a failed stage leads.

        A failure while deploying or verifying rolls back when rollback is
        enabled and a prior-good artifact is known. Everything else, a failed
        rollback included, ends the run as FAILED.

        Args:
            error: Failure reason

        Returns:
            The new state
        """
        if self.run.state in self.ROLLBACK_STATES and self.can_roll_back:
            self.run.error = error
            self.transition(PipelineState.ROLLING_BACK)
        else:
            self.transition(PipelineState.FAILED, error=error)
        return self.run.state

    def record(
        self,
        stage: Stage,
        outcome: StageOutcome,
        attempt: int = 1,
        duration_ms: int = 0,
        message: str | None = None,
        artifact: ArtifactRef | None = None,
    ) -> StageResult:
        """Append one stage attempt to the run log."""
        result = StageResult(
            stage=stage,
            outcome=outcome,
            attempt=attempt,
            duration_ms=duration_ms,
            message=message,
            artifact=artifact.reference() if artifact else None,
        )
        self.run.append(result)
        if self.store:
            self._persist(self.store.record_stage, self.run.id, result)
        return result

    def _persist(self, write: Callable[..., None], *args: Any) -> None:
        """Write to the run store, logging failures.

        The in-memory run stays authoritative when the log cannot be written.
        """
        try:
            write(*args)
        except OSError:
            logger.exception("PIPELINE: %s could not write run log", self.run.id)

    def get_progress_summary(self) -> dict[str, Any]:
        """Get a summary of pipeline progress.

        Returns:
            Progress summary dict
        """
        completed = {
            r.stage for r in self.run.stages if r.outcome in (StageOutcome.SUCCESS, StageOutcome.SKIPPED)
        }
        total = len(self.STAGES) - 1  # Rollback is not part of normal progress
        done = len(completed - {Stage.ROLLBACK})

        return {
            "run_id": self.run.id,
            "status": self.run.final_status.value,
            "state": self.run.state.value,
            "progress": f"{done}/{total}",
            "progress_percent": round(done / total * 100),
            "rollback_available": self.can_roll_back,
        }
