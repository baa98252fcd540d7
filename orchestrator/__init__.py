"""Orchestrator module for shipyard.

State machine-based pipeline orchestration with:
- Explicit stage transitions
- Retry of transient failures
- Rollout convergence monitoring
- Rollback to the last known-good artifact
- Append-only run logs
"""

from .retry import BackoffSpec, ExhaustedError, RetryPolicy
from .rollout_monitor import (
    RolloutCancelled,
    RolloutError,
    RolloutMonitor,
    RolloutOutcome,
    RolloutTimeout,
    RolloutUnreachable,
)
from .run_store import RunStore
from .runner import PipelineRunner
from .state_machine import InvalidTransition, StateMachine, Transition

__all__ = [
    "StateMachine",
    "Transition",
    "InvalidTransition",
    "PipelineRunner",
    "RetryPolicy",
    "BackoffSpec",
    "ExhaustedError",
    "RolloutMonitor",
    "RolloutOutcome",
    "RolloutError",
    "RolloutTimeout",
    "RolloutUnreachable",
    "RolloutCancelled",
    "RunStore",
]
