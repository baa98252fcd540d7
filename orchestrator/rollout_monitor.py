"""Rollout monitor: polls a deployment until it converges."""

import logging
import threading
import time
from dataclasses import dataclass
from typing import Callable

from schemas.pipeline_state import RolloutSnapshot
from tools.base import ExecutionError
from tools.kubectl_tool import DeploymentRef

logger = logging.getLogger(__name__)

# Reads the current rollout status; raises ExecutionError when the query fails
SnapshotQuery = Callable[[DeploymentRef], RolloutSnapshot]


@dataclass
class RolloutOutcome:
    """Result of a converged rollout."""

    snapshot: RolloutSnapshot
    polls: int
    elapsed: float


class RolloutError(Exception):
    """Base class for rollouts that did not converge."""

    pass


class RolloutTimeout(RolloutError):
    """The timeout elapsed without a convergent poll."""

    def __init__(self, timeout: float, last_snapshot: RolloutSnapshot | None) -> None:
        self.timeout = timeout
        self.last_snapshot = last_snapshot
        if last_snapshot is None:
            detail = "no successful poll"
        else:
            detail = (
                f"ready={last_snapshot.ready_replicas} "
                f"updated={last_snapshot.updated_replicas} "
                f"desired={last_snapshot.desired_replicas}"
            )
        super().__init__(f"Rollout did not converge within {timeout}s ({detail})")


class RolloutUnreachable(RolloutError):
    """Too many consecutive status polls failed."""

    def __init__(self, failures: int, last_error: ExecutionError) -> None:
        self.failures = failures
        self.last_error = last_error
        super().__init__(f"Rollout status unreachable after {failures} failed polls: {last_error}")


class RolloutCancelled(RolloutError):
    """Polling was cancelled by the caller."""

    def __init__(self) -> None:
        super().__init__("Rollout monitoring cancelled")


def _default_wait(delay: float, cancel_event: threading.Event | None) -> bool:
    if cancel_event is not None:
        return cancel_event.wait(delay)
    time.sleep(delay)
    return False


class RolloutMonitor:
    """Polls rollout status until convergence, timeout or cancellation.

    A rollout has converged when a single poll shows ready and updated
    replicas both equal to the desired count. A failed poll is a miss, not
    an error, until ``max_consecutive_poll_failures`` is exceeded.
    """

    def __init__(
        self,
        query: SnapshotQuery,
        max_consecutive_poll_failures: int = 3,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float, threading.Event | None], bool] = _default_wait,
    ) -> None:
        """Initialize rollout monitor.

        Args:
            query: Reads one RolloutSnapshot for a deployment
            max_consecutive_poll_failures: Failed polls tolerated in a row
            clock: Monotonic clock in seconds
            wait: Sleeps between polls; returns True if cancelled meanwhile
        """
        if max_consecutive_poll_failures < 0:
            raise ValueError("max_consecutive_poll_failures must be >= 0")
        self.query = query
        self.max_consecutive_poll_failures = max_consecutive_poll_failures
        self._clock = clock
        self._wait = wait

    def await_convergence(
        self,
        deployment: DeploymentRef,
        desired_replicas: int | None,
        poll_interval: float,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> RolloutOutcome:
        """Poll until the deployment converges.

        Args:
            deployment: Deployment to watch
            desired_replicas: Target replica count (None = the deployment's spec)
            poll_interval: Seconds between polls
            timeout: Overall deadline in seconds
            cancel_event: Stops polling promptly when set

        Returns:
            RolloutOutcome with the first convergent snapshot

        Raises:
            RolloutTimeout: If the deadline passed without convergence
            RolloutUnreachable: If too many consecutive polls failed
            RolloutCancelled: If ``cancel_event`` was set
        """
        start = self._clock()
        deadline = start + timeout
        last_snapshot: RolloutSnapshot | None = None
        consecutive_failures = 0
        polls = 0

        while True:
            if cancel_event is not None and cancel_event.is_set():
                raise RolloutCancelled()

            polls += 1
            try:
                snapshot = self.query(deployment)
            except ExecutionError as e:
                consecutive_failures += 1
                logger.warning(
                    "ROLLOUT: poll %d of %s failed (%d in a row): %s",
                    polls,
                    deployment,
                    consecutive_failures,
                    e,
                )
                if consecutive_failures > self.max_consecutive_poll_failures:
                    raise RolloutUnreachable(consecutive_failures, e) from e
            else:
                consecutive_failures = 0
                last_snapshot = snapshot
                target = snapshot.desired_replicas if desired_replicas is None else desired_replicas
                logger.debug(
                    "ROLLOUT: %s ready=%d updated=%d desired=%d",
                    deployment,
                    snapshot.ready_replicas,
                    snapshot.updated_replicas,
                    target,
                )
                if snapshot.converged(target):
                    elapsed = self._clock() - start
                    logger.info("ROLLOUT: %s converged after %d polls", deployment, polls)
                    return RolloutOutcome(snapshot=snapshot, polls=polls, elapsed=elapsed)

            now = self._clock()
            if now >= deadline:
                raise RolloutTimeout(timeout, last_snapshot)
            if self._wait(min(poll_interval, deadline - now), cancel_event):
                raise RolloutCancelled()
