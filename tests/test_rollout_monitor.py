"""Tests for orchestrator.rollout_monitor."""

import threading

import pytest

from orchestrator.rollout_monitor import (
    RolloutCancelled,
    RolloutMonitor,
    RolloutTimeout,
    RolloutUnreachable,
)
from schemas.pipeline_state import RolloutSnapshot
from tools.base import NetworkError
from tools.kubectl_tool import DeploymentRef

DEPLOYMENT = DeploymentRef(name="web", namespace="shop")


def snap(ready, updated=None, desired=3):
    return RolloutSnapshot(
        desired_replicas=desired,
        ready_replicas=ready,
        updated_replicas=ready if updated is None else updated,
    )


class ScriptedQuery:
    """Returns (or raises) scripted poll results, repeating the last one."""

    def __init__(self, *results):
        self.results = list(results)
        self.calls = 0

    def __call__(self, deployment):
        self.calls += 1
        result = self.results.pop(0) if len(self.results) > 1 else self.results[0]
        if isinstance(result, Exception):
            raise result
        return result


def make_monitor(query, clock, max_failures=3):
    return RolloutMonitor(
        query,
        max_consecutive_poll_failures=max_failures,
        clock=clock,
        wait=clock.wait,
    )


class TestAwaitConvergence:
    def test_converges_after_partial_polls(self, clock):
        query = ScriptedQuery(snap(1), snap(2), snap(3, updated=2), snap(3), snap(1))
        outcome = make_monitor(query, clock).await_convergence(DEPLOYMENT, 3, 1.0, 60.0)

        assert outcome.polls == 4
        assert outcome.snapshot.ready_replicas == 3
        assert query.calls == 4
        assert clock.waits == [1.0, 1.0, 1.0]

    def test_immediately_converged(self, clock):
        outcome = make_monitor(ScriptedQuery(snap(3)), clock).await_convergence(DEPLOYMENT, 3, 1.0, 60.0)
        assert outcome.polls == 1
        assert clock.waits == []

    def test_desired_defaults_to_deployment_replicas(self, clock):
        query = ScriptedQuery(snap(2, desired=2))
        outcome = make_monitor(query, clock).await_convergence(DEPLOYMENT, None, 1.0, 10.0)
        assert outcome.snapshot.desired_replicas == 2

    def test_timeout_carries_last_snapshot(self, clock):
        query = ScriptedQuery(snap(0), snap(1), snap(2))
        with pytest.raises(RolloutTimeout) as exc_info:
            make_monitor(query, clock).await_convergence(DEPLOYMENT, 3, 2.0, 10.0)

        assert exc_info.value.last_snapshot.ready_replicas == 2
        assert exc_info.value.timeout == 10.0
        assert clock.now == 10.0

    def test_last_wait_clipped_to_deadline(self, clock):
        with pytest.raises(RolloutTimeout):
            make_monitor(ScriptedQuery(snap(0)), clock).await_convergence(DEPLOYMENT, 3, 4.0, 10.0)
        assert clock.waits == [4.0, 4.0, 2.0]

    def test_failed_polls_are_tolerated(self, clock):
        query = ScriptedQuery(NetworkError("refused"), NetworkError("refused"), snap(3))
        outcome = make_monitor(query, clock).await_convergence(DEPLOYMENT, 3, 1.0, 60.0)
        assert outcome.polls == 3

    def test_success_resets_failure_count(self, clock):
        err = NetworkError("refused")
        query = ScriptedQuery(err, err, snap(1), err, err, snap(3))
        outcome = make_monitor(query, clock, max_failures=2).await_convergence(DEPLOYMENT, 3, 1.0, 60.0)
        assert outcome.polls == 6

    def test_unreachable_after_consecutive_failures(self, clock):
        query = ScriptedQuery(NetworkError("refused"))
        with pytest.raises(RolloutUnreachable) as exc_info:
            make_monitor(query, clock, max_failures=2).await_convergence(DEPLOYMENT, 3, 1.0, 60.0)
        assert exc_info.value.failures == 3
        assert query.calls == 3

    def test_timeout_without_successful_poll(self, clock):
        query = ScriptedQuery(NetworkError("refused"))
        with pytest.raises(RolloutTimeout) as exc_info:
            make_monitor(query, clock, max_failures=100).await_convergence(DEPLOYMENT, 3, 1.0, 3.0)
        assert exc_info.value.last_snapshot is None

    def test_cancelled_before_first_poll(self, clock):
        cancel = threading.Event()
        cancel.set()
        query = ScriptedQuery(snap(3))
        with pytest.raises(RolloutCancelled):
            make_monitor(query, clock).await_convergence(DEPLOYMENT, 3, 1.0, 60.0, cancel)
        assert query.calls == 0

    def test_cancelled_while_waiting(self, clock):
        cancel = threading.Event()

        def query(deployment):
            cancel.set()
            return snap(1)

        with pytest.raises(RolloutCancelled):
            make_monitor(query, clock).await_convergence(DEPLOYMENT, 3, 1.0, 60.0, cancel)
        assert clock.now == 0.0

    def test_real_wait_returns_promptly_on_cancel(self):
        cancel = threading.Event()
        monitor = RolloutMonitor(ScriptedQuery(snap(0)))
        timer = threading.Timer(0.05, cancel.set)
        timer.start()
        try:
            with pytest.raises(RolloutCancelled):
                monitor.await_convergence(DEPLOYMENT, 3, 30.0, 60.0, cancel)
        finally:
            timer.cancel()
