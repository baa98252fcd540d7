"""Pipeline runner for driving one build -> push -> deploy run."""

import logging
import threading
import time
import uuid
from datetime import datetime
from pathlib import Path
from typing import Any, Callable

from rich.console import Console

from pipeline.config import Config
from schemas.artifact import ArtifactRef
from schemas.pipeline_state import (
    PipelineRun,
    PipelineState,
    RolloutSnapshot,
    RunStatus,
    Stage,
    StageOutcome,
)
from tools.base import Command, ExecutionError
from tools.docker_tool import DockerTool
from tools.git_tool import GitTool
from tools.http_tool import HttpTool
from tools.kubectl_tool import DeploymentRef, KubectlTool
from tools.rollback import DeploymentHistory
from tools.step_executor import StepExecutor

from .retry import BackoffSpec, ExhaustedError, RetryPolicy
from .rollout_monitor import RolloutCancelled, RolloutError, RolloutMonitor
from .run_store import RunStore
from .state_machine import StateMachine

logger = logging.getLogger(__name__)

# Type alias for stage handlers
StageHandler = Callable[[], tuple[bool, str | None]]


def new_run_id() -> str:
    """Sortable unique run id, e.g. ``20260104-143052-3fa2c1``."""
    return f"{datetime.now():%Y%m%d-%H%M%S}-{uuid.uuid4().hex[:6]}"


class PipelineRunner:
    """Orchestrates one pipeline run.

    Owns a single PipelineRun and its StateMachine with:
    - Stage-by-stage execution (checkout, build, push, deploy, verify)
    - Retry of transient failures per stage
    - Rollout convergence gating
    - Rollback to the last known-good artifact
    - Cancellation

    ``run()`` never raises for pipeline failures; every outcome is a
    terminal PipelineRun with its stage log.
    """

    def __init__(
        self,
        config: Config,
        executor: StepExecutor | None = None,
        store: RunStore | None = None,
        history: DeploymentHistory | None = None,
        console: Console | None = None,
        run_id: str | None = None,
        prior_tag: str | None = None,
        retry_policy: RetryPolicy | None = None,
        http: HttpTool | None = None,
        clock: Callable[[], float] = time.monotonic,
        wait: Callable[[float, threading.Event | None], bool] | None = None,
    ) -> None:
        """Initialize pipeline runner.

        Args:
            config: Immutable pipeline configuration
            executor: Shared step executor (default: a new one over ShellTool)
            store: Run log persistence
            history: Deployment history used to find the prior-good artifact
            console: Rich console for progress output (None = logging only)
            run_id: Explicit run id
            prior_tag: Rollback target tag, overriding config and history
            retry_policy: Override the policy built from config
            http: Health probe client
            clock: Monotonic clock for rollout deadlines
            wait: Wait between rollout polls; returns True if interrupted

        Raises:
            InvalidArtifact: If config does not describe a valid artifact
        """
        self.config = config
        self.executor = executor or StepExecutor(max_concurrency=config.pipeline.max_concurrency)
        self.store = store
        self.history = history
        self.console = console
        self.http = http or HttpTool(timeout=config.deploy.health_check_timeout)

        tag = config.build.tag or datetime.now().strftime("%Y%m%d%H%M%S")
        self.artifact = ArtifactRef(
            registry=config.registry.url,
            repository=config.registry.repository or config.deploy.deployment,
            tag=tag,
        )
        self.deployment = DeploymentRef(
            name=config.deploy.deployment,
            namespace=config.deploy.namespace,
            context=config.deploy.context,
            container=config.deploy.container,
        )

        self.retry_policy = retry_policy or RetryPolicy(
            max_attempts=config.retry.max_attempts,
            backoff=BackoffSpec(
                base=config.retry.backoff_base,
                cap=config.retry.backoff_cap,
                multiplier=config.retry.backoff_multiplier,
                jitter=config.retry.jitter,
            ),
        )
        monitor_kwargs: dict[str, Any] = {"clock": clock}
        if wait is not None:
            monitor_kwargs["wait"] = wait
        self.monitor = RolloutMonitor(
            self._query_snapshot,
            max_consecutive_poll_failures=config.rollout.max_consecutive_poll_failures,
            **monitor_kwargs,
        )

        workdir = Path(config.source.workdir)
        self.git = GitTool(workdir, token=config.source.token or None)
        self.docker = DockerTool(
            workdir / config.build.context,
            dockerfile=config.build.dockerfile,
            build_args=config.build.build_args,
        )
        self.kubectl = KubectlTool(kubeconfig=config.deploy.kubeconfig)

        self.run_state = PipelineRun(id=run_id or new_run_id(), artifact=self.artifact)
        self.state_machine = StateMachine(
            self.run_state,
            rollback_enabled=config.deploy.rollback_enabled,
            prior_artifact=self._resolve_prior_artifact(prior_tag),
            store=store,
        )

        # Cancellation: _cancelled stops the run, _interrupt stops the active wait
        self._cancelled = threading.Event()
        self._rollback_requested = threading.Event()
        self._interrupt = threading.Event()

        # Stage handlers registry
        self._handlers: dict[PipelineState, StageHandler] = {
            PipelineState.CHECKOUT: self._handle_checkout,
            PipelineState.BUILDING: self._handle_build,
            PipelineState.PUSHING: self._handle_push,
            PipelineState.DEPLOYING: self._handle_deploy,
            PipelineState.VERIFYING: self._handle_verify,
            PipelineState.ROLLING_BACK: self._handle_rollback,
        }

    def _resolve_prior_artifact(self, prior_tag: str | None) -> ArtifactRef | None:
        """Find the artifact to roll back to.

        Explicit tags win over the deployment history.
        """
        tag = prior_tag or self.config.deploy.prior_tag
        if tag:
            return self.artifact.with_tag(tag)
        if self.history is not None:
            record = self.history.last_good(str(self.deployment), exclude_tag=self.artifact.tag)
            if record is not None:
                return record.artifact
        return None

    # ------------------------------------------------------------------
    # Public control
    # ------------------------------------------------------------------

    def cancel(self) -> None:
        """Stop the run: no further transitions, active waits interrupted."""
        logger.info("PIPELINE: %s cancel requested", self.run_state.id)
        self._cancelled.set()
        self._interrupt.set()

    def request_rollback(self) -> None:
        """Abandon the current rollout and roll back if possible.

        Outside of deploy/verify there is nothing to roll back and the
        request cancels the run instead.
        """
        if self.state_machine.state not in StateMachine.ROLLBACK_STATES:
            self.cancel()
            return
        logger.info("PIPELINE: %s rollback requested", self.run_state.id)
        self._rollback_requested.set()
        self._interrupt.set()

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled.is_set()

    def plan(self) -> list[tuple[Stage, Command]]:
        """Commands a run would execute, for dry runs."""
        steps: list[tuple[Stage, Command]] = []
        source = self.config.source
        if source.repo_url:
            steps.extend(
                (Stage.CHECKOUT, c) for c in self.git.checkout_commands(source.repo_url, source.branch)
            )
            steps.append((Stage.CHECKOUT, self.git.rev_parse()))
        steps.append((Stage.BUILD, self._build_command()))
        if self.config.registry.push:
            steps.extend((Stage.PUSH, c) for c in self._push_commands())
        steps.extend((Stage.DEPLOY, c) for c in self._deploy_commands(self.artifact))
        steps.append((Stage.DEPLOY, self.kubectl.get_deployment(self.deployment)))
        return steps

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> PipelineRun:
        """Drive the run to a terminal state.

        Returns:
            The completed PipelineRun with its full stage log
        """
        sm = self.state_machine
        run = self.run_state

        logger.info("PIPELINE: Starting run %s for %s", run.id, self.artifact)
        self._print(f"[green]Starting run {run.id}[/green] ({self.artifact})")

        try:
            if self.store:
                try:
                    self.store.start(run)
                except OSError:
                    logger.exception("PIPELINE: run %s could not write run log", run.id)
            sm.advance()  # pending -> checkout
            while not sm.is_terminal():
                stage = sm.current_stage

                # Check for cancellation before each stage
                if self._cancelled.is_set():
                    sm.record(stage, StageOutcome.FAILED, message="Cancelled before start")
                    sm.transition(PipelineState.FAILED, error="Cancelled")
                    break

                handler = self._handlers[sm.state]
                self._print_stage_start(stage)
                logger.info("PIPELINE: Starting stage %s", stage.value)

                try:
                    success, error = handler()
                except Exception as handler_exc:
                    logger.exception("Handler exception in stage %s", stage.value)
                    success, error = False, str(handler_exc)
                    sm.record(stage, StageOutcome.FAILED, message=f"Internal error: {error}")

                logger.info(
                    "PIPELINE: Stage %s completed: success=%s, error=%s", stage.value, success, error
                )

                if success:
                    sm.advance()
                elif self._cancelled.is_set():
                    sm.transition(PipelineState.FAILED, error=error or "Cancelled")
                else:
                    self._print(f"[red]{stage.value} failed:[/red] {error}")
                    if sm.resolve_failure(error or "Stage failed") == PipelineState.ROLLING_BACK:
                        self._print(
                            f"[yellow]Rolling back to {sm.prior_artifact}[/yellow]"
                        )
                        # The rollback rollout must be able to poll
                        self._rollback_requested.clear()
                        if not self._cancelled.is_set():
                            self._interrupt.clear()

        except Exception as e:
            logger.exception("PIPELINE: run %s aborted", run.id)
            if not sm.is_terminal():
                sm.transition(PipelineState.FAILED, error=f"Pipeline error: {e}")

        self._finish()
        return run

    def _finish(self) -> None:
        """Record deployment history and report the terminal run."""
        run = self.run_state
        if self.history is not None and run.state != PipelineState.PENDING:
            try:
                self._record_history()
            except OSError:
                logger.exception("PIPELINE: run %s could not write deployment history", run.id)

        logger.info(
            "PIPELINE: run %s finished: %s (%d stage attempts)",
            run.id,
            run.final_status.value,
            len(run.stages),
        )
        self._print_completion_summary()

    def _record_history(self) -> None:
        """Record the artifact as good on success, bad if a deploy was attempted."""
        run = self.run_state
        deployment = str(self.deployment)
        if run.final_status == RunStatus.SUCCEEDED:
            self.history.record_deployment(
                deployment, self.artifact, success=True, run_id=run.id, commit_sha=run.commit or ""
            )
        elif run.results_for(Stage.DEPLOY):
            self.history.record_deployment(
                deployment,
                self.artifact,
                success=False,
                run_id=run.id,
                commit_sha=run.commit or "",
                metadata={"final_status": run.final_status.value},
            )

    # ------------------------------------------------------------------
    # Step execution helpers
    # ------------------------------------------------------------------

    def _attempt(
        self,
        stage: Stage,
        op: Callable[[], Any],
        artifact: ArtifactRef | None = None,
    ) -> tuple[Any, int, int]:
        """Run one stage operation under the retry policy.

        Failed attempts are recorded here; the successful attempt is left
        for the caller to record once any gating (rollout) has passed.

        Returns:
            Operation result, attempt number and duration in ms of the
            successful attempt

        Raises:
            ExhaustedError: If no attempt succeeded
        """
        sm = self.state_machine
        # start and end of the latest attempt, excluding backoff
        span = [time.monotonic(), time.monotonic()]
        success: dict[str, int] = {}

        def timed_op() -> Any:
            span[0] = time.monotonic()
            try:
                return op()
            finally:
                span[1] = time.monotonic()

        def on_attempt(attempt: int, error: ExecutionError | None, will_retry: bool) -> None:
            duration_ms = int((span[1] - span[0]) * 1000)
            if error is None:
                success.update(attempt=attempt, duration_ms=duration_ms)
                return
            message = str(error)
            if error.transient and not will_retry and self._interrupt.is_set():
                message = f"{self._interrupt_reason()} while retrying: {error}"
            sm.record(
                stage,
                StageOutcome.RETRIED if will_retry else StageOutcome.FAILED,
                attempt=attempt,
                duration_ms=duration_ms,
                message=message,
                artifact=artifact,
            )

        result = self.retry_policy.run(timed_op, on_attempt=on_attempt, cancel_event=self._interrupt)
        return result, success["attempt"], success["duration_ms"]

    def _exec(self, stage: Stage, command: Command, timeout: float) -> str:
        """Execute one command and return its stdout."""
        return self.executor.execute(stage, command, timeout).stdout

    def _query_snapshot(self, deployment: DeploymentRef) -> RolloutSnapshot:
        """Rollout status query used by the monitor."""
        stage = self.state_machine.current_stage or Stage.DEPLOY
        output = self.executor.execute(
            stage, self.kubectl.get_deployment(deployment), self.config.rollout.status_timeout
        )
        return KubectlTool.parse_snapshot(output)

    def _await_rollout(self, timeout: float) -> None:
        """Block until the deployment converges.

        Raises:
            RolloutError: If it does not
        """
        self.monitor.await_convergence(
            self.deployment,
            desired_replicas=self.config.deploy.replicas or None,
            poll_interval=self.config.rollout.poll_interval,
            timeout=timeout,
            cancel_event=self._interrupt,
        )

    def _interrupt_reason(self) -> str:
        if self._cancelled.is_set():
            return "Cancelled"
        if self._rollback_requested.is_set():
            return "Rollback requested"
        return "Interrupted"

    # ------------------------------------------------------------------
    # Command builders
    # ------------------------------------------------------------------

    def _build_command(self) -> Command:
        extra_tags = ["latest"] if self.config.build.tag_latest else []
        return self.docker.build(self.artifact, extra_tags=extra_tags)

    def _push_commands(self) -> list[Command]:
        registry = self.config.registry
        commands = []
        if registry.username and registry.password:
            commands.append(self.docker.login(registry.url, registry.username, registry.password))
        commands.append(self.docker.push(self.artifact))
        if self.config.build.tag_latest:
            commands.append(self.docker.push(self.artifact.with_tag("latest")))
        return commands

    def _deploy_commands(self, artifact: ArtifactRef) -> list[Command]:
        commands = []
        if self.config.deploy.manifest:
            commands.append(self.kubectl.apply(self.config.deploy.manifest, self.deployment))
        commands.append(self.kubectl.set_image(self.deployment, artifact))
        return commands

    # ------------------------------------------------------------------
    # Stage handlers
    # ------------------------------------------------------------------

    def _handle_checkout(self) -> tuple[bool, str | None]:
        """Check out the configured branch and record its commit."""
        sm = self.state_machine
        source = self.config.source

        if not source.repo_url:
            workdir = Path(source.workdir)
            if workdir.is_dir():
                sm.record(Stage.CHECKOUT, StageOutcome.SKIPPED, message=f"Using {workdir}")
                return True, None
            error = f"Source directory not found: {workdir}"
            sm.record(Stage.CHECKOUT, StageOutcome.FAILED, message=error)
            return False, error

        def op() -> str:
            # Re-evaluated per attempt: a retried clone may find a partial checkout
            for command in self.git.checkout_commands(source.repo_url, source.branch):
                self._exec(Stage.CHECKOUT, command, source.timeout)
            return self._exec(Stage.CHECKOUT, self.git.rev_parse(), source.timeout).strip()

        try:
            commit, attempt, duration_ms = self._attempt(Stage.CHECKOUT, op)
        except ExhaustedError as e:
            return False, str(e.last_error)

        self.run_state.commit = commit
        sm.record(
            Stage.CHECKOUT,
            StageOutcome.SUCCESS,
            attempt=attempt,
            duration_ms=duration_ms,
            message=f"{source.branch}@{commit[:12]}",
        )
        return True, None

    def _handle_build(self) -> tuple[bool, str | None]:
        """Build the image tagged with the run's artifact reference."""
        command = self._build_command()
        try:
            _, attempt, duration_ms = self._attempt(
                Stage.BUILD,
                lambda: self._exec(Stage.BUILD, command, self.config.build.timeout),
                self.artifact,
            )
        except ExhaustedError as e:
            return False, str(e.last_error)

        self.state_machine.record(
            Stage.BUILD,
            StageOutcome.SUCCESS,
            attempt=attempt,
            duration_ms=duration_ms,
            message=f"Built {self.artifact}",
            artifact=self.artifact,
        )
        return True, None

    def _handle_push(self) -> tuple[bool, str | None]:
        """Push the image; pushing an existing tag again is harmless."""
        if not self.config.registry.push:
            self.state_machine.record(
                Stage.PUSH, StageOutcome.SKIPPED, message="Push disabled", artifact=self.artifact
            )
            return True, None

        commands = self._push_commands()

        def op() -> None:
            for command in commands:
                self._exec(Stage.PUSH, command, self.config.registry.timeout)

        try:
            _, attempt, duration_ms = self._attempt(Stage.PUSH, op, self.artifact)
        except ExhaustedError as e:
            return False, str(e.last_error)

        self.state_machine.record(
            Stage.PUSH,
            StageOutcome.SUCCESS,
            attempt=attempt,
            duration_ms=duration_ms,
            message=f"Pushed {self.artifact}",
            artifact=self.artifact,
        )
        return True, None

    def _rollout(self, stage: Stage, artifact: ArtifactRef) -> tuple[bool, str | None]:
        """Apply ``artifact`` to the deployment and wait for convergence."""
        sm = self.state_machine
        commands = self._deploy_commands(artifact)

        def op() -> None:
            for command in commands:
                self._exec(stage, command, self.config.deploy.timeout)

        try:
            _, attempt, duration_ms = self._attempt(stage, op, artifact)
        except ExhaustedError as e:
            return False, str(e.last_error)

        # The image reference has changed from here on
        self.run_state.deployed_artifact = artifact
        start = time.monotonic()
        try:
            self._await_rollout(self.config.rollout.timeout)
        except RolloutError as e:
            error = self._interrupt_reason() if isinstance(e, RolloutCancelled) else str(e)
            sm.record(
                stage,
                StageOutcome.FAILED,
                attempt=attempt,
                duration_ms=duration_ms + int((time.monotonic() - start) * 1000),
                message=error,
                artifact=artifact,
            )
            return False, error

        sm.mark_converged()
        sm.record(
            stage,
            StageOutcome.SUCCESS,
            attempt=attempt,
            duration_ms=duration_ms + int((time.monotonic() - start) * 1000),
            message=f"{self.deployment} running {artifact}",
            artifact=artifact,
        )
        return True, None

    def _handle_deploy(self) -> tuple[bool, str | None]:
        return self._rollout(Stage.DEPLOY, self.artifact)

    def _handle_verify(self) -> tuple[bool, str | None]:
        """Re-check the rollout and probe the health endpoint."""
        sm = self.state_machine
        start = time.monotonic()
        try:
            self._await_rollout(self.config.rollout.verify_timeout)
        except RolloutError as e:
            error = self._interrupt_reason() if isinstance(e, RolloutCancelled) else str(e)
            sm.record(
                Stage.VERIFY,
                StageOutcome.FAILED,
                duration_ms=int((time.monotonic() - start) * 1000),
                message=error,
                artifact=self.artifact,
            )
            return False, error

        attempt = 1
        message = f"{self.deployment} stable"
        url = self.config.deploy.health_check_url
        if url:
            try:
                elapsed_ms, attempt, _ = self._attempt(
                    Stage.VERIFY, lambda: self.http.health_check(url), self.artifact
                )
            except ExhaustedError as e:
                return False, str(e.last_error)
            message = f"{message}, {url} healthy in {elapsed_ms}ms"

        sm.record(
            Stage.VERIFY,
            StageOutcome.SUCCESS,
            attempt=attempt,
            duration_ms=int((time.monotonic() - start) * 1000),
            message=message,
            artifact=self.artifact,
        )
        return True, None

    def _handle_rollback(self) -> tuple[bool, str | None]:
        return self._rollout(Stage.ROLLBACK, self.state_machine.prior_artifact)

    # ------------------------------------------------------------------
    # Console output
    # ------------------------------------------------------------------

    def _print(self, message: str) -> None:
        if self.console:
            self.console.print(message)

    def _print_stage_start(self, stage: Stage) -> None:
        self._print(f"[bold cyan]▶ {stage.value}[/bold cyan]")

    def _print_completion_summary(self) -> None:
        run = self.run_state
        style = {
            RunStatus.SUCCEEDED: "green",
            RunStatus.ROLLED_BACK: "yellow",
        }.get(run.final_status, "red")
        deployed = f" (running {run.deployed_artifact})" if run.deployed_artifact else ""
        self._print(f"[{style}]Run {run.id} {run.final_status.value}[/{style}]{deployed}")
        if run.error and run.final_status != RunStatus.SUCCEEDED:
            self._print(f"[dim]{run.error}[/dim]")
