"""Step executor: runs one external operation for a pipeline stage."""

import logging
import re
import threading
import time

from schemas.pipeline_state import Stage

from .base import (
    BaseTool,
    Command,
    CommandFailed,
    CommandOutput,
    ExecutionError,
    NetworkError,
    TimedOut,
)
from .shell_tool import ShellTool

logger = logging.getLogger(__name__)

# Output signatures of failures talking to a registry/API server that a retry may fix
TRANSIENT_NETWORK_PATTERNS = [
    r"connection refused",
    r"connection reset",
    r"i/o timeout",
    r"tls handshake timeout",
    r"temporary failure in name resolution",
    r"no such host",
    r"network is unreachable",
    r"unexpected eof",
    r"broken pipe",
    r"503 service unavailable",
    r"502 bad gateway",
    r"504 gateway time-?out",
    r"too many requests",
    r"context deadline exceeded",
    r"unable to connect to the server",
    r"the server is currently unable to handle the request",
]

# Rejections by a remote endpoint; retrying is futile
PERMANENT_NETWORK_PATTERNS = [
    r"unauthorized",
    r"authentication required",
    r"denied: ",
    r"access denied",
    r"requested access to the resource is denied",
    r"forbidden",
    r"incorrect username or password",
]

_TRANSIENT_RE = re.compile("|".join(TRANSIENT_NETWORK_PATTERNS), re.IGNORECASE)
_PERMANENT_RE = re.compile("|".join(PERMANENT_NETWORK_PATTERNS), re.IGNORECASE)


def classify_failure(command: Command, output: CommandOutput) -> ExecutionError:
    """Turn a non-zero exit into the matching ExecutionError.

    Permanent rejections win over transient signatures: an auth failure that
    also mentions a timeout is still an auth failure.
    """
    text = output.text
    tail = text.strip().splitlines()[-1] if text.strip() else f"exit code {output.returncode}"
    message = f"{command.kind.value} failed: {tail[:200]}"

    if _PERMANENT_RE.search(text):
        return NetworkError(
            message, transient=False, exit_code=output.returncode, output=text
        )
    if _TRANSIENT_RE.search(text):
        return NetworkError(message, exit_code=output.returncode, output=text)
    return CommandFailed(message, exit_code=output.returncode, output=text)


class StepExecutor:
    """Runs external operations with a timeout and a bounded worker pool.

    One executor may be shared by concurrent pipeline runs; the pool caps
    how many external operations run at once across all of them.
    """

    def __init__(self, tool: BaseTool | None = None, max_concurrency: int = 4) -> None:
        """Initialize step executor.

        Args:
            tool: Backend that runs commands (default: ShellTool)
            max_concurrency: Maximum concurrent external operations
        """
        if max_concurrency < 1:
            raise ValueError("max_concurrency must be >= 1")
        self.tool = tool or ShellTool()
        self._pool = threading.BoundedSemaphore(max_concurrency)
        self._lock = threading.Lock()
        self._orphans: list[int] = []

    @property
    def orphans(self) -> list[int]:
        """PIDs of timed-out processes that could not be confirmed dead."""
        with self._lock:
            return list(self._orphans)

    def execute(self, stage: Stage, command: Command, timeout: float) -> CommandOutput:
        """Run one operation for a stage.

        Emits exactly one log record per call, whatever the outcome.

        Args:
            stage: Stage the operation belongs to
            command: Command descriptor
            timeout: Timeout in seconds

        Returns:
            CommandOutput of a successful run

        Raises:
            TimedOut: If the timeout elapsed
            NetworkError: If a remote endpoint failed or rejected the request
            CommandFailed: If the operation failed for any other reason
        """
        start = time.monotonic()
        outcome = "success"
        try:
            with self._pool:
                output = self.tool.execute(command, timeout)
            if not output.success:
                raise classify_failure(command, output)
            return output
        except TimedOut as e:
            outcome = "timed_out"
            if not e.terminated and e.pid is not None:
                with self._lock:
                    self._orphans.append(e.pid)
            raise
        except NetworkError as e:
            outcome = "network_error" if e.transient else "rejected"
            raise
        except ExecutionError:
            outcome = "failed"
            raise
        except Exception as e:
            outcome = "failed"
            raise CommandFailed(f"{command.kind.value} error: {e}") from e
        finally:
            duration_ms = int((time.monotonic() - start) * 1000)
            logger.log(
                logging.INFO if outcome == "success" else logging.WARNING,
                "STEP: %s %s -> %s (%dms)",
                stage.value,
                command.summary(),
                outcome,
                duration_ms,
                extra={
                    "stage": stage.value,
                    "command": command.summary(),
                    "outcome": outcome,
                    "duration_ms": duration_ms,
                },
            )
