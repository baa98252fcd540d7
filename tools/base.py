"""Base interface for external operations.

Every external collaborator (git, docker, kubectl) is driven through an
opaque :class:`Command` descriptor and a :class:`BaseTool` backend that runs
it. Failures are reported as :class:`ExecutionError` subclasses whose
``transient`` flag drives retry decisions.
"""

import shlex
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum


class CommandKind(str, Enum):
    """Operation a command performs."""

    CHECKOUT = "checkout"
    REV_PARSE = "rev_parse"
    BUILD = "build"
    LOGIN = "login"
    PUSH = "push"
    APPLY = "apply"
    SET_IMAGE = "set_image"
    STATUS_QUERY = "status_query"


@dataclass(frozen=True)
class Command:
    """Opaque descriptor of one external operation."""

    kind: CommandKind
    argv: tuple[str, ...]
    cwd: str | None = None
    env: dict[str, str] = field(default_factory=dict, hash=False, compare=False)
    # Fed to the process on stdin; never logged
    stdin: str | None = field(default=None, repr=False, compare=False)

    def summary(self, limit: int = 160) -> str:
        """Printable form of the command for logs."""
        text = shlex.join(self.argv)
        if len(text) > limit:
            return text[: limit - 3] + "..."
        return text


@dataclass
class CommandOutput:
    """Captured result of a completed command."""

    returncode: int
    stdout: str = ""
    stderr: str = ""
    duration_ms: int = 0

    @property
    def success(self) -> bool:
        return self.returncode == 0

    @property
    def text(self) -> str:
        """stdout and stderr joined, for messages and classification."""
        return "\n".join(part for part in (self.stdout, self.stderr) if part)


class ExecutionError(Exception):
    """Base class for failures of an external operation."""

    transient: bool = False

    def __init__(
        self,
        message: str,
        *,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message)
        self.message = message
        self.exit_code = exit_code
        self.output = output


class TimedOut(ExecutionError):
    """The operation did not finish within its timeout."""

    transient = True

    def __init__(
        self,
        message: str,
        *,
        pid: int | None = None,
        terminated: bool = True,
        output: str = "",
    ) -> None:
        super().__init__(message, output=output)
        self.pid = pid
        self.terminated = terminated


class NetworkError(ExecutionError):
    """The operation failed talking to a remote endpoint.

    Usually transient (connection resets, DNS blips, 5xx from a registry).
    Rejections such as bad credentials are raised with ``transient=False``.
    """

    def __init__(
        self,
        message: str,
        *,
        transient: bool = True,
        exit_code: int | None = None,
        output: str = "",
    ) -> None:
        super().__init__(message, exit_code=exit_code, output=output)
        self.transient = transient


class CommandFailed(ExecutionError):
    """The operation completed unsuccessfully for a non-transient reason."""

    transient = False


class BaseTool(ABC):
    """Abstract backend that runs commands.

    Tools are deterministic operations the pipeline invokes. A tool returns
    a :class:`CommandOutput` for any command that ran to completion, whatever
    its exit code, and raises :class:`TimedOut` when the timeout elapses.
    """

    name: str = "base_tool"
    description: str = "Base tool interface"

    @abstractmethod
    def execute(self, command: Command, timeout: float) -> CommandOutput:
        """Run the command.

        Args:
            command: Command to run
            timeout: Timeout in seconds

        Returns:
            CommandOutput with exit code and captured output
        """
        ...

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name!r})"
