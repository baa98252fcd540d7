"""Shell command execution tool."""

import logging
import os
import signal
import subprocess
import time
from pathlib import Path

from .base import BaseTool, Command, CommandFailed, CommandOutput, TimedOut

logger = logging.getLogger(__name__)


class ShellTool(BaseTool):
    """Tool for running pipeline commands as subprocesses.

    Provides:
    - Allow-listed executables (git, docker, kubectl)
    - Timeout with kill of the whole process group
    - Captured stdout/stderr
    """

    name = "shell"
    description = "Shell command execution"

    # Commands that are allowed by default
    ALLOWED_COMMANDS = {
        "git",
        "docker",
        "kubectl",
        "minikube",
    }

    def __init__(
        self,
        working_dir: Path | str | None = None,
        allowed_commands: set[str] | None = None,
        kill_grace: float = 5.0,
    ) -> None:
        """Initialize shell tool.

        Args:
            working_dir: Default working directory for commands
            allowed_commands: Override allowed command set
            kill_grace: Seconds to wait for a killed process to exit
        """
        self.working_dir = Path(working_dir) if working_dir else Path.cwd()
        self.allowed_commands = allowed_commands or self.ALLOWED_COMMANDS
        self.kill_grace = kill_grace

    def execute(self, command: Command, timeout: float) -> CommandOutput:
        """Run a command to completion or until ``timeout`` elapses."""
        parts = list(command.argv)
        if not parts:
            raise CommandFailed("Empty command")

        # Check if command is allowed
        cmd_name = Path(parts[0]).name
        if cmd_name not in self.allowed_commands:
            raise CommandFailed(
                f"Command not allowed: {cmd_name}. Allowed: {sorted(self.allowed_commands)}"
            )

        cwd = Path(command.cwd) if command.cwd else self.working_dir
        start = time.monotonic()
        try:
            proc = subprocess.Popen(
                parts,
                cwd=cwd,
                stdin=subprocess.PIPE if command.stdin is not None else subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                encoding="utf-8",
                errors="replace",
                env={**os.environ, **command.env},
                start_new_session=True,
            )
        except FileNotFoundError:
            raise CommandFailed(f"Command not found: {parts[0]}", exit_code=127)

        try:
            stdout, stderr = proc.communicate(input=command.stdin, timeout=timeout)
        except subprocess.TimeoutExpired:
            stdout, stderr, terminated = self._terminate(proc)
            raise TimedOut(
                f"Command timed out after {timeout}s: {command.summary()}",
                pid=proc.pid,
                terminated=terminated,
                output="\n".join(p for p in (stdout, stderr) if p),
            )

        return CommandOutput(
            returncode=proc.returncode,
            stdout=stdout or "",
            stderr=stderr or "",
            duration_ms=int((time.monotonic() - start) * 1000),
        )

    def _terminate(self, proc: subprocess.Popen) -> tuple[str, str, bool]:
        """Kill a timed-out process group and reap it.

        Returns:
            Partial stdout, stderr and whether the process is confirmed gone
        """
        try:
            os.killpg(proc.pid, signal.SIGKILL)
        except (ProcessLookupError, PermissionError):
            proc.kill()

        try:
            stdout, stderr = proc.communicate(timeout=self.kill_grace)
            return stdout or "", stderr or "", True
        except subprocess.TimeoutExpired:
            logger.warning("Process %d did not exit after SIGKILL", proc.pid)
            return "", "", False
