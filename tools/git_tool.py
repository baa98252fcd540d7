"""Git commands for the checkout stage."""

import base64
from pathlib import Path

from .base import Command, CommandKind


class GitTool:
    """Builds git commands for source checkout.

    Provides:
    - Shallow clone of a branch
    - Fetch + hard checkout for an existing clone (re-runs are idempotent)
    - Commit identification
    """

    name = "git"

    def __init__(
        self,
        workdir: Path | str,
        token: str | None = None,
        username: str = "x-access-token",
    ) -> None:
        """Initialize Git tool.

        Args:
            workdir: Directory the repository is checked out into
            token: Optional HTTPS token for private repositories
            username: Username paired with the token
        """
        self.workdir = Path(workdir)
        self.token = token
        self.username = username

    def _auth_env(self) -> dict[str, str]:
        """Pass credentials through git's env-config so they never hit argv."""
        if not self.token:
            return {}
        basic = base64.b64encode(f"{self.username}:{self.token}".encode()).decode()
        return {
            "GIT_CONFIG_COUNT": "1",
            "GIT_CONFIG_KEY_0": "http.extraHeader",
            "GIT_CONFIG_VALUE_0": f"Authorization: Basic {basic}",
            "GIT_TERMINAL_PROMPT": "0",
        }

    def is_clone(self) -> bool:
        """Check if the work dir already holds a git checkout."""
        return (self.workdir / ".git").exists()

    def checkout_commands(self, url: str, branch: str) -> list[Command]:
        """Commands that leave ``workdir`` at the tip of ``branch``."""
        env = self._auth_env()
        if self.is_clone():
            return [
                Command(
                    kind=CommandKind.CHECKOUT,
                    argv=("git", "fetch", "--depth", "1", "origin", branch),
                    cwd=str(self.workdir),
                    env=env,
                ),
                Command(
                    kind=CommandKind.CHECKOUT,
                    argv=("git", "checkout", "--force", "-B", branch, "FETCH_HEAD"),
                    cwd=str(self.workdir),
                    env=env,
                ),
            ]

        return [
            Command(
                kind=CommandKind.CHECKOUT,
                argv=(
                    "git", "clone", "--depth", "1", "--branch", branch,
                    url, str(self.workdir),
                ),
                cwd=str(self.workdir.parent),
                env=env,
            )
        ]

    def rev_parse(self, ref: str = "HEAD") -> Command:
        """Command that prints the commit id of ``ref``."""
        return Command(
            kind=CommandKind.REV_PARSE,
            argv=("git", "rev-parse", ref),
            cwd=str(self.workdir),
        )
