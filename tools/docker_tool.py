"""Docker commands for the build and push stages."""

from pathlib import Path

from schemas.artifact import ArtifactRef

from .base import Command, CommandKind


class DockerTool:
    """Builds docker CLI commands.

    Provides:
    - Image build tagged with the artifact reference
    - Registry login (password over stdin)
    - Image push (pushing an existing tag again is a no-op)
    """

    name = "docker"

    def __init__(
        self,
        context_dir: Path | str,
        dockerfile: str = "Dockerfile",
        build_args: dict[str, str] | None = None,
        env: dict[str, str] | None = None,
    ) -> None:
        """Initialize Docker tool.

        Args:
            context_dir: Build context directory
            dockerfile: Dockerfile path relative to the context
            build_args: ``--build-arg`` values
            env: Extra environment for docker (e.g. DOCKER_HOST from ``minikube docker-env``)
        """
        self.context_dir = Path(context_dir)
        self.dockerfile = dockerfile
        self.build_args = build_args or {}
        self.env = env or {}

    def build(self, artifact: ArtifactRef, extra_tags: list[str] | None = None) -> Command:
        """Build the image and tag it with the artifact reference."""
        args = ["docker", "build", "-t", artifact.reference()]
        for tag in extra_tags or []:
            args.extend(["-t", artifact.with_tag(tag).reference()])
        args.extend(["-f", self.dockerfile])
        for key, value in self.build_args.items():
            args.extend(["--build-arg", f"{key}={value}"])
        args.append(".")

        return Command(
            kind=CommandKind.BUILD,
            argv=tuple(args),
            cwd=str(self.context_dir),
            env=self.env,
        )

    def login(self, registry: str, username: str, password: str) -> Command:
        """Log in to a registry; the password is sent on stdin.

        An empty registry logs in to docker's default registry.
        """
        args = ["docker", "login"]
        if registry:
            args.append(registry)
        args.extend(["--username", username, "--password-stdin"])
        return Command(
            kind=CommandKind.LOGIN,
            argv=tuple(args),
            env=self.env,
            stdin=password,
        )

    def push(self, artifact: ArtifactRef) -> Command:
        """Push the artifact's tag to its registry."""
        return Command(
            kind=CommandKind.PUSH,
            argv=("docker", "push", artifact.reference()),
            env=self.env,
        )
