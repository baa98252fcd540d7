"""Artifact reference value type.

An artifact is a tagged, registry-addressable container image. The canonical
string form (``registry/repository:tag``) is what every docker/kubectl
command and every log message uses.
"""

import re
from dataclasses import dataclass, replace

# Docker tag grammar: up to 128 chars of [A-Za-z0-9_.-], not starting with . or -
_TAG_RE = re.compile(r"^[A-Za-z0-9_][A-Za-z0-9_.-]{0,127}$")


class InvalidArtifact(Exception):
    """Raised when an artifact reference cannot be constructed."""

    pass


@dataclass(frozen=True)
class ArtifactRef:
    """Immutable reference to a built image.

    ``registry`` may be empty for images that only live in a local docker
    daemon (e.g. a Minikube node), in which case the reference is
    ``repository:tag``.
    """

    registry: str
    repository: str
    tag: str

    def __post_init__(self) -> None:
        if not self.tag:
            raise InvalidArtifact("Artifact tag must not be empty")
        if not _TAG_RE.match(self.tag):
            raise InvalidArtifact(f"Invalid artifact tag: {self.tag!r}")
        if not self.repository or any(c.isspace() for c in self.repository):
            raise InvalidArtifact(f"Invalid artifact repository: {self.repository!r}")
        if ":" in self.repository.split("/")[-1]:
            raise InvalidArtifact(f"Repository must not carry a tag: {self.repository!r}")
        if self.registry.endswith("/") or any(c.isspace() for c in self.registry):
            raise InvalidArtifact(f"Invalid artifact registry: {self.registry!r}")

    def reference(self) -> str:
        """Canonical ``registry/repository:tag`` string."""
        if self.registry:
            return f"{self.registry}/{self.repository}:{self.tag}"
        return f"{self.repository}:{self.tag}"

    def with_tag(self, tag: str) -> "ArtifactRef":
        """Return the same image with a different tag."""
        return replace(self, tag=tag)

    @classmethod
    def parse(cls, reference: str) -> "ArtifactRef":
        """Parse a canonical reference string.

        The first path component is treated as a registry only when it looks
        like a host (contains ``.`` or ``:`` or is ``localhost``), matching
        docker's own resolution rules.

        Raises:
            InvalidArtifact: If the string has no tag or is malformed
        """
        name, sep, tag = reference.rpartition(":")
        if not sep or "/" in tag:
            raise InvalidArtifact(f"Reference has no tag: {reference!r}")

        first, slash, rest = name.partition("/")
        if slash and ("." in first or ":" in first or first == "localhost"):
            return cls(registry=first, repository=rest, tag=tag)
        return cls(registry="", repository=name, tag=tag)

    def __str__(self) -> str:
        return self.reference()
