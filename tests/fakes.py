"""Test doubles for shipyard tests.

- FakeCluster: in-memory deployment whose rollout converges per image tag
- FakeTool: BaseTool backend scripted per CommandKind, backed by a FakeCluster
- FakeClock: monotonic clock + wait that advance virtual time
"""

import json
import threading
from collections import defaultdict
from typing import Callable

from tools.base import BaseTool, Command, CommandKind, CommandOutput

COMMIT_SHA = "3f2a9c1d0b7e4f5a6c8d9e0f1a2b3c4d5e6f7a8b"


class FakeCluster:
    """Deployment that reports convergence per image.

    ``converges(tag, poll)`` decides whether the ``poll``-th status query
    since the image was set shows a converged rollout.
    """

    def __init__(
        self,
        replicas: int = 2,
        converges: Callable[[str, int], bool] | None = None,
    ) -> None:
        self.replicas = replicas
        self.converges = converges or (lambda tag, poll: True)
        self.image: str | None = None
        self.images: list[str] = []
        self._polls = 0

    @property
    def tag(self) -> str:
        return self.image.rpartition(":")[2] if self.image else ""

    def set_image(self, image: str) -> None:
        self.image = image
        self.images.append(image)
        self._polls = 0

    def status(self) -> str:
        converged = self.image is not None and self.converges(self.tag, self._polls)
        self._polls += 1
        ready = self.replicas if converged else max(self.replicas - 1, 0)
        return json.dumps(
            {
                "metadata": {"name": "web", "generation": 2},
                "spec": {"replicas": self.replicas},
                "status": {
                    "observedGeneration": 2,
                    "replicas": self.replicas,
                    "readyReplicas": ready,
                    "updatedReplicas": ready,
                },
            }
        )


class FakeTool(BaseTool):
    """Command backend that never spawns processes.

    Scripted responses (CommandOutput or an exception to raise) are consumed
    first for their CommandKind; otherwise commands succeed, with status
    queries and image updates served by the cluster.
    """

    name = "fake"

    def __init__(self, cluster: FakeCluster | None = None) -> None:
        self.cluster = cluster or FakeCluster()
        self.calls: list[Command] = []
        self._scripts: dict[CommandKind, list] = defaultdict(list)
        self._lock = threading.Lock()

    def script(self, kind: CommandKind, *responses) -> None:
        self._scripts[kind].extend(responses)

    def kinds(self) -> list[CommandKind]:
        return [c.kind for c in self.calls]

    def execute(self, command: Command, timeout: float) -> CommandOutput:
        with self._lock:
            self.calls.append(command)
            scripted = self._scripts[command.kind].pop(0) if self._scripts[command.kind] else None

        if isinstance(scripted, Exception):
            raise scripted
        if scripted is not None:
            return scripted

        if command.kind == CommandKind.SET_IMAGE:
            self.cluster.set_image(command.argv[-1].split("=", 1)[1])
        elif command.kind == CommandKind.STATUS_QUERY:
            return CommandOutput(returncode=0, stdout=self.cluster.status())
        elif command.kind == CommandKind.REV_PARSE:
            return CommandOutput(returncode=0, stdout=COMMIT_SHA + "\n")
        return CommandOutput(returncode=0)


class FakeClock:
    """Virtual time for rollout monitoring."""

    def __init__(self) -> None:
        self.now = 0.0
        self.waits: list[float] = []

    def __call__(self) -> float:
        return self.now

    def wait(self, delay: float, cancel_event: threading.Event | None = None) -> bool:
        if cancel_event is not None and cancel_event.is_set():
            return True
        self.waits.append(delay)
        self.now += delay
        return False


def failed(stderr: str, returncode: int = 1) -> CommandOutput:
    """Non-zero command result with the given error output."""
    return CommandOutput(returncode=returncode, stderr=stderr)

