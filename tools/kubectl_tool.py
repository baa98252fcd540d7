"""Kubernetes commands for the deploy, verify and rollback stages."""

import json
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path

from schemas.artifact import ArtifactRef
from schemas.pipeline_state import RolloutSnapshot

from .base import Command, CommandFailed, CommandKind, CommandOutput


@dataclass(frozen=True)
class DeploymentRef:
    """Identifies a Kubernetes deployment and the container to update."""

    name: str
    namespace: str = "default"
    context: str = ""
    container: str = ""

    @property
    def container_name(self) -> str:
        return self.container or self.name

    def __str__(self) -> str:
        return f"{self.namespace}/{self.name}"


class KubectlTool:
    """Builds kubectl commands and parses their output.

    Both ``apply`` and ``set image`` are idempotent: re-running them with the
    same manifest and image reference leaves the cluster unchanged.
    """

    name = "kubectl"

    def __init__(self, kubeconfig: str = "") -> None:
        """Initialize kubectl tool.

        Args:
            kubeconfig: Optional kubeconfig path
        """
        self.kubeconfig = kubeconfig

    def _base(self, deployment: DeploymentRef) -> list[str]:
        cmd = ["kubectl"]
        if self.kubeconfig:
            cmd.extend(["--kubeconfig", self.kubeconfig])
        if deployment.context:
            cmd.extend(["--context", deployment.context])
        cmd.extend(["-n", deployment.namespace])
        return cmd

    def apply(self, manifest: Path | str, deployment: DeploymentRef) -> Command:
        """Apply a manifest file or directory."""
        return Command(
            kind=CommandKind.APPLY,
            argv=tuple(self._base(deployment) + ["apply", "-f", str(manifest)]),
        )

    def set_image(self, deployment: DeploymentRef, artifact: ArtifactRef) -> Command:
        """Point the deployment's container at ``artifact``."""
        return Command(
            kind=CommandKind.SET_IMAGE,
            argv=tuple(
                self._base(deployment)
                + [
                    "set",
                    "image",
                    f"deployment/{deployment.name}",
                    f"{deployment.container_name}={artifact.reference()}",
                ]
            ),
        )

    def get_deployment(self, deployment: DeploymentRef) -> Command:
        """Read-only status query for the deployment."""
        return Command(
            kind=CommandKind.STATUS_QUERY,
            argv=tuple(
                self._base(deployment)
                + ["get", f"deployment/{deployment.name}", "-o", "json"]
            ),
        )

    @staticmethod
    def parse_snapshot(output: CommandOutput) -> RolloutSnapshot:
        """Parse ``kubectl get deployment -o json`` into a snapshot.

        Missing status fields count as zero. While the controller has not
        yet observed the latest generation, updated replicas are reported as
        zero so a stale status can never look converged.

        Raises:
            CommandFailed: If the output is not a deployment object
        """
        try:
            data = json.loads(output.stdout)
        except json.JSONDecodeError as e:
            raise CommandFailed(f"Invalid rollout status output: {e}", output=output.stdout)
        if not isinstance(data, dict):
            raise CommandFailed("Invalid rollout status output: not an object")

        spec = data.get("spec") or {}
        status = data.get("status") or {}
        metadata = data.get("metadata") or {}

        updated = status.get("updatedReplicas") or 0
        generation = metadata.get("generation")
        observed = status.get("observedGeneration")
        if generation is not None and (observed is None or observed < generation):
            updated = 0

        return RolloutSnapshot(
            desired_replicas=spec.get("replicas", 1),
            ready_replicas=status.get("readyReplicas") or 0,
            updated_replicas=updated,
            timestamp=datetime.now(),
        )
