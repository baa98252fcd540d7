"""Deployment history for rollbacks.

Tracks which artifacts were successfully rolled out to each deployment so
a failed rollout can be reverted to the last known-good image.
"""

import json
import logging
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from pathlib import Path

from schemas.artifact import ArtifactRef

logger = logging.getLogger(__name__)


@dataclass
class DeploymentRecord:
    """Record of a deployment for rollback tracking."""

    deployment: str
    image: str
    tag: str
    timestamp: str
    success: bool
    run_id: str = ""
    commit_sha: str = ""
    metadata: dict = field(default_factory=dict)

    @property
    def artifact(self) -> ArtifactRef:
        return ArtifactRef.parse(self.image)


class DeploymentHistory:
    """Per-deployment history of rolled-out artifacts.

    Safe to share between concurrent runs. Persisted as a JSON list when a
    history file is given, in memory otherwise.
    """

    def __init__(self, history_file: Path | None = None) -> None:
        """Initialize deployment history.

        Args:
            history_file: Path to deployment history JSON file
        """
        self.history_file = Path(history_file) if history_file else None
        self._history: list[DeploymentRecord] = []
        self._lock = threading.Lock()

        if self.history_file and self.history_file.exists():
            self._load_history()

    def _load_history(self) -> None:
        """Load deployment history from file."""
        try:
            data = json.loads(self.history_file.read_text())
            self._history = [DeploymentRecord(**record) for record in data]
        except (OSError, json.JSONDecodeError, TypeError) as e:
            logger.warning("Ignoring unreadable deployment history %s: %s", self.history_file, e)
            self._history = []

    def _save_history(self) -> None:
        """Save deployment history to file."""
        if self.history_file:
            self.history_file.parent.mkdir(parents=True, exist_ok=True)
            data = [asdict(r) for r in self._history]
            tmp = self.history_file.with_suffix(".tmp")
            tmp.write_text(json.dumps(data, indent=2))
            tmp.replace(self.history_file)

    def record_deployment(
        self,
        deployment: str,
        artifact: ArtifactRef,
        success: bool,
        run_id: str = "",
        commit_sha: str = "",
        metadata: dict | None = None,
    ) -> DeploymentRecord:
        """Record a rollout attempt.

        Args:
            deployment: Deployment key (``namespace/name``)
            artifact: Artifact that was rolled out
            success: Whether the rollout converged and verified
            run_id: Pipeline run that deployed it
            commit_sha: Source commit of the artifact
            metadata: Additional metadata

        Returns:
            The stored record
        """
        record = DeploymentRecord(
            deployment=deployment,
            image=artifact.reference(),
            tag=artifact.tag,
            timestamp=datetime.now().isoformat(),
            success=success,
            run_id=run_id,
            commit_sha=commit_sha,
            metadata=metadata or {},
        )
        with self._lock:
            self._history.append(record)
            self._save_history()
        return record

    def last_good(self, deployment: str, exclude_tag: str | None = None) -> DeploymentRecord | None:
        """Most recent successful deployment, optionally skipping a tag.

        Args:
            deployment: Deployment key
            exclude_tag: Tag to skip (usually the one being deployed now)

        Returns:
            Deployment record or None
        """
        with self._lock:
            for record in reversed(self._history):
                if record.deployment != deployment or not record.success:
                    continue
                if exclude_tag is not None and record.tag == exclude_tag:
                    continue
                return record
        return None

    def get_history(self, deployment: str | None = None) -> list[DeploymentRecord]:
        """Get deployment history, oldest first."""
        with self._lock:
            return [
                r for r in self._history if deployment is None or r.deployment == deployment
            ]
