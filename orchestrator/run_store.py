"""Append-only persistence of pipeline run logs.

Each run is a JSON-lines file ``<runs_dir>/<run_id>.jsonl``. Lines are only
ever appended:

- ``start``: run id and artifact
- ``state``: every state-machine transition
- ``stage``: every StageResult
- ``final``: the completed PipelineRun
"""

import json
import logging
import threading
from datetime import datetime
from pathlib import Path
from typing import Any

from schemas.pipeline_state import PipelineRun, PipelineState, StageResult

logger = logging.getLogger(__name__)


class RunStore:
    """Writes and reads run logs keyed by run id."""

    def __init__(self, runs_dir: Path | str) -> None:
        """Initialize run store.

        Args:
            runs_dir: Directory holding one log file per run
        """
        self.runs_dir = Path(runs_dir)
        self._lock = threading.Lock()

    def path_for(self, run_id: str) -> Path:
        return self.runs_dir / f"{run_id}.jsonl"

    def _append(self, run_id: str, record: dict[str, Any]) -> None:
        record.setdefault("at", datetime.now().isoformat())
        line = json.dumps(record, default=str)
        with self._lock:
            self.runs_dir.mkdir(parents=True, exist_ok=True)
            with open(self.path_for(run_id), "a") as f:
                f.write(line + "\n")

    def start(self, run: PipelineRun) -> None:
        """Record the start of a run."""
        self._append(
            run.id,
            {"type": "start", "run_id": run.id, "artifact": run.artifact.reference()},
        )

    def record_state(self, run_id: str, state: PipelineState) -> None:
        """Record a state-machine transition."""
        self._append(run_id, {"type": "state", "state": state.value})

    def record_stage(self, run_id: str, result: StageResult) -> None:
        """Record one stage attempt."""
        self._append(run_id, {"type": "stage", "result": result.model_dump(mode="json")})

    def finish(self, run: PipelineRun) -> None:
        """Record the completed run."""
        self._append(run.id, {"type": "final", "run": run.model_dump(mode="json")})

    def read_records(self, run_id: str) -> list[dict[str, Any]]:
        """Raw records of a run, in write order.

        Raises:
            FileNotFoundError: If no log exists for the run
        """
        path = self.path_for(run_id)
        records = []
        with open(path) as f:
            for lineno, line in enumerate(f, 1):
                line = line.strip()
                if not line:
                    continue
                try:
                    records.append(json.loads(line))
                except json.JSONDecodeError:
                    # A crash mid-write can only tear the last line
                    logger.warning("Skipping torn record %s:%d", path, lineno)
        return records

    def load(self, run_id: str) -> PipelineRun:
        """Rebuild a run from its log.

        Finished runs come from their ``final`` record; runs that never
        finished (crashed runner) are rebuilt from stage and state records
        and keep status ``running``.
        """
        records = self.read_records(run_id)
        for record in reversed(records):
            if record.get("type") == "final":
                return PipelineRun.model_validate(record["run"])

        start = next((r for r in records if r.get("type") == "start"), None)
        if start is None:
            raise ValueError(f"Run log {run_id} has no start record")

        run = PipelineRun(id=start["run_id"], artifact=start["artifact"])
        for record in records:
            if record.get("type") == "stage":
                run.stages.append(StageResult.model_validate(record["result"]))
            elif record.get("type") == "state":
                run.state = PipelineState(record["state"])
        return run

    def list_runs(self) -> list[str]:
        """Run ids with a log, most recent first."""
        if not self.runs_dir.exists():
            return []
        paths = sorted(
            self.runs_dir.glob("*.jsonl"),
            key=lambda p: p.stat().st_mtime,
            reverse=True,
        )
        return [p.stem for p in paths]
