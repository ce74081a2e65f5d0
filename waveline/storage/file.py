"""Directory-backed stores writing one JSON document per record.

Layout below ``root``::

    workflows/<workflow_id>/<version>.json
    runs/<run_id>.json
    checkpoints/<run_id>/<wave>-<timestamp>.json
    queue/<sequence>-<run_id>

Writes go to a temporary file first and are moved into place with
:func:`os.replace` so that a crash never leaves a truncated record behind.
"""

from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path
from typing import Optional

from pydantic import ValidationError

from ..errors import RunNotFoundError, StoreError, WorkflowNotFoundError
from ..models import Checkpoint, RunStatus, Workflow, WorkflowRun
from .base import CheckpointStore, RunQueue, WorkflowRunStore, WorkflowStore, ensure_same_definition, latest


def _write_atomic(path: Path, payload: str) -> None:
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            f.write(payload)
        os.replace(tmp, path)
    except OSError as e:
        raise StoreError(f"cannot write {path}: {e}") from e


def _read(path: Path) -> str:
    try:
        return path.read_text(encoding="utf-8")
    except OSError as e:
        raise StoreError(f"cannot read {path}: {e}") from e


class FileWorkflowStore(WorkflowStore):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root) / "workflows"

    def _path(self, workflow_id: str, version: str) -> Path:
        return self.root / workflow_id / f"{version}.json"

    def _load(self, path: Path) -> Workflow:
        try:
            return Workflow.model_validate_json(_read(path))
        except ValidationError as e:
            raise StoreError(f"corrupt workflow record {path}: {e}") from e

    def save(self, workflow: Workflow) -> None:
        path = self._path(workflow.id, workflow.version)
        existing = self._load(path) if path.is_file() else None
        if ensure_same_definition(existing, workflow):
            _write_atomic(path, workflow.model_dump_json())

    def get(self, workflow_id: str, version: Optional[str] = None) -> Workflow:
        if version is not None:
            path = self._path(workflow_id, version)
            found = self._load(path) if path.is_file() else None
        else:
            found = latest(self.list(workflow_id))
        if found is None:
            suffix = f" version {version}" if version else ""
            raise WorkflowNotFoundError(f"workflow '{workflow_id}'{suffix} not found")
        return found

    def list(self, workflow_id: Optional[str] = None) -> list[Workflow]:
        pattern = f"{workflow_id}/*.json" if workflow_id else "*/*.json"
        return [self._load(p) for p in sorted(self.root.glob(pattern))]


class FileRunStore(WorkflowRunStore):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root) / "runs"

    def _load(self, path: Path) -> WorkflowRun:
        try:
            return WorkflowRun.model_validate_json(_read(path))
        except ValidationError as e:
            raise StoreError(f"corrupt run record {path}: {e}") from e

    def save(self, run: WorkflowRun) -> None:
        _write_atomic(self.root / f"{run.id}.json", run.model_dump_json())

    def get(self, run_id: str) -> WorkflowRun:
        path = self.root / f"{run_id}.json"
        if not path.is_file():
            raise RunNotFoundError(f"run '{run_id}' not found")
        return self._load(path)

    def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional[RunStatus] = None,
    ) -> list[WorkflowRun]:
        runs = [self._load(p) for p in self.root.glob("*.json")]
        runs = [
            r
            for r in runs
            if (workflow_id is None or r.workflow_id == workflow_id) and (status is None or r.status == status)
        ]
        return sorted(runs, key=lambda r: r.created_at)


class FileCheckpointStore(CheckpointStore):
    def __init__(self, root: str | Path) -> None:
        self.root = Path(root) / "checkpoints"

    def save(self, checkpoint: Checkpoint) -> None:
        name = f"{checkpoint.wave:08d}-{time.time_ns()}.json"
        _write_atomic(self.root / checkpoint.run_id / name, checkpoint.model_dump_json())

    def get(self, run_id: str) -> Optional[Checkpoint]:
        paths = sorted((self.root / run_id).glob("*.json"))
        if not paths:
            return None
        return Checkpoint.model_validate_json(_read(paths[-1]))

    def list(self, run_id: str) -> list[Checkpoint]:
        return [Checkpoint.model_validate_json(_read(p)) for p in sorted((self.root / run_id).glob("*.json"))]


class FileRunQueue(RunQueue):
    """Queue entries are empty marker files ordered by a nanosecond prefix."""

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root) / "queue"
        self.root.mkdir(parents=True, exist_ok=True)

    def _entries(self) -> list[Path]:
        return sorted(self.root.glob("*-*"))

    def enqueue(self, run_id: str) -> None:
        if any(p.name.split("-", 1)[1] == run_id for p in self._entries()):
            return
        try:
            (self.root / f"{time.time_ns():020d}-{run_id}").touch()
        except OSError as e:
            raise StoreError(f"cannot enqueue {run_id}: {e}") from e

    def fetch_next(self) -> Optional[str]:
        for path in self._entries():
            try:
                path.unlink()
            except FileNotFoundError:
                # taken by another worker
                continue
            return path.name.split("-", 1)[1]
        return None

    def __len__(self) -> int:
        return len(self._entries())
