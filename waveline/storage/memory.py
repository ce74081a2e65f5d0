from __future__ import annotations

from collections import defaultdict, deque
from typing import TYPE_CHECKING, Optional

from ..errors import RunNotFoundError, WorkflowNotFoundError
from .base import CheckpointStore, RunQueue, WorkflowRunStore, WorkflowStore, ensure_same_definition, latest

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from ..models import Checkpoint, RunStatus, Workflow, WorkflowRun


class MemoryWorkflowStore(WorkflowStore):
    """In-memory definition store used for testing and examples."""

    def __init__(self) -> None:
        self._workflows: dict[tuple[str, str], "Workflow"] = {}

    def save(self, workflow: "Workflow") -> None:
        key = (workflow.id, workflow.version)
        if ensure_same_definition(self._workflows.get(key), workflow):
            self._workflows[key] = workflow.model_copy(deep=True)

    def get(self, workflow_id: str, version: Optional[str] = None) -> "Workflow":
        if version is not None:
            found = self._workflows.get((workflow_id, version))
        else:
            found = latest(self.list(workflow_id))
        if found is None:
            suffix = f" version {version}" if version else ""
            raise WorkflowNotFoundError(f"workflow '{workflow_id}'{suffix} not found")
        return found

    def list(self, workflow_id: Optional[str] = None) -> list["Workflow"]:
        return [wf for (wid, _), wf in self._workflows.items() if workflow_id is None or wid == workflow_id]


class MemoryRunStore(WorkflowRunStore):
    """In-memory run store; snapshots are copied on the way in and out."""

    def __init__(self) -> None:
        self._runs: dict[str, "WorkflowRun"] = {}

    def save(self, run: "WorkflowRun") -> None:
        self._runs[run.id] = run.snapshot()

    def get(self, run_id: str) -> "WorkflowRun":
        try:
            return self._runs[run_id].snapshot()
        except KeyError:
            raise RunNotFoundError(f"run '{run_id}' not found") from None

    def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional["RunStatus"] = None,
    ) -> list["WorkflowRun"]:
        runs = [
            r.snapshot()
            for r in self._runs.values()
            if (workflow_id is None or r.workflow_id == workflow_id) and (status is None or r.status == status)
        ]
        return sorted(runs, key=lambda r: r.created_at)


class MemoryCheckpointStore(CheckpointStore):
    """In-memory checkpoint history keyed by run id."""

    def __init__(self) -> None:
        self._checkpoints: dict[str, list["Checkpoint"]] = defaultdict(list)

    def save(self, checkpoint: "Checkpoint") -> None:
        self._checkpoints[checkpoint.run_id].append(checkpoint.model_copy(deep=True))

    def get(self, run_id: str) -> Optional["Checkpoint"]:
        history = self._checkpoints.get(run_id)
        if not history:
            return None
        return history[-1].model_copy(deep=True)

    def list(self, run_id: str) -> list["Checkpoint"]:
        return [c.model_copy(deep=True) for c in self._checkpoints.get(run_id, [])]


class MemoryRunQueue(RunQueue):
    def __init__(self) -> None:
        self._queue: deque[str] = deque()
        self._queued: set[str] = set()

    def enqueue(self, run_id: str) -> None:
        if run_id in self._queued:
            return
        self._queue.append(run_id)
        self._queued.add(run_id)

    def fetch_next(self) -> Optional[str]:
        if not self._queue:
            return None
        run_id = self._queue.popleft()
        self._queued.discard(run_id)
        return run_id

    def __len__(self) -> int:
        return len(self._queue)
