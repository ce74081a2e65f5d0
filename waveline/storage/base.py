from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Iterable, List, Optional

from ..errors import WorkflowVersionConflictError

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from ..models import Checkpoint, RunStatus, Workflow, WorkflowRun


class WorkflowStore(ABC):
    """Interface for persisting immutable workflow definitions."""

    @abstractmethod
    def save(self, workflow: "Workflow") -> None:
        """Persist *workflow*; re-registering a version with new content fails."""

    @abstractmethod
    def get(self, workflow_id: str, version: Optional[str] = None) -> "Workflow":
        """Return a version of *workflow_id*, the highest one when *version* is ``None``."""

    @abstractmethod
    def list(self, workflow_id: Optional[str] = None) -> List["Workflow"]:
        """Return stored definitions, optionally restricted to one workflow id."""


class WorkflowRunStore(ABC):
    """Interface for persisting workflow runs."""

    @abstractmethod
    def save(self, run: "WorkflowRun") -> None:
        """Persist a snapshot of *run*."""

    @abstractmethod
    def get(self, run_id: str) -> "WorkflowRun":
        """Return the stored run or raise :class:`~waveline.errors.RunNotFoundError`."""

    @abstractmethod
    def list(
        self,
        workflow_id: Optional[str] = None,
        status: Optional["RunStatus"] = None,
    ) -> List["WorkflowRun"]:
        """Return runs matching the filters, oldest first."""


class CheckpointStore(ABC):
    """Interface for persisting run checkpoints."""

    @abstractmethod
    def save(self, checkpoint: "Checkpoint") -> None:
        """Persist *checkpoint*."""

    @abstractmethod
    def get(self, run_id: str) -> Optional["Checkpoint"]:
        """Return the latest checkpoint of *run_id* if any."""

    @abstractmethod
    def list(self, run_id: str) -> List["Checkpoint"]:
        """Return every checkpoint of *run_id*, oldest first."""


class RunQueue(ABC):
    """Persisted queue of run ids waiting for execution."""

    @abstractmethod
    def enqueue(self, run_id: str) -> None:
        """Queue *run_id* unless it is already queued."""

    @abstractmethod
    def fetch_next(self) -> Optional[str]:
        """Pop the oldest queued run id or return ``None``."""

    @abstractmethod
    def __len__(self) -> int:
        """Number of queued runs."""


def ensure_same_definition(existing: Optional["Workflow"], workflow: "Workflow") -> bool:
    """Return ``True`` when *workflow* still needs to be stored.

    Raises :class:`WorkflowVersionConflictError` when the version exists with
    different content.
    """
    if existing is None:
        return True
    if not existing.same_definition(workflow):
        raise WorkflowVersionConflictError(
            f"workflow '{workflow.id}' version {workflow.version} already exists with different content"
        )
    return False


def latest(workflows: Iterable["Workflow"]) -> Optional["Workflow"]:
    return max(workflows, key=lambda wf: wf.version_key, default=None)
