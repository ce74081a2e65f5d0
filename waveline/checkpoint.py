from __future__ import annotations

from typing import TYPE_CHECKING, Optional

from .config import WavelineSettings
from .events import EventKind, WorkflowEvent, publish_safely
from .models import Checkpoint, StepStatus, WorkflowRun
from .storage.retry import retry_store_async
from .utils.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from .interfaces import EventPublisher
    from .storage import CheckpointStore

logger = get_logger()


class CheckpointManager:
    """Persist and restore full run snapshots."""

    def __init__(
        self,
        store: "CheckpointStore",
        settings: Optional[WavelineSettings] = None,
        publisher: Optional["EventPublisher"] = None,
    ) -> None:
        self.store = store
        self.settings = settings or WavelineSettings()
        self.publisher = publisher

    async def save(self, run: WorkflowRun, wave: int) -> Checkpoint:
        """Write a checkpoint of *run*; raises :class:`~waveline.errors.StoreError` once retries are spent."""
        checkpoint = Checkpoint(run_id=run.id, run=run.snapshot(), wave=wave)
        await retry_store_async(
            lambda: self.store.save(checkpoint),
            self.settings.store_retry_attempts,
            self.settings.store_retry_delay,
            what=f"checkpoint of run {run.id}",
        )
        logger.debug(f"checkpoint {wave} saved for run {run.id}")
        publish_safely(
            self.publisher,
            WorkflowEvent(EventKind.CHECKPOINT_SAVED, run.id, data={"wave": wave, "status": run.status.value}),
        )
        return checkpoint

    def load(self, run_id: str) -> Optional[Checkpoint]:
        return self.store.get(run_id)

    def restore(self, run_id: str) -> Optional[WorkflowRun]:
        """Return the latest snapshot with interrupted steps made runnable again."""
        checkpoint = self.load(run_id)
        if checkpoint is None:
            return None
        return reset_interrupted(checkpoint.run)


def reset_interrupted(run: WorkflowRun) -> WorkflowRun:
    """Return a copy of *run* whose ``running`` steps are ``pending`` again."""
    run = run.snapshot()
    for state in run.steps.values():
        if state.status == StepStatus.RUNNING:
            state.status = StepStatus.PENDING
            state.started_at = None
            state.error = None
            state.inputs = {}
    return run
