from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path

from .base import CheckpointStore, RunQueue, WorkflowRunStore, WorkflowStore
from .file import FileCheckpointStore, FileRunQueue, FileRunStore, FileWorkflowStore
from .memory import MemoryCheckpointStore, MemoryRunQueue, MemoryRunStore, MemoryWorkflowStore


@dataclass
class StateStore:
    """Bundle of the stores an orchestrator persists to."""

    workflows: WorkflowStore = field(default_factory=MemoryWorkflowStore)
    runs: WorkflowRunStore = field(default_factory=MemoryRunStore)
    checkpoints: CheckpointStore = field(default_factory=MemoryCheckpointStore)
    queue: RunQueue = field(default_factory=MemoryRunQueue)

    @classmethod
    def memory(cls) -> "StateStore":
        return cls()

    @classmethod
    def files(cls, root: str | Path) -> "StateStore":
        return cls(
            workflows=FileWorkflowStore(root),
            runs=FileRunStore(root),
            checkpoints=FileCheckpointStore(root),
            queue=FileRunQueue(root),
        )

    @classmethod
    def postgres(cls, dsn: str | None = None) -> "StateStore":
        from .postgres import (
            PostgresCheckpointStore,
            PostgresDatabase,
            PostgresRunQueue,
            PostgresRunStore,
            PostgresWorkflowStore,
        )

        db = PostgresDatabase(dsn)
        return cls(
            workflows=PostgresWorkflowStore(db),
            runs=PostgresRunStore(db),
            checkpoints=PostgresCheckpointStore(db),
            queue=PostgresRunQueue(db),
        )


__all__ = [
    "CheckpointStore",
    "FileCheckpointStore",
    "FileRunQueue",
    "FileRunStore",
    "FileWorkflowStore",
    "MemoryCheckpointStore",
    "MemoryRunQueue",
    "MemoryRunStore",
    "MemoryWorkflowStore",
    "RunQueue",
    "StateStore",
    "WorkflowRunStore",
    "WorkflowStore",
]
