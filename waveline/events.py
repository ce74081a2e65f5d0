from __future__ import annotations

import json
import threading
from dataclasses import asdict, dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Iterable, List, Optional

from .interfaces import EventPublisher
from .models import utcnow
from .utils.logging import get_logger

logger = get_logger()


class EventKind(str, Enum):
    RUN_SUBMITTED = "run_submitted"
    RUN_STARTED = "run_started"
    RUN_PAUSED = "run_paused"
    RUN_RESUMED = "run_resumed"
    RUN_CANCELLED = "run_cancelled"
    RUN_COMPLETED = "run_completed"
    RUN_FAILED = "run_failed"
    STEP_STARTED = "step_started"
    STEP_RETRYING = "step_retrying"
    STEP_PROGRESS = "step_progress"
    STEP_COMPLETED = "step_completed"
    STEP_FAILED = "step_failed"
    STEP_SKIPPED = "step_skipped"
    STEP_CANCELLED = "step_cancelled"
    CHECKPOINT_SAVED = "checkpoint_saved"


@dataclass
class WorkflowEvent:
    """Notification about a run or step status change."""

    kind: EventKind
    run_id: str
    step_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)

    def to_dict(self) -> Dict[str, Any]:
        record = asdict(self)
        record["kind"] = self.kind.value
        record["timestamp"] = self.timestamp.isoformat()
        return record


class NullEventPublisher(EventPublisher):
    """Discard every event."""

    def publish(self, event: WorkflowEvent) -> None:
        pass


class MemoryEventPublisher(EventPublisher):
    """Keep events in a list; used by tests and examples."""

    def __init__(self) -> None:
        self.events: List[WorkflowEvent] = []
        self._lock = threading.Lock()

    def publish(self, event: WorkflowEvent) -> None:
        with self._lock:
            self.events.append(event)

    def of_kind(self, *kinds: EventKind) -> List[WorkflowEvent]:
        return [e for e in self.events if e.kind in kinds]


class FileEventPublisher(EventPublisher):
    """Write events to a file as JSON lines."""

    def __init__(self, path: str) -> None:
        self.path = path
        # Ensure the file exists so multiple runs append to it
        open(self.path, "a", encoding="utf-8").close()

    def publish(self, event: WorkflowEvent) -> None:
        with open(self.path, "a", encoding="utf-8") as f:
            f.write(json.dumps(event.to_dict(), default=str) + "\n")


class FanoutEventPublisher(EventPublisher):
    """Deliver each event to several publishers."""

    def __init__(self, publishers: Iterable[EventPublisher]) -> None:
        self.publishers = list(publishers)

    def publish(self, event: WorkflowEvent) -> None:
        for publisher in self.publishers:
            publish_safely(publisher, event)


def publish_safely(publisher: Optional[EventPublisher], event: WorkflowEvent) -> None:
    """Publish *event*, logging instead of raising on delivery failure."""
    if publisher is None:
        return
    try:
        publisher.publish(event)
    except Exception as exc:
        logger.warning(f"event publisher failed for {event.kind.value} of run {event.run_id}: {exc!r}")
