from __future__ import annotations

from abc import ABC, abstractmethod
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterable, List

if TYPE_CHECKING:  # pragma: no cover - circular import for type checking
    from .events import WorkflowEvent


class ExecutionEngine(ABC):
    """Interface for wave execution backends."""

    @abstractmethod
    async def run_async_steps(self, steps: Iterable[Callable[[], Awaitable[Any]]]) -> List[Any]:
        """Execute a sequence of async callables and return their results in order."""


class EventPublisher(ABC):
    """Interface for run and step status notifications."""

    @abstractmethod
    def publish(self, event: "WorkflowEvent") -> None:
        """Deliver *event*; delivery is fire-and-forget."""
