from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Awaitable, Callable

from ..errors import StepTimeoutError
from .base import StepPolicy

if TYPE_CHECKING:  # pragma: no cover - for type hints
    from ..models import WorkflowStep


class StepTimeoutPolicy(StepPolicy):
    """Specify the processing timeout for a single step attempt."""

    name = "timeout"

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds

    async def execute_async(self, step: "WorkflowStep", call: Callable[[], Awaitable[Any]]) -> Any:
        try:
            return await asyncio.wait_for(call(), timeout=self.seconds)
        except asyncio.TimeoutError as e:
            raise StepTimeoutError(self.seconds) from e
