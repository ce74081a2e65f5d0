"""Bounded asyncio execution engine."""

from __future__ import annotations

import asyncio
from typing import Any, Awaitable, Callable, Iterable, List

from ..interfaces import ExecutionEngine


class PoolEngine(ExecutionEngine):
    """Run a wave of coroutines with at most ``limit`` in flight."""

    def __init__(self, limit: int = 1) -> None:
        self.limit = max(1, limit)

    async def run_async_steps(self, steps: Iterable[Callable[[], Awaitable[Any]]]) -> List[Any]:
        tasks = list(steps)
        if len(tasks) <= 1 or self.limit == 1:
            return [await t() for t in tasks]
        semaphore = asyncio.Semaphore(self.limit)

        async def bounded(task: Callable[[], Awaitable[Any]]) -> Any:
            async with semaphore:
                return await task()

        return await asyncio.gather(*(bounded(t) for t in tasks))
