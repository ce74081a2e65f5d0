from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, List, Optional, Set

from ..errors import ConcurrentExecutionError, InvalidRunStateError, RunNotFoundError
from ..utils.logging import get_logger

if TYPE_CHECKING:  # pragma: no cover - typing only
    from ..models import WorkflowRun
    from ..orchestrator import Orchestrator

logger = get_logger()


class RunWorker:
    """Execute queued runs with at most ``max_concurrent_runs`` in flight."""

    def __init__(self, orchestrator: "Orchestrator", max_concurrent_runs: Optional[int] = None) -> None:
        self.orchestrator = orchestrator
        self.max_concurrent_runs = max(1, max_concurrent_runs or orchestrator.settings.max_concurrent_runs)
        self._stopped = False
        self._in_flight: Set[asyncio.Task] = set()
        self.processed = 0

    def stop(self) -> None:
        self._stopped = True

    @property
    def in_flight(self) -> int:
        return len(self._in_flight)

    async def _run_one(self, run_id: str, slots: asyncio.Semaphore) -> Optional["WorkflowRun"]:
        try:
            return await self.orchestrator.execute(run_id)
        except (InvalidRunStateError, ConcurrentExecutionError, RunNotFoundError) as e:
            logger.warning(f"skipping queued run {run_id}: {e}")
            return None
        finally:
            slots.release()

    async def work(self, *, block: bool = False, poll_interval: float = 1.0) -> List["WorkflowRun"]:
        """Process queued runs until the queue is empty.

        If ``block`` is true the worker keeps polling the queue every
        ``poll_interval`` seconds until :meth:`stop` is called; finished runs
        are then only logged.  Otherwise the final state of every run it
        executed is returned.
        """
        queue = self.orchestrator.store.queue
        slots = asyncio.Semaphore(self.max_concurrent_runs)
        finished: List["WorkflowRun"] = []

        def done(task: asyncio.Task) -> None:
            self._in_flight.discard(task)
            self.processed += 1
            if task.cancelled():
                return
            exc = task.exception()
            if exc is not None:
                logger.error(f"queued run {task.get_name()} raised {exc!r}")
            elif task.result() is not None:
                logger.debug(f"queued run {task.get_name()} finished as {task.result().status.value}")
                if not block:
                    finished.append(task.result())

        while not self._stopped:
            await slots.acquire()
            run_id = queue.fetch_next()
            if run_id is None:
                slots.release()
                if block:
                    await asyncio.sleep(poll_interval)
                    continue
                break
            logger.debug(f"worker picked run {run_id}")
            task = asyncio.create_task(self._run_one(run_id, slots), name=run_id)
            self._in_flight.add(task)
            task.add_done_callback(done)
        if self._in_flight:
            await asyncio.wait(set(self._in_flight))
        return finished
