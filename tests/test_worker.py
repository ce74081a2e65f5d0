import asyncio
from typing import List

from waveline import Orchestrator, RunStatus, StoreError, Workflow, WorkflowStep
from waveline.worker import PoolEngine, RunWorker


def register_slow(orchestrator: Orchestrator, registry, active: List[int], peak: List[int]) -> None:
    async def slow() -> dict:
        active.append(1)
        peak.append(len(active))
        await asyncio.sleep(0.01)
        active.pop()
        return {"done": True}

    registry.register_custom("slow", slow)
    orchestrator.register_workflow(
        Workflow(id="wf", name="wf", steps=[WorkflowStep.model_validate({"id": "s", "type": "custom", "handler": "slow"})])
    )


def test_worker_drains_queue_with_bounded_runs(orchestrator: Orchestrator, registry) -> None:
    active: List[int] = []
    peak: List[int] = []
    register_slow(orchestrator, registry, active, peak)
    submitted = [orchestrator.submit("wf").id for _ in range(5)]

    finished = asyncio.run(RunWorker(orchestrator, max_concurrent_runs=2).work())
    assert sorted(r.id for r in finished) == sorted(submitted)
    assert all(r.status == RunStatus.COMPLETED for r in finished)
    assert max(peak) == 2
    assert len(orchestrator.store.queue) == 0


def test_worker_skips_runs_that_already_ran(orchestrator: Orchestrator, registry) -> None:
    register_slow(orchestrator, registry, [], [])
    done = orchestrator.submit("wf")
    asyncio.run(orchestrator.execute(done.id))
    pending = orchestrator.submit("wf")

    finished = asyncio.run(RunWorker(orchestrator).work())
    assert [r.id for r in finished] == [pending.id]


def test_blocking_worker_stops_on_request(orchestrator: Orchestrator, registry) -> None:
    register_slow(orchestrator, registry, [], [])
    worker = RunWorker(orchestrator)

    async def scenario():
        task = asyncio.create_task(worker.work(block=True, poll_interval=0.01))
        await asyncio.sleep(0.02)
        run = orchestrator.submit("wf")
        await asyncio.sleep(0.1)
        worker.stop()
        assert await task == []
        return run

    run = asyncio.run(scenario())
    assert worker.processed == 1
    assert orchestrator.get_run(run.id).status == RunStatus.COMPLETED


def test_blocking_worker_releases_finished_runs(orchestrator: Orchestrator, registry) -> None:
    register_slow(orchestrator, registry, [], [])
    worker = RunWorker(orchestrator, max_concurrent_runs=3)
    submitted = [orchestrator.submit("wf").id for _ in range(30)]

    async def scenario() -> None:
        task = asyncio.create_task(worker.work(block=True, poll_interval=0.005))
        while worker.processed < len(submitted):
            assert worker.in_flight <= 3
            await asyncio.sleep(0.005)
        worker.stop()
        await task

    asyncio.run(scenario())
    assert worker.in_flight == 0
    assert all(orchestrator.get_run(run_id).status == RunStatus.COMPLETED for run_id in submitted)


def test_failing_run_does_not_hide_other_results(orchestrator: Orchestrator, registry, monkeypatch) -> None:
    register_slow(orchestrator, registry, [], [])
    broken = orchestrator.submit("wf").id
    healthy = orchestrator.submit("wf").id
    execute = orchestrator.execute

    async def flaky_execute(run_id, cancel_token=None):
        if run_id == broken:
            raise StoreError("disk full")
        return await execute(run_id, cancel_token)

    monkeypatch.setattr(orchestrator, "execute", flaky_execute)
    worker = RunWorker(orchestrator)
    finished = asyncio.run(worker.work())
    assert [r.id for r in finished] == [healthy]
    assert worker.processed == 2


def test_pool_engine_limits_concurrency() -> None:
    active: List[int] = []
    peak: List[int] = []

    def job(n: int):
        async def run() -> int:
            active.append(n)
            peak.append(len(active))
            await asyncio.sleep(0.01)
            active.remove(n)
            return n * n

        return run

    results = asyncio.run(PoolEngine(3).run_async_steps([job(n) for n in range(7)]))
    assert results == [n * n for n in range(7)]
    assert max(peak) == 3


def test_pool_engine_single_slot_runs_in_order() -> None:
    order: List[int] = []

    def job(n: int):
        async def run() -> int:
            order.append(n)
            return n

        return run

    assert asyncio.run(PoolEngine(1).run_async_steps([job(n) for n in range(4)])) == [0, 1, 2, 3]
    assert order == [0, 1, 2, 3]
