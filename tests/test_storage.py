import asyncio
import os
from pathlib import Path

import pytest

from waveline import (
    Checkpoint,
    Orchestrator,
    RunNotFoundError,
    RunStatus,
    StateStore,
    StepState,
    StepStatus,
    StoreError,
    Workflow,
    WorkflowNotFoundError,
    WorkflowRun,
    WorkflowStep,
    WorkflowVersionConflictError,
)
from waveline.checkpoint import CheckpointManager


@pytest.fixture(params=["memory", "files", "postgres"])
def state_store(request, tmp_path: Path) -> StateStore:
    if request.param == "memory":
        return StateStore.memory()
    if request.param == "files":
        return StateStore.files(tmp_path)
    dsn = os.environ.get("DATABASE_URL")
    if not dsn:
        pytest.skip("DATABASE_URL not set")
    store = StateStore.postgres(dsn)
    store.workflows.db.execute("TRUNCATE workflows, runs, checkpoints, run_queue")
    return store


def wf(version: str = "1.0.0", step: str = "a") -> Workflow:
    return Workflow(id="wf", name="wf", version=version, steps=[WorkflowStep(id=step)])


def test_workflow_versions(state_store: StateStore) -> None:
    store = state_store.workflows
    store.save(wf("1.2.0"))
    store.save(wf("1.10.0"))
    store.save(wf("1.10.0"))
    assert store.get("wf").version == "1.10.0"
    assert store.get("wf", "1.2.0").version == "1.2.0"
    assert sorted(w.version for w in store.list("wf")) == ["1.10.0", "1.2.0"]
    with pytest.raises(WorkflowVersionConflictError):
        store.save(wf("1.2.0", step="b"))
    with pytest.raises(WorkflowNotFoundError):
        store.get("wf", "9.9.9")
    with pytest.raises(WorkflowNotFoundError):
        store.get("missing")


def test_run_store(state_store: StateStore) -> None:
    store = state_store.runs
    first = WorkflowRun(workflow_id="wf", workflow_version="1.0.0", steps={"a": StepState(step_id="a")})
    second = WorkflowRun(workflow_id="other", workflow_version="1.0.0", status=RunStatus.COMPLETED)
    store.save(first)
    store.save(second)
    first.status = RunStatus.RUNNING
    first.steps["a"].status = StepStatus.RUNNING
    store.save(first)

    loaded = store.get(first.id)
    assert loaded == first
    assert loaded is not first
    assert [r.id for r in store.list()] == [first.id, second.id]
    assert [r.id for r in store.list(workflow_id="other")] == [second.id]
    assert [r.id for r in store.list(status=RunStatus.RUNNING)] == [first.id]
    with pytest.raises(RunNotFoundError):
        store.get("missing")


def test_checkpoint_history(state_store: StateStore) -> None:
    store = state_store.checkpoints
    run = WorkflowRun(workflow_id="wf", workflow_version="1.0.0")
    assert store.get(run.id) is None
    for wave in (1, 2):
        run.outputs[f"s{wave}.x"] = wave
        store.save(Checkpoint(run_id=run.id, run=run, wave=wave))
    latest = store.get(run.id)
    assert latest.wave == 2
    assert latest.run.outputs == {"s1.x": 1, "s2.x": 2}
    assert [c.wave for c in store.list(run.id)] == [1, 2]


def test_run_queue(state_store: StateStore) -> None:
    queue = state_store.queue
    queue.enqueue("r1")
    queue.enqueue("r2")
    queue.enqueue("r1")
    assert len(queue) == 2
    assert queue.fetch_next() == "r1"
    assert queue.fetch_next() == "r2"
    assert queue.fetch_next() is None


def test_runs_survive_in_files(tmp_path: Path, registry, settings) -> None:
    first = Orchestrator(StateStore.files(tmp_path), registry=registry, settings=settings)
    first.register_workflow(
        Workflow(
            id="wf",
            name="wf",
            steps=[
                WorkflowStep.model_validate(
                    {
                        "id": "a",
                        "type": "custom",
                        "handler": "echo",
                        "config": {"inputs": {"v": {"kind": "literal", "value": 5}}},
                    }
                )
            ],
        )
    )
    run = asyncio.run(first.run_workflow("wf"))

    reopened = Orchestrator(StateStore.files(tmp_path), registry=registry, settings=settings)
    stored = reopened.get_run(run.id)
    assert stored.status == RunStatus.COMPLETED
    assert stored.outputs == {"a.v": 5}
    assert reopened.checkpoints.load(run.id).wave == 1
    assert (tmp_path / "runs" / f"{run.id}.json").is_file()


def test_corrupt_file_record(tmp_path: Path) -> None:
    store = StateStore.files(tmp_path)
    (tmp_path / "runs").mkdir(parents=True, exist_ok=True)
    (tmp_path / "runs" / "broken.json").write_text("{not json", encoding="utf-8")
    with pytest.raises(StoreError):
        store.runs.get("broken")


def test_restore_resets_interrupted_steps() -> None:
    manager = CheckpointManager(StateStore.memory().checkpoints)
    run = WorkflowRun(
        workflow_id="wf",
        workflow_version="1.0.0",
        status=RunStatus.RUNNING,
        steps={
            "a": StepState(step_id="a", status=StepStatus.COMPLETED, outputs={"x": 1}),
            "b": StepState(step_id="b", status=StepStatus.RUNNING, attempt=1),
        },
    )
    assert manager.restore(run.id) is None
    asyncio.run(manager.save(run, 4))
    restored = manager.restore(run.id)
    assert restored.steps["a"].status == StepStatus.COMPLETED
    assert restored.steps["b"].status == StepStatus.PENDING
    assert manager.load(run.id).wave == 4
    assert run.steps["b"].status == StepStatus.RUNNING
