import asyncio
import threading
import time

from waveline import (
    CancellationToken,
    EventKind,
    HandlerError,
    MemoryEventPublisher,
    StepExecutor,
    StepState,
    StepStatus,
    StepType,
    WavelineSettings,
    Workflow,
    WorkflowRun,
    WorkflowStep,
    default_registry,
)


def setup(*steps: WorkflowStep, registry=None, **wf_kwargs):
    workflow = Workflow(id="wf", name="wf", steps=list(steps), **wf_kwargs)
    run = WorkflowRun(
        workflow_id="wf",
        workflow_version="1.0.0",
        parameters={"flag": False},
        steps={s.id: StepState(step_id=s.id) for s in steps},
    )
    events = MemoryEventPublisher()
    executor = StepExecutor(registry or default_registry(), publisher=events, settings=WavelineSettings())
    return executor, run, workflow, events


def test_completed_step_records_outputs_and_inputs() -> None:
    registry = default_registry()
    registry.register(StepType.TRANSFORM, lambda x: {"double": x * 2})
    step = WorkflowStep.model_validate(
        {"id": "s", "config": {"inputs": {"x": {"kind": "literal", "value": 21}}}}
    )
    executor, run, workflow, events = setup(step, registry=registry)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.COMPLETED
    assert state.outputs == {"double": 42}
    assert state.inputs == {"x": 21}
    assert state.attempt == 1
    assert state.log_ref == f"{run.id}:s"
    assert [e.kind for e in events.events] == [EventKind.STEP_STARTED, EventKind.STEP_COMPLETED]


def test_retry_twice_then_succeed() -> None:
    calls = []

    def flaky() -> dict:
        calls.append(1)
        if len(calls) < 3:
            raise RuntimeError("transient")
        return {"ok": True}

    registry = default_registry()
    registry.register_custom("flaky", flaky)
    step = WorkflowStep(id="b", type=StepType.CUSTOM, handler="flaky", retry={"max_attempts": 3, "delay": 0.001})
    executor, run, workflow, events = setup(step, registry=registry)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.COMPLETED
    assert state.attempt == 3
    assert len(events.of_kind(EventKind.STEP_RETRYING)) == 2


def test_workflow_default_retry_applies() -> None:
    def fail() -> None:
        raise RuntimeError("always")

    registry = default_registry()
    registry.register_custom("fail", fail)
    step = WorkflowStep(id="s", type=StepType.CUSTOM, handler="fail")
    executor, run, workflow, _ = setup(step, registry=registry, default_retry={"max_attempts": 2})
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert state.attempt == 2
    assert "always" in state.error


def test_non_recoverable_error_stops_retries() -> None:
    def reject() -> None:
        raise HandlerError("invalid dataset", recoverable=False)

    registry = default_registry()
    registry.register_custom("reject", reject)
    step = WorkflowStep(id="s", type=StepType.CUSTOM, handler="reject", retry={"max_attempts": 5})
    executor, run, workflow, _ = setup(step, registry=registry)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert state.attempt == 1
    assert state.error == "invalid dataset"


def test_timeout_counts_as_attempt() -> None:
    async def slow() -> dict:
        await asyncio.sleep(1)
        return {}

    registry = default_registry()
    registry.register_custom("slow", slow)
    step = WorkflowStep(id="s", type=StepType.CUSTOM, handler="slow", timeout=0.01, retry={"max_attempts": 2})
    executor, run, workflow, _ = setup(step, registry=registry)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert state.attempt == 2
    assert "exceeded" in state.error


def test_timed_out_thread_attempts_never_overlap() -> None:
    lock = threading.Lock()
    live = {"now": 0, "max": 0}

    def slow() -> dict:
        with lock:
            live["now"] += 1
            live["max"] = max(live["max"], live["now"])
        time.sleep(0.15)
        with lock:
            live["now"] -= 1
        return {}

    registry = default_registry()
    registry.register_custom("slow", slow)
    step = WorkflowStep(id="s", type=StepType.CUSTOM, handler="slow", timeout=0.05, retry={"max_attempts": 3})
    executor, run, workflow, _ = setup(step, registry=registry)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert state.attempt == 3
    assert "exceeded" in state.error
    assert live == {"now": 0, "max": 1}


def test_condition_false_skips() -> None:
    step = WorkflowStep(id="s", condition={"expression": "params.flag"})
    executor, run, workflow, events = setup(step)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.SKIPPED
    assert state.attempt == 0
    assert events.of_kind(EventKind.STEP_SKIPPED)


def test_condition_false_fails() -> None:
    step = WorkflowStep(id="s", condition={"expression": "params.flag", "on_false": "fail"})
    executor, run, workflow, _ = setup(step)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert "evaluated false" in state.error


def test_missing_declared_output_fails_without_retry() -> None:
    registry = default_registry()
    registry.register(StepType.EXPERIMENT, lambda: {"loss": 0.1})
    step = WorkflowStep(
        id="s",
        type=StepType.EXPERIMENT,
        outputs=[{"name": "accuracy", "type": "number"}],
        retry={"max_attempts": 3},
    )
    executor, run, workflow, _ = setup(step, registry=registry)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert state.attempt == 1
    assert "accuracy" in state.error


def test_mistyped_declared_output_fails() -> None:
    registry = default_registry()
    registry.register(StepType.EXPERIMENT, lambda: {"accuracy": "high"})
    step = WorkflowStep(id="s", type=StepType.EXPERIMENT, outputs=[{"name": "accuracy", "type": "number"}])
    executor, run, workflow, _ = setup(step, registry=registry)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert "not of type number" in state.error


def test_unregistered_handler() -> None:
    step = WorkflowStep(id="s", type=StepType.BENCHMARK, retry={"max_attempts": 3})
    executor, run, workflow, _ = setup(step)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert state.attempt == 1
    assert "no handler registered" in state.error


def test_best_effort_failure_is_tolerated() -> None:
    registry = default_registry()
    registry.register_custom("boom", lambda: 1 / 0)
    step = WorkflowStep(id="s", type=StepType.CUSTOM, handler="boom", best_effort=True)
    executor, run, workflow, events = setup(step, registry=registry)
    state = asyncio.run(executor.execute(step, run, workflow))
    assert state.status == StepStatus.FAILED
    assert state.tolerated
    assert events.of_kind(EventKind.STEP_FAILED)[0].data["tolerated"] is True


def test_cancelled_token_cancels_step() -> None:
    async def wait_for_cancel(context) -> dict:
        while not context.cancelled:
            await asyncio.sleep(0.005)
        context.cancel_token.raise_if_cancelled()
        return {}

    registry = default_registry()
    registry.register_custom("wait", wait_for_cancel)
    step = WorkflowStep(id="s", type=StepType.CUSTOM, handler="wait", retry={"max_attempts": 3})
    executor, run, workflow, _ = setup(step, registry=registry)
    token = CancellationToken()

    async def scenario() -> StepState:
        task = asyncio.create_task(executor.execute(step, run, workflow, cancel_token=token))
        await asyncio.sleep(0.02)
        token.cancel()
        return await task

    state = asyncio.run(scenario())
    assert state.status == StepStatus.CANCELLED
    assert state.attempt == 1


def test_progress_reports_are_published() -> None:
    def train(context) -> dict:
        context.report_progress(0.5, "half way")
        return {"done": True}

    registry = default_registry()
    registry.register_custom("train", train)
    step = WorkflowStep(id="s", type=StepType.CUSTOM, handler="train")
    executor, run, workflow, events = setup(step, registry=registry)
    asyncio.run(executor.execute(step, run, workflow))
    (progress,) = events.of_kind(EventKind.STEP_PROGRESS)
    assert progress.step_id == "s"
    assert progress.data["progress"] == 0.5
    assert progress.data["message"] == "half way"
