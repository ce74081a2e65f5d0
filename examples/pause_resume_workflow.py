"""Pause a run after its first step and resume it from the checkpoint."""

import asyncio
import tempfile

from waveline import Orchestrator, StateStore, Workflow, WorkflowStep


def chain(*ids: str) -> list:
    steps = []
    for index, step_id in enumerate(ids):
        deps = [ids[index - 1]] if index else []
        steps.append(WorkflowStep.model_validate({"id": step_id, "type": "custom", "handler": step_id, "dependencies": deps}))
    return steps


with tempfile.TemporaryDirectory() as root:
    orchestrator = Orchestrator(StateStore.files(root))

    async def prepare(context) -> dict:
        orchestrator.pause(context.run_id)
        return {"value": 1}

    orchestrator.registry.register_custom("prepare", prepare)
    orchestrator.registry.register_custom("train", lambda: {"value": 2})
    orchestrator.registry.register_custom("report", lambda: {"value": 3})
    orchestrator.register_workflow(Workflow(id="pipeline", name="pipeline", steps=chain("prepare", "train", "report")))

    run = orchestrator.submit("pipeline")
    paused = asyncio.run(orchestrator.execute(run.id))
    print(f"after execute: {paused.status.value}")

    # a fresh orchestrator over the same directory picks the run up again
    restarted = Orchestrator(StateStore.files(root), registry=orchestrator.registry)
    resumed = asyncio.run(restarted.resume(run.id))
    print(f"after resume: {resumed.status.value}")
    print("outputs: " + ", ".join(f"{k}={v}" for k, v in sorted(resumed.outputs.items())))
