import asyncio

from waveline import Orchestrator, Workflow, WorkflowStep
from waveline.models import StepType

attempts = []


def sometimes_fails() -> dict:
    attempts.append(1)
    if len(attempts) < 3:
        raise RuntimeError("boom")
    return {"ok": True}


orchestrator = Orchestrator()
orchestrator.registry.register_custom("flaky", sometimes_fails)
orchestrator.register_workflow(
    Workflow(
        id="retry",
        name="retry",
        steps=[
            WorkflowStep(
                id="fetch",
                type=StepType.CUSTOM,
                handler="flaky",
                retry={"max_attempts": 3, "delay": 0.01, "backoff_multiplier": 2.0},
                timeout=5.0,
            )
        ],
    )
)

run = asyncio.run(orchestrator.run_workflow("retry"))
print(f"status: {run.status.value}")
print(f"attempts: {run.steps['fetch'].attempt}")
