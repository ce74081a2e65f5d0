"""Two independent steps feeding a third, with the result read from the run outputs."""

import asyncio

from waveline import Orchestrator, Workflow


def load(size: int) -> dict:
    return {"rows": list(range(size))}


def combine(left: list, right: list) -> dict:
    return {"total": sum(left) + sum(right)}


orchestrator = Orchestrator()
orchestrator.registry.register_custom("load", load)
orchestrator.registry.register_custom("combine", combine)

workflow = Workflow.model_validate(
    {
        "id": "fan-in",
        "name": "fan in",
        "parameters": [{"name": "size", "type": "integer", "default": 4}],
        "steps": [
            {
                "id": "a",
                "type": "custom",
                "handler": "load",
                "config": {"inputs": {"size": {"kind": "parameter", "name": "size"}}},
            },
            {
                "id": "b",
                "type": "custom",
                "handler": "load",
                "config": {"inputs": {"size": {"kind": "literal", "value": 3}}},
            },
            {
                "id": "c",
                "type": "custom",
                "handler": "combine",
                "dependencies": ["a", "b"],
                "config": {
                    "inputs": {
                        "left": {"kind": "step_output", "step_id": "a", "output_name": "rows"},
                        "right": {"kind": "step_output", "step_id": "b", "output_name": "rows"},
                    }
                },
                "outputs": [{"name": "total", "type": "integer"}],
            },
        ],
    }
)
orchestrator.register_workflow(workflow)

run = asyncio.run(orchestrator.run_workflow("fan-in"))
print(f"status: {run.status.value}")
print(f"result: {run.outputs['c.total']}")
