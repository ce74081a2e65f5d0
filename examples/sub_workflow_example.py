import asyncio

from waveline import Orchestrator, Workflow

orchestrator = Orchestrator()
orchestrator.registry.register_custom("score", lambda model, threshold: {"passed": model != "baseline" and threshold < 1})

orchestrator.register_workflow(
    Workflow.model_validate(
        {
            "id": "evaluate",
            "name": "evaluate one model",
            "parameters": [
                {"name": "model", "type": "string", "required": True},
                {"name": "threshold", "type": "number", "default": 0.5},
            ],
            "steps": [
                {
                    "id": "score",
                    "type": "custom",
                    "handler": "score",
                    "config": {
                        "inputs": {
                            "model": {"kind": "parameter", "name": "model"},
                            "threshold": {"kind": "parameter", "name": "threshold"},
                        }
                    },
                }
            ],
        }
    )
)
orchestrator.register_workflow(
    Workflow.model_validate(
        {
            "id": "compare",
            "name": "compare models",
            "steps": [
                {
                    "id": "candidates",
                    "type": "parallel",
                    "config": {
                        "params": {
                            "branches": [
                                {
                                    "id": model,
                                    "type": "sub_workflow",
                                    "config": {"params": {"workflow_id": "evaluate", "parameters": {"model": model}}},
                                }
                                for model in ("baseline", "wide")
                            ]
                        }
                    },
                }
            ],
        }
    )
)

run = asyncio.run(orchestrator.run_workflow("compare"))
results = run.steps["candidates"].outputs["results"]
print(f"status: {run.status.value}")
for model, outputs in results.items():
    print(f"{model}: {outputs['score.passed']}")
