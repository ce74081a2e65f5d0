"""Resolve step input references into concrete values."""

from __future__ import annotations

from typing import Any, Dict, Mapping, Optional

from .errors import ExpressionError, MissingOutputError, MissingParameterError
from .expressions import ExpressionEvaluator
from .models import (
    ExpressionRef,
    LiteralRef,
    ParameterRef,
    StepOutputRef,
    StepStatus,
    WorkflowRun,
    WorkflowStep,
)


def evaluation_context(run: WorkflowRun, inputs: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
    """Context handed to the expression evaluator.

    ``steps`` only exposes outputs of completed steps; ``status`` exposes the
    status of every step.
    """
    return {
        "params": dict(run.parameters),
        "steps": {sid: dict(s.outputs) for sid, s in run.steps.items() if s.status == StepStatus.COMPLETED},
        "status": {sid: s.status.value for sid, s in run.steps.items()},
        "inputs": dict(inputs or {}),
        "run": {"id": run.id, "workflow_id": run.workflow_id, "version": run.workflow_version},
    }


class InputResolver:
    """Compute the inputs of a step about to run."""

    def __init__(self, evaluator: Optional[ExpressionEvaluator] = None) -> None:
        self.evaluator = evaluator

    def resolve(
        self, step: WorkflowStep, run: WorkflowRun, base_inputs: Optional[Mapping[str, Any]] = None
    ) -> Dict[str, Any]:
        """Return the concrete inputs of *step*.

        *base_inputs* are values handed down by a parent step (loop item,
        parallel fan-out inputs) and are visible to expressions as ``inputs``.
        """
        resolved: Dict[str, Any] = {}
        context: Optional[Dict[str, Any]] = None
        for name, ref in step.config.inputs.items():
            if isinstance(ref, ParameterRef):
                if ref.name not in run.parameters:
                    raise MissingParameterError(f"step '{step.id}' input '{name}': parameter '{ref.name}' not set")
                resolved[name] = run.parameters[ref.name]
            elif isinstance(ref, StepOutputRef):
                resolved[name] = self._step_output(step, name, ref, run)
            elif isinstance(ref, LiteralRef):
                resolved[name] = ref.value
            elif isinstance(ref, ExpressionRef):
                if self.evaluator is None:
                    raise ExpressionError(f"step '{step.id}' input '{name}': no expression evaluator configured")
                if context is None:
                    context = evaluation_context(run, base_inputs)
                resolved[name] = self.evaluator.evaluate(ref.text, context)
        return resolved

    @staticmethod
    def _step_output(step: WorkflowStep, name: str, ref: StepOutputRef, run: WorkflowRun) -> Any:
        producer = run.steps.get(ref.step_id)
        if producer is None or producer.status != StepStatus.COMPLETED:
            state = producer.status.value if producer else "unknown"
            raise MissingOutputError(
                f"step '{step.id}' input '{name}': step '{ref.step_id}' is {state}, not completed"
            )
        if ref.output_name not in producer.outputs:
            raise MissingOutputError(
                f"step '{step.id}' input '{name}': step '{ref.step_id}' has no output '{ref.output_name}'"
            )
        return producer.outputs[ref.output_name]
