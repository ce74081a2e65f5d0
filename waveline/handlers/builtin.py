"""Control-flow handlers shipped with waveline."""

from __future__ import annotations

import asyncio
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from ..errors import HandlerError, StepCancelledError, WavelineError
from ..models import RunStatus, StepConfig, StepState, StepStatus, StepType, WorkflowStep
from ..resolver import evaluation_context
from .base import HandlerRegistry, StepContext, StepHandler


def _require_executor(context: StepContext) -> None:
    if context.executor is None or context.run is None or context.workflow is None:
        raise HandlerError(f"step '{context.step_id}' needs an executor context", recoverable=False)


def _inline_step(definition: Any, step_id: str, what: str) -> WorkflowStep:
    if isinstance(definition, WorkflowStep):
        return definition
    try:
        return WorkflowStep.model_validate(definition)
    except ValidationError as e:
        raise HandlerError(f"step '{step_id}' has an invalid {what}: {e}", recoverable=False) from e


def _check_outcome(state: StepState, step_id: str, what: str) -> None:
    if state.status == StepStatus.CANCELLED:
        raise StepCancelledError(f"step '{step_id}' cancelled during {what}")
    if not state.satisfies_dependents:
        raise HandlerError(f"step '{step_id}' {what} failed: {state.error}", recoverable=False)


class ConditionalHandler(StepHandler):
    """Evaluate ``params.expression`` and expose it as the ``result`` output."""

    async def execute(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Dict[str, Any]:
        _require_executor(context)
        expression = config.params.get("expression")
        if not expression:
            raise HandlerError(f"conditional step '{context.step_id}' has no expression", recoverable=False)
        value = context.executor.evaluator.evaluate(expression, evaluation_context(context.run, inputs))
        return {"result": bool(value)}


class ParallelHandler(StepHandler):
    """Fan out the inline ``params.branches`` and fan their outputs back in."""

    async def execute(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Dict[str, Any]:
        _require_executor(context)
        branches = [_inline_step(b, context.step_id, "branch") for b in config.params.get("branches", [])]
        ids = [b.id for b in branches]
        if len(set(ids)) != len(ids):
            raise HandlerError(f"parallel step '{context.step_id}' has duplicate branch ids", recoverable=False)

        limit = asyncio.Semaphore(context.executor.settings.max_concurrent_steps)

        async def run_branch(branch: WorkflowStep) -> StepState:
            async with limit:
                return await context.executor.execute(
                    branch.model_copy(update={"id": f"{context.step_id}.{branch.id}"}),
                    context.run,
                    context.workflow,
                    cancel_token=context.cancel_token,
                    base_inputs=inputs,
                    orchestrator=context.orchestrator,
                )

        states = await asyncio.gather(*(run_branch(b) for b in branches))
        results: Dict[str, Any] = {}
        for branch, state in zip(branches, states):
            _check_outcome(state, context.step_id, f"branch '{branch.id}'")
            results[branch.id] = state.outputs
        return {"results": results}


class LoopHandler(StepHandler):
    """Run the inline ``params.body`` once per item, ``count`` times or until ``until`` holds."""

    async def execute(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Dict[str, Any]:
        _require_executor(context)
        params = config.params
        if "body" not in params:
            raise HandlerError(f"loop step '{context.step_id}' has no body", recoverable=False)
        body = _inline_step(params["body"], context.step_id, "body")
        cap = context.executor.settings.max_loop_iterations
        until: Optional[str] = params.get("until")

        items: Optional[List[Any]] = params.get("items", inputs.get("items"))
        if items is not None:
            iterations = list(items)
        elif params.get("count") is not None:
            iterations = list(range(int(params["count"])))
        elif until:
            iterations = None
        else:
            raise HandlerError(f"loop step '{context.step_id}' needs items, count or until", recoverable=False)
        if iterations is not None and len(iterations) > cap:
            raise HandlerError(
                f"loop step '{context.step_id}' requests {len(iterations)} iterations, limit is {cap}",
                recoverable=False,
            )

        results: List[Dict[str, Any]] = []
        index = 0
        while iterations is None or index < len(iterations):
            if index >= cap:
                raise HandlerError(f"loop step '{context.step_id}' reached {cap} iterations", recoverable=False)
            context.cancel_token.raise_if_cancelled()
            item = iterations[index] if iterations is not None else index
            iteration_inputs = {**inputs, "item": item, "index": index}
            state = await context.executor.execute(
                body.model_copy(update={"id": f"{context.step_id}.{body.id}[{index}]"}),
                context.run,
                context.workflow,
                cancel_token=context.cancel_token,
                base_inputs=iteration_inputs,
                orchestrator=context.orchestrator,
            )
            _check_outcome(state, context.step_id, f"iteration {index}")
            results.append(state.outputs)
            index += 1
            context.report_progress(index / len(iterations) if iterations else 0.0, f"iteration {index}")
            if until:
                scope = evaluation_context(context.run, {**iteration_inputs, "result": state.outputs})
                if context.executor.evaluator.evaluate(until, scope):
                    break
        return {"results": results, "iterations": len(results)}


class SubWorkflowHandler(StepHandler):
    """Run ``params.workflow_id`` as a child run with the step inputs as parameters."""

    async def execute(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Dict[str, Any]:
        if context.orchestrator is None:
            raise HandlerError(f"sub-workflow step '{context.step_id}' needs an orchestrator", recoverable=False)
        workflow_id = config.params.get("workflow_id")
        if not workflow_id:
            raise HandlerError(f"sub-workflow step '{context.step_id}' has no workflow_id", recoverable=False)
        parameters = {**config.params.get("parameters", {}), **inputs}
        try:
            child = await context.orchestrator.run_child(
                workflow_id,
                parameters,
                parent_run_id=context.run_id,
                version=config.params.get("version"),
                cancel_token=context.cancel_token,
            )
        except WavelineError as e:
            raise HandlerError(f"sub-workflow '{workflow_id}' could not start: {e}", recoverable=False) from e
        if child.status == RunStatus.CANCELLED:
            raise StepCancelledError(f"sub-workflow run {child.id} was cancelled")
        if child.status != RunStatus.COMPLETED:
            raise HandlerError(
                f"sub-workflow run {child.id} {child.status.value}: {child.error}",
                recoverable=False,
            )
        return {**child.outputs, "run_id": child.id}


def register_builtin_handlers(registry: HandlerRegistry) -> HandlerRegistry:
    registry.register(StepType.CONDITIONAL, ConditionalHandler())
    registry.register(StepType.PARALLEL, ParallelHandler())
    registry.register(StepType.LOOP, LoopHandler())
    registry.register(StepType.SUB_WORKFLOW, SubWorkflowHandler())
    return registry


def default_registry() -> HandlerRegistry:
    """Registry holding the control-flow handlers; register domain handlers on top."""
    return register_builtin_handlers(HandlerRegistry())
