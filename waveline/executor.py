"""Run a single step: condition, input resolution, handler attempts and outputs."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any, Awaitable, Callable, Dict, List, Mapping, Optional

from .config import WavelineSettings
from .errors import ExpressionError, OutputContractError, ResolutionError, StepCancelledError
from .events import EventKind, WorkflowEvent, publish_safely
from .expressions import ExpressionEvaluator, LookupEvaluator
from .handlers import CancellationToken, HandlerRegistry, StepContext, default_registry
from .models import Condition, OnFalse, StepState, StepStatus, Workflow, WorkflowRun, WorkflowStep, utcnow
from .policies import FailureAction, FailureDecision, RetryPolicy, StepPolicy, StepTimeoutPolicy
from .resolver import InputResolver, evaluation_context
from .utils.logging import run_logger

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from .interfaces import EventPublisher
    from .orchestrator import Orchestrator


def validate_outputs(step: WorkflowStep, outputs: Any) -> Dict[str, Any]:
    """Check handler outputs against the step's declared outputs."""
    if not isinstance(outputs, Mapping):
        raise OutputContractError(
            f"step '{step.id}' handler returned {type(outputs).__name__}, expected a mapping of outputs"
        )
    for spec in step.outputs:
        if spec.name not in outputs:
            raise OutputContractError(f"step '{step.id}' did not produce declared output '{spec.name}'")
        if not spec.type.accepts(outputs[spec.name]):
            raise OutputContractError(
                f"step '{step.id}' output '{spec.name}' is not of type {spec.type.value}"
            )
    return dict(outputs)


class StepExecutor:
    """Execute steps on behalf of the orchestrator.

    ``execute`` never raises for step-level problems: every outcome is
    reported through the returned :class:`StepState`.
    """

    def __init__(
        self,
        registry: Optional[HandlerRegistry] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        publisher: Optional["EventPublisher"] = None,
        settings: Optional[WavelineSettings] = None,
    ) -> None:
        self.registry = registry or default_registry()
        self.evaluator = evaluator or LookupEvaluator()
        self.resolver = InputResolver(self.evaluator)
        self.publisher = publisher
        self.settings = settings or WavelineSettings()

    def policies_for(self, step: WorkflowStep, workflow: Workflow) -> List[StepPolicy]:
        retry = step.retry or workflow.default_retry
        timeout = step.timeout or workflow.default_timeout or self.settings.default_step_timeout
        policies: List[StepPolicy] = [RetryPolicy.from_config(retry) if retry else RetryPolicy()]
        if timeout:
            policies.append(StepTimeoutPolicy(timeout))
        return policies

    def _publish(self, kind: EventKind, run: WorkflowRun, step_id: str, **data: Any) -> None:
        publish_safely(self.publisher, WorkflowEvent(kind, run.id, step_id, data))

    def _finish(self, state: StepState, status: StepStatus, run: WorkflowRun, error: Optional[str] = None) -> StepState:
        state.status = status
        state.error = error
        state.ended_at = utcnow()
        kind = {
            StepStatus.COMPLETED: EventKind.STEP_COMPLETED,
            StepStatus.FAILED: EventKind.STEP_FAILED,
            StepStatus.SKIPPED: EventKind.STEP_SKIPPED,
            StepStatus.CANCELLED: EventKind.STEP_CANCELLED,
        }[status]
        data: Dict[str, Any] = {"attempt": state.attempt}
        if error:
            data["error"] = error
        if state.tolerated:
            data["tolerated"] = True
        self._publish(kind, run, state.step_id, **data)
        return state

    def _condition_holds(self, condition: Condition, run: WorkflowRun, base_inputs: Mapping[str, Any]) -> bool:
        return bool(self.evaluator.evaluate(condition.expression, evaluation_context(run, base_inputs)))

    @staticmethod
    def _awaited(step: WorkflowStep, run: WorkflowRun, workflow: Workflow) -> bool:
        """Whether a pending step of *workflow* depends on *step*."""
        return any(
            step.id in other.dependencies and other.id in run.steps and run.steps[other.id].status == StepStatus.PENDING
            for other in workflow.steps
        )

    def _classify(self, exc: Exception, step: WorkflowStep, run: WorkflowRun, workflow: Workflow) -> None:
        # resolution failures of a step nothing is waiting on are retried and tolerated
        if isinstance(exc, ResolutionError) and step.id in run.steps:
            exc.recoverable = not self._awaited(step, run, workflow)

    async def execute(
        self,
        step: WorkflowStep,
        run: WorkflowRun,
        workflow: Workflow,
        *,
        cancel_token: Optional[CancellationToken] = None,
        base_inputs: Optional[Mapping[str, Any]] = None,
        orchestrator: Optional["Orchestrator"] = None,
    ) -> StepState:
        token = cancel_token or CancellationToken()
        base = dict(base_inputs or {})
        state = StepState(
            step_id=step.id,
            status=StepStatus.RUNNING,
            attempt=0,
            started_at=utcnow(),
            log_ref=f"{run.id}:{step.id}",
        )
        log = run_logger(run.id, step.id)

        if token.cancelled:
            return self._finish(state, StepStatus.CANCELLED, run, "run was cancelled")

        if step.condition is not None:
            try:
                holds = self._condition_holds(step.condition, run, base)
            except ExpressionError as e:
                self._classify(e, step, run, workflow)
                log.warning(f"condition of step {step.id} could not be evaluated: {e}")
                return self._fail(step, state, run, e)
            if not holds:
                if step.condition.on_false == OnFalse.SKIP:
                    log.info(f"step {step.id} skipped, condition '{step.condition.expression}' is false")
                    return self._finish(state, StepStatus.SKIPPED, run)
                log.info(f"step {step.id} failed, condition '{step.condition.expression}' is false")
                return self._fail(step, state, run, f"condition '{step.condition.expression}' evaluated false")

        policies = self.policies_for(step, workflow)
        while True:
            state.attempt += 1
            attempt = state.attempt
            for pol in policies:
                pol.on_start(step, attempt)
            self._publish(EventKind.STEP_STARTED, run, step.id, attempt=attempt)
            try:
                outputs = await self._attempt(step, run, workflow, state, policies, token, base, orchestrator)
            except Exception as e:
                if token.cancelled or isinstance(e, StepCancelledError):
                    log.info(f"step {step.id} cancelled on attempt {attempt}")
                    return self._finish(state, StepStatus.CANCELLED, run, str(e) or "run was cancelled")
                self._classify(e, step, run, workflow)
                decision: FailureDecision | None = None
                for p in policies:
                    d = p.on_failure(step, e, attempt)
                    if d is not None:
                        decision = d
                        break
                if decision and decision.action == FailureAction.RETRY:
                    log.warning(
                        f"step {step.id} attempt {attempt} failed: {e!r}; retrying in {decision.delay:.3f}s"
                    )
                    self._publish(
                        EventKind.STEP_RETRYING, run, step.id, attempt=attempt, error=str(e), delay=decision.delay
                    )
                    if decision.delay > 0 and await token.sleep(decision.delay):
                        return self._finish(state, StepStatus.CANCELLED, run, "run was cancelled")
                    continue
                log.error(f"step {step.id} failed after {attempt} attempt(s): {e!r}")
                return self._fail(step, state, run, e)
            for pol in policies:
                pol.on_success(step, outputs)
            state.outputs = outputs
            log.debug(f"step {step.id} completed on attempt {attempt}")
            return self._finish(state, StepStatus.COMPLETED, run)

    async def _attempt(
        self,
        step: WorkflowStep,
        run: WorkflowRun,
        workflow: Workflow,
        state: StepState,
        policies: List[StepPolicy],
        token: CancellationToken,
        base: Dict[str, Any],
        orchestrator: Optional["Orchestrator"],
    ) -> Dict[str, Any]:
        inputs = {**base, **self.resolver.resolve(step, run, base)}
        state.inputs = inputs
        handler = self.registry.get(step)
        context = StepContext(
            run_id=run.id,
            step_id=step.id,
            attempt=state.attempt,
            cancel_token=token,
            publisher=self.publisher,
            run=run,
            workflow=workflow,
            executor=self,
            orchestrator=orchestrator,
        )

        async def call() -> Any:
            return await handler.invoke(step.config, inputs, context)

        wrapped: Callable[[], Awaitable[Any]] = call
        for pol in reversed(policies):
            prev = wrapped

            async def wrapper(prev=prev, pol=pol) -> Any:
                return await pol.execute_async(step, prev)

            wrapped = wrapper

        result = await wrapped()
        return validate_outputs(step, result)

    def _fail(self, step: WorkflowStep, state: StepState, run: WorkflowRun, error: Any) -> StepState:
        state.tolerated = step.best_effort or (isinstance(error, ResolutionError) and error.recoverable)
        return self._finish(state, StepStatus.FAILED, run, str(error))
