# -*- coding: utf-8 -*-
"""Run lifecycle: submission, wave-by-wave execution, pause, resume and cancellation.

A run is driven by one loop that repeatedly computes the ready set, runs it as
a wave through the execution engine, merges the resulting step states and
writes a checkpoint before the next wave starts.  Pause and cancel requests
mutate the live run object; the loop notices them once the current wave has
finished.
"""

from __future__ import annotations

from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from .checkpoint import CheckpointManager, reset_interrupted
from .config import WavelineSettings, get_waveline_config
from .errors import (
    ConcurrentExecutionError,
    HandlerError,
    InvalidRunStateError,
    ParameterValidationError,
)
from .events import EventKind, WorkflowEvent, publish_safely
from .executor import StepExecutor
from .expressions import ExpressionEvaluator
from .graph import build_graph
from .handlers import CancellationToken, HandlerRegistry
from .interfaces import EventPublisher, ExecutionEngine
from .models import RunStatus, StepState, StepStatus, Workflow, WorkflowRun, utcnow
from .storage import StateStore
from .storage.retry import retry_store, retry_store_async
from .utils.logging import get_logger, run_logger
from .worker.pool import PoolEngine

logger = get_logger()


class Orchestrator:
    """Coordinate workflow runs against a :class:`~waveline.storage.StateStore`."""

    def __init__(
        self,
        store: Optional[StateStore] = None,
        registry: Optional[HandlerRegistry] = None,
        evaluator: Optional[ExpressionEvaluator] = None,
        publisher: Optional[EventPublisher] = None,
        settings: Optional[WavelineSettings] = None,
        engine: Optional[ExecutionEngine] = None,
    ) -> None:
        self.store = store or StateStore.memory()
        self.settings = settings or WavelineSettings()
        self.publisher = publisher
        self.executor = StepExecutor(registry, evaluator, publisher, self.settings)
        self.engine = engine or PoolEngine(self.settings.max_concurrent_steps)
        self.checkpoints = CheckpointManager(self.store.checkpoints, self.settings, publisher)
        self._active: Dict[str, WorkflowRun] = {}
        self._tokens: Dict[str, CancellationToken] = {}

    @classmethod
    def from_config(cls, path: Optional[Path] = None, **kwargs: Any) -> "Orchestrator":
        """Build an orchestrator with settings read by :func:`~waveline.config.get_waveline_config`."""
        return cls(settings=get_waveline_config(path), **kwargs)

    @property
    def registry(self) -> HandlerRegistry:
        return self.executor.registry

    # persistence ---------------------------------------------------------
    def _publish(self, kind: EventKind, run: WorkflowRun, **data: Any) -> None:
        publish_safely(self.publisher, WorkflowEvent(kind, run.id, data=data))

    def _save(self, run: WorkflowRun) -> None:
        retry_store(
            lambda: self.store.runs.save(run),
            self.settings.store_retry_attempts,
            self.settings.store_retry_delay,
            what=f"save of run {run.id}",
        )

    async def _save_async(self, run: WorkflowRun) -> None:
        await retry_store_async(
            lambda: self.store.runs.save(run),
            self.settings.store_retry_attempts,
            self.settings.store_retry_delay,
            what=f"save of run {run.id}",
        )

    def _load(self, run_id: str) -> WorkflowRun:
        active = self._active.get(run_id)
        return active if active is not None else self.store.runs.get(run_id)

    # definitions ---------------------------------------------------------
    def register_workflow(self, workflow: Workflow) -> Workflow:
        """Validate the graph of *workflow* and persist the definition."""
        build_graph(workflow.steps)
        for param in workflow.parameters:
            if param.has_default and not param.type.accepts(param.default):
                raise ParameterValidationError(
                    f"default of parameter '{param.name}' is not of type {param.type.value}"
                )
        retry_store(
            lambda: self.store.workflows.save(workflow),
            self.settings.store_retry_attempts,
            self.settings.store_retry_delay,
            what=f"save of workflow {workflow.id}",
        )
        logger.info(f"registered workflow {workflow.id} version {workflow.version}")
        return workflow

    def get_workflow(self, workflow_id: str, version: Optional[str] = None) -> Workflow:
        return self.store.workflows.get(workflow_id, version)

    # submission ----------------------------------------------------------
    @staticmethod
    def validate_parameters(workflow: Workflow, parameters: Optional[Mapping[str, Any]]) -> Dict[str, Any]:
        """Return *parameters* completed with defaults.

        Undeclared parameters are passed through unchanged.
        """
        values = dict(parameters or {})
        problems: List[str] = []
        for param in workflow.parameters:
            if param.name not in values:
                if param.has_default:
                    values[param.name] = param.default
                elif param.required:
                    problems.append(f"missing required parameter '{param.name}'")
                continue
            if not param.type.accepts(values[param.name]):
                problems.append(f"parameter '{param.name}' is not of type {param.type.value}")
        if problems:
            raise ParameterValidationError("; ".join(problems))
        return values

    def submit(
        self,
        workflow_id: str,
        parameters: Optional[Mapping[str, Any]] = None,
        user: str = "system",
        version: Optional[str] = None,
        *,
        parent_run_id: Optional[str] = None,
        enqueue: bool = True,
    ) -> WorkflowRun:
        """Create a pending run of *workflow_id* and queue it for execution."""
        workflow = self.store.workflows.get(workflow_id, version)
        build_graph(workflow.steps)
        values = self.validate_parameters(workflow, parameters)
        run = WorkflowRun(
            workflow_id=workflow.id,
            workflow_version=workflow.version,
            parameters=values,
            steps={step.id: StepState(step_id=step.id) for step in workflow.steps},
            created_by=user,
            parent_run_id=parent_run_id,
        )
        self._save(run)
        if enqueue:
            retry_store(
                lambda: self.store.queue.enqueue(run.id),
                self.settings.store_retry_attempts,
                self.settings.store_retry_delay,
                what=f"enqueue of run {run.id}",
            )
        logger.info(f"submitted run {run.id} of {workflow.id} {workflow.version} by {user}")
        self._publish(EventKind.RUN_SUBMITTED, run, workflow_id=workflow.id, version=workflow.version)
        return run.snapshot()

    # execution -----------------------------------------------------------
    async def execute(self, run_id: str, cancel_token: Optional[CancellationToken] = None) -> WorkflowRun:
        """Execute a pending run until it completes, fails, is paused or cancelled."""
        if run_id in self._active:
            raise ConcurrentExecutionError(f"run {run_id} is already executing")
        run = self.store.runs.get(run_id)
        if run.status != RunStatus.PENDING:
            raise InvalidRunStateError(f"run {run_id} is {run.status.value}, only pending runs can be executed")
        workflow = self.store.workflows.get(run.workflow_id, run.workflow_version)
        self._active[run.id] = run
        run.status = RunStatus.RUNNING
        run.started_at = utcnow()
        self._publish(EventKind.RUN_STARTED, run)
        return await self._drive(run, workflow, 0, cancel_token)

    async def run_workflow(
        self,
        workflow_id: str,
        parameters: Optional[Mapping[str, Any]] = None,
        user: str = "system",
        version: Optional[str] = None,
    ) -> WorkflowRun:
        """Submit and execute a run in one call."""
        run = self.submit(workflow_id, parameters, user, version, enqueue=False)
        return await self.execute(run.id)

    async def run_child(
        self,
        workflow_id: str,
        parameters: Mapping[str, Any],
        *,
        parent_run_id: str,
        version: Optional[str] = None,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WorkflowRun:
        """Run a sub-workflow to completion on behalf of *parent_run_id*."""
        depth = self.depth(parent_run_id)
        if depth > self.settings.max_subworkflow_depth:
            raise HandlerError(
                f"sub-workflow depth {depth} exceeds the limit of {self.settings.max_subworkflow_depth}",
                recoverable=False,
            )
        parent = self._load(parent_run_id)
        run = self.submit(workflow_id, parameters, parent.created_by, version, parent_run_id=parent_run_id, enqueue=False)
        token = cancel_token.child() if cancel_token is not None else None
        return await self.execute(run.id, token)

    def depth(self, run_id: str) -> int:
        """Number of runs in the parent chain ending at *run_id*, itself included."""
        depth = 0
        current: Optional[str] = run_id
        while current is not None:
            depth += 1
            current = self._load(current).parent_run_id
        return depth

    async def _drive(
        self,
        run: WorkflowRun,
        workflow: Workflow,
        wave: int,
        cancel_token: Optional[CancellationToken] = None,
    ) -> WorkflowRun:
        graph = build_graph(workflow.steps)
        token = cancel_token or CancellationToken()
        self._active[run.id] = run
        self._tokens[run.id] = token
        log = run_logger(run.id)
        try:
            await self._save_async(run)
            while run.status == RunStatus.RUNNING:
                if all(state.is_terminal for state in run.steps.values()):
                    break
                ready = graph.ready(run.steps)
                if not ready:
                    blocked = sorted(s.step_id for s in run.steps.values() if not s.is_terminal)
                    self._fail_run(run, None, f"no runnable steps left, blocked: {', '.join(blocked)}")
                    break
                batch = ready[: self.settings.max_concurrent_steps]
                wave += 1
                log.debug(f"wave {wave} of run {run.id}: {', '.join(batch)}")
                await self._run_wave(run, workflow, batch, token)
                await self.checkpoints.save(run, wave)
                await self._save_async(run)
            self._finalize(run)
            if run.status == RunStatus.PAUSED:
                await self.checkpoints.save(run, wave)
            await self._save_async(run)
            log.info(f"run {run.id} of {run.workflow_id} is {run.status.value}")
            return run.snapshot()
        finally:
            self._active.pop(run.id, None)
            self._tokens.pop(run.id, None)

    async def _run_wave(
        self,
        run: WorkflowRun,
        workflow: Workflow,
        batch: List[str],
        token: CancellationToken,
    ) -> None:
        for step_id in batch:
            state = run.steps[step_id]
            state.status = StepStatus.RUNNING
            state.started_at = utcnow()
        steps = [workflow.step(step_id) for step_id in batch]
        results: List[StepState] = await self.engine.run_async_steps(
            [
                lambda s=s: self.executor.execute(s, run, workflow, cancel_token=token, orchestrator=self)
                for s in steps
            ]
        )
        for state in results:
            if run.steps[state.step_id].status == StepStatus.CANCELLED:
                # cancelled while the wave was in flight
                continue
            run.steps[state.step_id] = state
            if state.status == StepStatus.COMPLETED:
                self._collect_outputs(run, workflow, state)
            elif state.status == StepStatus.FAILED and not state.tolerated and run.status != RunStatus.FAILED:
                self._fail_run(run, state.step_id, state.error or "step failed")
            elif state.status == StepStatus.FAILED:
                logger.warning(f"tolerated failure of step {state.step_id} in run {run.id}: {state.error}")

    @staticmethod
    def _collect_outputs(run: WorkflowRun, workflow: Workflow, state: StepState) -> None:
        declared = [o.name for o in workflow.step(state.step_id).outputs]
        names = declared or list(state.outputs)
        for name in names:
            key = f"{state.step_id}.{name}"
            if key not in run.outputs and name in state.outputs:
                run.outputs[key] = state.outputs[name]

    def _fail_run(self, run: WorkflowRun, step_id: Optional[str], error: str) -> None:
        """Mark *run* failed; steps that never started are cancelled."""
        if run.status.is_terminal:
            return
        run.status = RunStatus.FAILED
        run.failed_step = step_id
        run.error = error
        for state in run.steps_with(StepStatus.PENDING):
            state.status = StepStatus.CANCELLED
            state.ended_at = utcnow()
            state.error = "not started, run failed"

    def _finalize(self, run: WorkflowRun) -> None:
        if run.status == RunStatus.RUNNING:
            if all(state.satisfies_dependents for state in run.steps.values()):
                run.status = RunStatus.COMPLETED
            else:
                failed = next((s for s in run.steps.values() if not s.satisfies_dependents), None)
                self._fail_run(run, failed.step_id if failed else None, failed.error if failed else "run failed")
        if run.status in (RunStatus.COMPLETED, RunStatus.FAILED):
            run.ended_at = run.ended_at or utcnow()
            if run.status == RunStatus.COMPLETED:
                self._publish(EventKind.RUN_COMPLETED, run, outputs=list(run.outputs))
            else:
                self._publish(EventKind.RUN_FAILED, run, failed_step=run.failed_step, error=run.error)

    # control -------------------------------------------------------------
    def pause(self, run_id: str) -> WorkflowRun:
        """Stop dispatching new waves; in-flight steps finish and are checkpointed."""
        run = self._load(run_id)
        if run.status != RunStatus.RUNNING:
            raise InvalidRunStateError(f"run {run_id} is {run.status.value}, only running runs can be paused")
        run.status = RunStatus.PAUSED
        if run_id not in self._active:
            self._save(run)
        logger.info(f"pause requested for run {run_id}")
        self._publish(EventKind.RUN_PAUSED, run)
        return run.snapshot()

    async def resume(self, run_id: str) -> WorkflowRun:
        """Continue a paused run from its latest checkpoint."""
        if run_id in self._active:
            raise ConcurrentExecutionError(f"run {run_id} is still finishing its current wave")
        stored = self.store.runs.get(run_id)
        if stored.status != RunStatus.PAUSED:
            raise InvalidRunStateError(f"run {run_id} is {stored.status.value}, only paused runs can be resumed")
        return await self._reenter(stored, EventKind.RUN_RESUMED)

    async def _reenter(self, stored: WorkflowRun, kind: EventKind) -> WorkflowRun:
        checkpoint = self.checkpoints.load(stored.id)
        if checkpoint is not None:
            run, wave = reset_interrupted(checkpoint.run), checkpoint.wave
        else:
            run, wave = reset_interrupted(stored), 0
        workflow = self.store.workflows.get(run.workflow_id, run.workflow_version)
        self._active[run.id] = run
        run.status = RunStatus.RUNNING
        run.started_at = run.started_at or utcnow()
        logger.info(f"re-entering run {run.id} at wave {wave}")
        self._publish(kind, run, wave=wave)
        return await self._drive(run, workflow, wave)

    def cancel(self, run_id: str) -> WorkflowRun:
        """Cancel a run that has not reached a terminal status."""
        run = self._load(run_id)
        if run.is_terminal:
            raise InvalidRunStateError(f"run {run_id} is already {run.status.value}")
        token = self._tokens.get(run_id)
        if token is not None:
            token.cancel()
        now = utcnow()
        for state in run.steps_with(StepStatus.PENDING, StepStatus.RUNNING):
            state.status = StepStatus.CANCELLED
            state.ended_at = now
            state.error = "run was cancelled"
        run.status = RunStatus.CANCELLED
        run.ended_at = now
        if run_id not in self._active:
            self._save(run)
        logger.info(f"cancelled run {run_id}")
        self._publish(EventKind.RUN_CANCELLED, run)
        return run.snapshot()

    async def recover(self) -> List[WorkflowRun]:
        """Re-enter every ``running`` run that no executor in this process owns.

        Interrupted sub-workflow runs are cancelled; their parent step runs
        them again once the parent is recovered.
        """
        recovered: List[WorkflowRun] = []
        for stored in self.store.runs.list(status=RunStatus.RUNNING):
            if stored.id in self._active:
                continue
            if stored.parent_run_id is not None:
                self.cancel(stored.id)
                continue
            logger.warning(f"recovering interrupted run {stored.id}")
            recovered.append(await self._reenter(stored, EventKind.RUN_RESUMED))
        return recovered

    # queries -------------------------------------------------------------
    def get_run(self, run_id: str) -> WorkflowRun:
        return self._load(run_id).snapshot()

    def list_runs(self, workflow_id: Optional[str] = None, status: Optional[RunStatus] = None) -> List[WorkflowRun]:
        return self.store.runs.list(workflow_id, status)

    def is_active(self, run_id: str) -> bool:
        return run_id in self._active
