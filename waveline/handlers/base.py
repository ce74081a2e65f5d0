"""Step handler interface, invocation context and registry."""

from __future__ import annotations

import asyncio
import inspect
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Mapping, Optional, Union

from ..errors import HandlerNotFoundError, StepCancelledError
from ..events import EventKind, WorkflowEvent, publish_safely
from ..models import StepConfig, StepType, WorkflowStep
from ..utils.logging import get_logger, run_logger

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from ..executor import StepExecutor
    from ..interfaces import EventPublisher
    from ..models import Workflow, WorkflowRun
    from ..orchestrator import Orchestrator

logger = get_logger()


async def run_in_thread(func: Callable[..., Any], /, *args: Any, **kwargs: Any) -> Any:
    """Run *func* in a worker thread.

    A thread cannot be interrupted, so when the awaiting task is cancelled
    (for instance by a step timeout) the cancellation is only propagated once
    the call has returned.  A retry therefore never overlaps the abandoned
    attempt.
    """
    task = asyncio.ensure_future(asyncio.to_thread(func, *args, **kwargs))
    try:
        return await asyncio.shield(task)
    except asyncio.CancelledError:
        await asyncio.wait({task})
        if not task.cancelled() and task.exception() is not None:
            logger.debug(f"abandoned thread call raised {task.exception()!r}")
        raise


class CancellationToken:
    """Cooperative cancellation flag shared by every step of a run."""

    def __init__(self) -> None:
        self._cancelled = False
        self._event: Optional[asyncio.Event] = None
        self._children: List["CancellationToken"] = []

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    def cancel(self) -> None:
        self._cancelled = True
        if self._event is not None:
            self._event.set()
        for child in self._children:
            child.cancel()

    def child(self) -> "CancellationToken":
        """Token cancelled together with this one, e.g. for a sub-workflow run."""
        token = CancellationToken()
        self._children.append(token)
        if self._cancelled:
            token.cancel()
        return token

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise StepCancelledError("run was cancelled")

    async def sleep(self, seconds: float) -> bool:
        """Sleep up to *seconds*; return ``True`` when woken by cancellation."""
        if self._cancelled:
            return True
        if self._event is None:
            self._event = asyncio.Event()
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return False
        return True


@dataclass
class StepContext:
    """Information handed to a handler alongside its inputs."""

    run_id: str
    step_id: str
    attempt: int
    cancel_token: CancellationToken
    publisher: Optional["EventPublisher"] = None
    run: Optional["WorkflowRun"] = None
    workflow: Optional["Workflow"] = None
    executor: Optional["StepExecutor"] = None
    orchestrator: Optional["Orchestrator"] = None

    @property
    def cancelled(self) -> bool:
        return self.cancel_token.cancelled

    @property
    def log_ref(self) -> str:
        return f"{self.run_id}:{self.step_id}"

    @property
    def logger(self):
        return run_logger(self.run_id, self.step_id)

    def report_progress(self, progress: float, message: str = "") -> None:
        publish_safely(
            self.publisher,
            WorkflowEvent(
                EventKind.STEP_PROGRESS,
                self.run_id,
                self.step_id,
                {"progress": progress, "message": message, "attempt": self.attempt},
            ),
        )


class StepHandler(ABC):
    """Executes steps of one type.

    ``execute`` may be a coroutine function or a plain function; plain
    functions run in a worker thread.  Returned mappings become the step
    outputs.  Raise :class:`~waveline.errors.HandlerError` with
    ``recoverable=False`` to stop retries; any other exception is retried
    according to the step's retry configuration.
    """

    @abstractmethod
    def execute(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Any:
        """Run a step and return its outputs."""

    async def invoke(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Any:
        if inspect.iscoroutinefunction(self.execute):
            return await self.execute(config, inputs, context)
        return await run_in_thread(self.execute, config, inputs, context)


class FunctionHandler(StepHandler):
    """Adapt a plain callable taking the resolved inputs as keyword arguments.

    The callable may additionally accept ``params`` (the step's handler
    parameters), ``config`` or ``context``.  Non-mapping return values are
    exposed as a single ``result`` output.
    """

    _EXTRAS = ("params", "config", "context")

    def __init__(self, func: Callable[..., Any]) -> None:
        self.func = func
        sig = inspect.signature(func)
        self._var_kw = any(p.kind is inspect.Parameter.VAR_KEYWORD for p in sig.parameters.values())
        self._accepts = set(sig.parameters)

    def _kwargs(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Dict[str, Any]:
        extras = {"params": dict(config.params), "config": config, "context": context}
        kwargs = dict(inputs)
        for name in self._EXTRAS:
            if name in self._accepts and name not in kwargs:
                kwargs[name] = extras[name]
        if not self._var_kw:
            kwargs = {k: v for k, v in kwargs.items() if k in self._accepts}
        return kwargs

    @staticmethod
    def _outputs(result: Any) -> Dict[str, Any]:
        if result is None:
            return {}
        if isinstance(result, Mapping):
            return dict(result)
        return {"result": result}

    def execute(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Any:
        return self._outputs(self.func(**self._kwargs(config, inputs, context)))

    async def invoke(self, config: StepConfig, inputs: Dict[str, Any], context: StepContext) -> Any:
        kwargs = self._kwargs(config, inputs, context)
        if inspect.iscoroutinefunction(self.func):
            return self._outputs(await self.func(**kwargs))
        return self._outputs(await run_in_thread(self.func, **kwargs))


HandlerLike = Union[StepHandler, Callable[..., Any]]


def _key(step_type: Union[StepType, str], name: Optional[str] = None) -> str:
    value = step_type.value if isinstance(step_type, StepType) else str(step_type)
    if value == StepType.CUSTOM.value:
        if not name:
            raise ValueError("custom handlers must be registered with a name")
        return f"custom:{name}"
    return value


class HandlerRegistry:
    """Map step type tags (and custom handler names) to handlers."""

    def __init__(self) -> None:
        self._handlers: Dict[str, StepHandler] = {}

    def register(
        self,
        step_type: Union[StepType, str],
        handler: HandlerLike,
        name: Optional[str] = None,
    ) -> None:
        if not isinstance(handler, StepHandler):
            handler = FunctionHandler(handler)
        key = _key(step_type, name)
        if key in self._handlers:
            logger.debug(f"replacing handler for '{key}'")
        self._handlers[key] = handler

    def register_custom(self, name: str, handler: HandlerLike) -> None:
        self.register(StepType.CUSTOM, handler, name=name)

    def handler(self, step_type: Union[StepType, str], name: Optional[str] = None) -> Callable[[Callable[..., Any]], Callable[..., Any]]:
        """Decorator form of :meth:`register`."""

        def decorator(func: Callable[..., Any]) -> Callable[..., Any]:
            self.register(step_type, func, name=name)
            return func

        return decorator

    def get(self, step: WorkflowStep) -> StepHandler:
        try:
            return self._handlers[step.handler_key]
        except KeyError:
            raise HandlerNotFoundError(
                f"no handler registered for step '{step.id}' of type '{step.handler_key}'"
            ) from None

    def __contains__(self, key: object) -> bool:
        return key in self._handlers
