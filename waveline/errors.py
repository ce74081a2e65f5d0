"""Exception hierarchy raised by waveline."""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class WavelineError(Exception):
    """Base class for all waveline errors."""


# structural ----------------------------------------------------------------
class GraphError(WavelineError):
    """Invalid step graph found."""

    def __init__(self, msg: str, step_id: Optional[str] = None, **kwargs: Any) -> None:
        self.msg = msg
        self.step_id = step_id
        self.params: Dict[str, Any] = kwargs
        super().__init__(msg)


class DuplicateStepError(GraphError):
    """Two steps share the same id."""


class UnknownDependencyError(GraphError):
    """A step depends on an id that is not part of the workflow."""


class CycleError(GraphError):
    """The dependency graph contains a cycle."""

    def __init__(self, step_id: str, path: List[str]) -> None:
        self.path = path
        cycle = " -> ".join([*path, step_id])
        super().__init__(f"dependency cycle detected at step '{step_id}': {cycle}", step_id=step_id)


# validation ----------------------------------------------------------------
class ParameterValidationError(WavelineError):
    """Submitted parameters do not satisfy the workflow definition."""


class WorkflowVersionConflictError(WavelineError):
    """A workflow version was registered twice with different content."""


# lookups -------------------------------------------------------------------
class WorkflowNotFoundError(WavelineError):
    """Workflow not found."""


class RunNotFoundError(WavelineError):
    """Workflow run not found."""


class HandlerNotFoundError(WavelineError):
    """No handler registered for a step type."""

    recoverable = False


# resolution ----------------------------------------------------------------
class ResolutionError(WavelineError):
    """A step input could not be resolved."""

    recoverable = False


class MissingParameterError(ResolutionError):
    """Referenced run parameter is absent."""


class MissingOutputError(ResolutionError):
    """Referenced step output is absent or its producer did not complete."""


class ExpressionError(ResolutionError):
    """The expression evaluator failed."""


# handlers ------------------------------------------------------------------
class HandlerError(WavelineError):
    """Failure reported by a step handler.

    ``recoverable`` is consulted by the retry policy: a non-recoverable error
    ends the step on the current attempt.
    """

    def __init__(self, msg: str, recoverable: bool = True) -> None:
        self.recoverable = recoverable
        super().__init__(msg)


class StepTimeoutError(HandlerError):
    """A step attempt exceeded its timeout."""

    def __init__(self, seconds: float) -> None:
        self.seconds = seconds
        super().__init__(f"step exceeded {seconds}s", recoverable=True)


class OutputContractError(HandlerError):
    """Handler outputs do not match the declared outputs."""

    def __init__(self, msg: str) -> None:
        super().__init__(msg, recoverable=False)


# lifecycle -----------------------------------------------------------------
class InvalidRunStateError(WavelineError):
    """Operation not permitted in the run's current status."""


class ConcurrentExecutionError(WavelineError):
    """The run is already being executed by this orchestrator."""


class StepCancelledError(WavelineError):
    """Raised inside a handler once its run has been cancelled."""

    recoverable = False


# infrastructure ------------------------------------------------------------
class StoreError(WavelineError):
    """Persistence backend failure."""


def is_recoverable(exc: BaseException) -> bool:
    """Return whether *exc* may be retried by a step retry policy."""
    return bool(getattr(exc, "recoverable", True))
