# -*- coding: utf-8 -*-
"""Policy interfaces for step execution.

Policies let a step customise how its handler is invoked and what happens
when an attempt fails, without hardcoding that logic in the executor.  The
executor wraps the handler call with :py:meth:`StepPolicy.execute_async` of
every policy and consults :py:meth:`StepPolicy.on_failure` after an attempt
raised.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from enum import Enum
from typing import TYPE_CHECKING, Any, Awaitable, Callable

if TYPE_CHECKING:  # pragma: no cover - for type hints only
    from ..models import WorkflowStep


class Policy(abc.ABC):
    """Base class for all policies."""

    name = "policy"


class FailureAction(str, Enum):
    """Decision returned when a step attempt fails."""

    RETRY = "retry"
    FAIL = "fail"


@dataclass
class FailureDecision:
    """Outcome from :meth:`StepPolicy.on_failure`."""

    action: FailureAction
    delay: float = 0.0


class StepPolicy(Policy):
    """Policy applied to individual steps."""

    async def execute_async(self, step: "WorkflowStep", call: Callable[[], Awaitable[Any]]) -> Any:
        """Run ``call`` applying this policy."""
        return await call()

    def on_start(self, step: "WorkflowStep", attempt: int) -> None:
        pass

    def on_success(self, step: "WorkflowStep", result: Any) -> None:
        pass

    def on_failure(self, step: "WorkflowStep", exc: Exception, attempt: int) -> FailureDecision | None:
        return None
