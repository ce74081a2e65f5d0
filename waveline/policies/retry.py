from __future__ import annotations

from typing import TYPE_CHECKING

from ..errors import is_recoverable
from ..models import RetryConfig
from .base import FailureAction, FailureDecision, StepPolicy

if TYPE_CHECKING:  # pragma: no cover - for type hints
    from ..models import WorkflowStep


class RetryPolicy(StepPolicy):
    """Retry recoverable failures with exponential backoff."""

    name = "retry"

    def __init__(self, max_attempts: int = 1, delay: float = 0.0, backoff_multiplier: float = 1.0) -> None:
        self.max_attempts = max(1, max_attempts)
        self.delay = delay
        self.backoff_multiplier = backoff_multiplier

    @classmethod
    def from_config(cls, cfg: RetryConfig) -> "RetryPolicy":
        return cls(cfg.max_attempts, cfg.delay, cfg.backoff_multiplier)

    def backoff(self, attempt: int) -> float:
        return self.delay * self.backoff_multiplier ** (attempt - 1)

    def on_failure(self, step: "WorkflowStep", exc: Exception, attempt: int) -> FailureDecision:
        if is_recoverable(exc) and attempt < self.max_attempts:
            return FailureDecision(FailureAction.RETRY, self.backoff(attempt))
        return FailureDecision(FailureAction.FAIL)
