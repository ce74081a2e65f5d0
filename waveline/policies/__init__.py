"""Policy interfaces and built-in implementations."""

from .base import FailureAction, FailureDecision, Policy, StepPolicy
from .retry import RetryPolicy
from .timeout import StepTimeoutPolicy

__all__ = [
    "FailureAction",
    "FailureDecision",
    "Policy",
    "StepPolicy",
    "RetryPolicy",
    "StepTimeoutPolicy",
]
