"""Pluggable expression evaluation for conditions and expression inputs."""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping

from .errors import ExpressionError

_LITERALS = {"true": True, "false": False, "none": None, "null": None}


class ExpressionEvaluator(ABC):
    """Interface used by conditions and :class:`~waveline.models.ExpressionRef` inputs."""

    @abstractmethod
    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        """Return the value of *expression* within *context*."""


class LookupEvaluator(ExpressionEvaluator):
    """Resolve dotted paths against the evaluation context.

    ``steps.train.accuracy`` reads the ``accuracy`` output of step ``train``
    and ``params.mode`` a run parameter.  A leading ``not`` negates the
    result and ``true``/``false``/``none`` are understood as literals.
    Anything richer belongs in a custom evaluator.
    """

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        text = expression.strip()
        if text.startswith("not "):
            return not self.evaluate(text[4:], context)
        if text.lower() in _LITERALS:
            return _LITERALS[text.lower()]
        value: Any = context
        for part in text.split("."):
            if isinstance(value, Mapping) and part in value:
                value = value[part]
            elif isinstance(value, (list, tuple)) and part.isdigit() and int(part) < len(value):
                value = value[int(part)]
            else:
                raise ExpressionError(f"cannot resolve '{part}' in expression '{expression}'")
        return value


class CallableEvaluator(ExpressionEvaluator):
    """Adapt a plain ``func(expression, context)`` callable."""

    def __init__(self, func: Callable[[str, Mapping[str, Any]], Any]) -> None:
        self.func = func

    def evaluate(self, expression: str, context: Mapping[str, Any]) -> Any:
        try:
            return self.func(expression, context)
        except ExpressionError:
            raise
        except Exception as exc:
            raise ExpressionError(f"expression '{expression}' failed: {exc}") from exc
