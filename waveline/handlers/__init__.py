from .base import CancellationToken, FunctionHandler, HandlerRegistry, StepContext, StepHandler
from .builtin import (
    ConditionalHandler,
    LoopHandler,
    ParallelHandler,
    SubWorkflowHandler,
    default_registry,
    register_builtin_handlers,
)

__all__ = [
    "CancellationToken",
    "ConditionalHandler",
    "FunctionHandler",
    "HandlerRegistry",
    "LoopHandler",
    "ParallelHandler",
    "StepContext",
    "StepHandler",
    "SubWorkflowHandler",
    "default_registry",
    "register_builtin_handlers",
]
