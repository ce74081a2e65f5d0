"""DAG workflow orchestration with checkpointed, wave-by-wave execution."""

from .checkpoint import CheckpointManager
from .config import WavelineSettings, get_waveline_config
from .errors import (
    ConcurrentExecutionError,
    CycleError,
    DuplicateStepError,
    ExpressionError,
    GraphError,
    HandlerError,
    HandlerNotFoundError,
    InvalidRunStateError,
    MissingOutputError,
    MissingParameterError,
    OutputContractError,
    ParameterValidationError,
    ResolutionError,
    RunNotFoundError,
    StepCancelledError,
    StepTimeoutError,
    StoreError,
    UnknownDependencyError,
    WavelineError,
    WorkflowNotFoundError,
    WorkflowVersionConflictError,
)
from .events import (
    EventKind,
    FanoutEventPublisher,
    FileEventPublisher,
    MemoryEventPublisher,
    NullEventPublisher,
    WorkflowEvent,
)
from .executor import StepExecutor
from .expressions import CallableEvaluator, ExpressionEvaluator, LookupEvaluator
from .graph import StepGraph, build_graph
from .handlers import CancellationToken, FunctionHandler, HandlerRegistry, StepContext, StepHandler, default_registry
from .models import (
    Checkpoint,
    Condition,
    DataType,
    ExpressionRef,
    LiteralRef,
    OnFalse,
    OutputSpec,
    ParameterRef,
    RetryConfig,
    RunStatus,
    StepConfig,
    StepOutputRef,
    StepState,
    StepStatus,
    StepType,
    Workflow,
    WorkflowParameter,
    WorkflowRun,
    WorkflowStep,
)
from .orchestrator import Orchestrator
from .resolver import InputResolver
from .storage import StateStore
from .worker import PoolEngine
from .worker.runner import RunWorker

__all__ = [
    "CallableEvaluator",
    "CancellationToken",
    "Checkpoint",
    "CheckpointManager",
    "ConcurrentExecutionError",
    "Condition",
    "CycleError",
    "DataType",
    "DuplicateStepError",
    "EventKind",
    "ExpressionError",
    "ExpressionEvaluator",
    "ExpressionRef",
    "FanoutEventPublisher",
    "FileEventPublisher",
    "FunctionHandler",
    "GraphError",
    "HandlerError",
    "HandlerNotFoundError",
    "HandlerRegistry",
    "InputResolver",
    "InvalidRunStateError",
    "LiteralRef",
    "LookupEvaluator",
    "MemoryEventPublisher",
    "MissingOutputError",
    "MissingParameterError",
    "NullEventPublisher",
    "OnFalse",
    "Orchestrator",
    "OutputContractError",
    "OutputSpec",
    "ParameterRef",
    "ParameterValidationError",
    "PoolEngine",
    "ResolutionError",
    "RetryConfig",
    "RunNotFoundError",
    "RunStatus",
    "RunWorker",
    "StateStore",
    "StepCancelledError",
    "StepConfig",
    "StepContext",
    "StepExecutor",
    "StepGraph",
    "StepHandler",
    "StepOutputRef",
    "StepState",
    "StepStatus",
    "StepTimeoutError",
    "StepType",
    "StoreError",
    "UnknownDependencyError",
    "WavelineError",
    "WavelineSettings",
    "Workflow",
    "WorkflowEvent",
    "WorkflowNotFoundError",
    "WorkflowParameter",
    "WorkflowRun",
    "WorkflowStep",
    "WorkflowVersionConflictError",
    "build_graph",
    "default_registry",
    "get_waveline_config",
]
