# -*- coding: utf-8 -*-
"""Workflow definitions, run state and checkpoints.

Definitions (:class:`Workflow`, :class:`WorkflowStep`) are immutable once
registered.  Runs (:class:`WorkflowRun`, :class:`StepState`) are mutated only
by the orchestrator and serialize losslessly to JSON so that a snapshot can be
stored as a :class:`Checkpoint`.
"""

from __future__ import annotations

import re
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator
from typeguard import TypeCheckError, check_type

_SEMVER = re.compile(r"^(\d+)\.(\d+)\.(\d+)$")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid.uuid4().hex


class RunStatus(str, Enum):
    """Lifecycle status of a :class:`WorkflowRun`."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_RUN_STATUSES


class StepStatus(str, Enum):
    """Execution status of a single step within a run."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STEP_STATUSES


TERMINAL_RUN_STATUSES = frozenset({RunStatus.COMPLETED, RunStatus.FAILED, RunStatus.CANCELLED})
TERMINAL_STEP_STATUSES = frozenset(
    {StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED, StepStatus.CANCELLED}
)


class StepType(str, Enum):
    """Tag selecting the handler that executes a step."""

    EXPERIMENT = "experiment"
    BENCHMARK = "benchmark"
    TRANSFORM = "transform"
    CONDITIONAL = "conditional"
    PARALLEL = "parallel"
    LOOP = "loop"
    SUB_WORKFLOW = "sub_workflow"
    CUSTOM = "custom"


class OnFalse(str, Enum):
    """What happens to a step whose condition evaluates false."""

    SKIP = "skip"
    FAIL = "fail"


class DataType(str, Enum):
    """Declared type of a workflow parameter or step output."""

    STRING = "string"
    INTEGER = "integer"
    NUMBER = "number"
    BOOLEAN = "boolean"
    OBJECT = "object"
    ARRAY = "array"
    ANY = "any"

    @property
    def python_type(self) -> Any:
        return _PYTHON_TYPES[self]

    def accepts(self, value: Any) -> bool:
        """Return ``True`` when *value* conforms to this type."""
        if self is DataType.ANY:
            return True
        if self in (DataType.INTEGER, DataType.NUMBER) and isinstance(value, bool):
            return False
        try:
            check_type(value, self.python_type)
        except TypeCheckError:
            return False
        return True


_PYTHON_TYPES: Dict[DataType, Any] = {
    DataType.STRING: str,
    DataType.INTEGER: int,
    DataType.NUMBER: Union[int, float],
    DataType.BOOLEAN: bool,
    DataType.OBJECT: Dict[str, Any],
    DataType.ARRAY: List[Any],
    DataType.ANY: Any,
}


# input references ----------------------------------------------------------
class ParameterRef(BaseModel):
    """Read a submitted run parameter."""

    kind: Literal["parameter"] = "parameter"
    name: str


class StepOutputRef(BaseModel):
    """Read an output produced by a completed step."""

    kind: Literal["step_output"] = "step_output"
    step_id: str
    output_name: str


class LiteralRef(BaseModel):
    """A constant value."""

    kind: Literal["literal"] = "literal"
    value: Any = None


class ExpressionRef(BaseModel):
    """Delegate to the configured expression evaluator."""

    kind: Literal["expression"] = "expression"
    text: str


InputRef = Annotated[
    Union[ParameterRef, StepOutputRef, LiteralRef, ExpressionRef],
    Field(discriminator="kind"),
]


# definitions ---------------------------------------------------------------
class WorkflowParameter(BaseModel):
    name: str
    type: DataType = DataType.ANY
    required: bool = False
    default: Any = None
    description: str = ""

    @property
    def has_default(self) -> bool:
        return self.default is not None


class StepConfig(BaseModel):
    """Handler parameters, typed input references and resource hints."""

    params: Dict[str, Any] = Field(default_factory=dict)
    inputs: Dict[str, InputRef] = Field(default_factory=dict)
    resources: Dict[str, Any] = Field(default_factory=dict)


class Condition(BaseModel):
    expression: str
    on_false: OnFalse = OnFalse.SKIP


class RetryConfig(BaseModel):
    max_attempts: int = Field(1, ge=1)
    delay: float = Field(0.0, ge=0)
    backoff_multiplier: float = Field(1.0, gt=0)


class OutputSpec(BaseModel):
    name: str
    type: DataType = DataType.ANY


class WorkflowStep(BaseModel):
    """A node of the workflow graph."""

    id: str
    type: StepType = StepType.TRANSFORM
    handler: Optional[str] = None
    config: StepConfig = Field(default_factory=StepConfig)
    dependencies: List[str] = Field(default_factory=list)
    condition: Optional[Condition] = None
    retry: Optional[RetryConfig] = None
    timeout: Optional[float] = Field(None, gt=0)
    outputs: List[OutputSpec] = Field(default_factory=list)
    best_effort: bool = False

    @model_validator(mode="after")
    def _custom_needs_handler(self) -> "WorkflowStep":
        if self.type == StepType.CUSTOM and not self.handler:
            raise ValueError(f"custom step '{self.id}' must name its handler")
        return self

    @property
    def handler_key(self) -> str:
        """Registry key for this step, ``custom:<name>`` for custom steps."""
        if self.type == StepType.CUSTOM:
            return f"custom:{self.handler}"
        return self.type.value


class Workflow(BaseModel):
    """Immutable, versioned workflow definition."""

    model_config = ConfigDict(frozen=True)

    id: str
    name: str
    version: str = "1.0.0"
    steps: List[WorkflowStep]
    parameters: List[WorkflowParameter] = Field(default_factory=list)
    triggers: List[Dict[str, Any]] = Field(default_factory=list)
    default_timeout: Optional[float] = Field(None, gt=0)
    default_retry: Optional[RetryConfig] = None
    created_by: str = "system"
    created_at: datetime = Field(default_factory=utcnow)

    @field_validator("version")
    @classmethod
    def _semantic_version(cls, value: str) -> str:
        if not _SEMVER.match(value):
            raise ValueError(f"version '{value}' is not MAJOR.MINOR.PATCH")
        return value

    @property
    def version_key(self) -> Tuple[int, int, int]:
        major, minor, patch = _SEMVER.match(self.version).groups()  # type: ignore[union-attr]
        return int(major), int(minor), int(patch)

    def step(self, step_id: str) -> WorkflowStep:
        for step in self.steps:
            if step.id == step_id:
                return step
        raise KeyError(step_id)

    def parameter(self, name: str) -> Optional[WorkflowParameter]:
        return next((p for p in self.parameters if p.name == name), None)

    def same_definition(self, other: "Workflow") -> bool:
        """Compare content, ignoring authoring metadata."""
        exclude = {"created_at", "created_by"}
        return self.model_dump(exclude=exclude) == other.model_dump(exclude=exclude)


# runtime state -------------------------------------------------------------
class StepState(BaseModel):
    """Audit record of one step within a run."""

    step_id: str
    status: StepStatus = StepStatus.PENDING
    attempt: int = 0
    inputs: Dict[str, Any] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    error: Optional[str] = None
    log_ref: Optional[str] = None
    tolerated: bool = False

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    @property
    def satisfies_dependents(self) -> bool:
        """Whether steps depending on this one may start."""
        if self.status in (StepStatus.COMPLETED, StepStatus.SKIPPED):
            return True
        return self.status == StepStatus.FAILED and self.tolerated


class WorkflowRun(BaseModel):
    """A single execution of a pinned workflow version."""

    id: str = Field(default_factory=new_id)
    workflow_id: str
    workflow_version: str
    status: RunStatus = RunStatus.PENDING
    parameters: Dict[str, Any] = Field(default_factory=dict)
    steps: Dict[str, StepState] = Field(default_factory=dict)
    outputs: Dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utcnow)
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None
    created_by: str = "system"
    error: Optional[str] = None
    failed_step: Optional[str] = None
    parent_run_id: Optional[str] = None

    @property
    def is_terminal(self) -> bool:
        return self.status.is_terminal

    def snapshot(self) -> "WorkflowRun":
        return self.model_copy(deep=True)

    def steps_with(self, *statuses: StepStatus) -> List[StepState]:
        return [s for s in self.steps.values() if s.status in statuses]


class Checkpoint(BaseModel):
    run_id: str
    run: WorkflowRun
    wave: int = 0
    created_at: datetime = Field(default_factory=utcnow)
