"""
Governed Agent Data Models

Pydantic models for the governed task record and for the typed events delivered on
the task push channel. Field names follow the wire format of the task-engine API so
payloads can be validated without translation.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator


# ===== LIFECYCLE ENUMS =====

class AgentMode(str, Enum):
    """Lifecycle stage of a governed task, in fixed order."""
    SCOPE = "SCOPE"
    CLARIFY = "CLARIFY"
    PLAN = "PLAN"
    BUILD = "BUILD"
    VERIFY = "VERIFY"
    DONE = "DONE"

    @classmethod
    def _missing_(cls, value: object) -> Optional["AgentMode"]:
        # Accept "build", "BUILD_MODE" and similar server spellings.
        if isinstance(value, str):
            normalized = value.strip().upper()
            if normalized.endswith("_MODE"):
                normalized = normalized[: -len("_MODE")]
            for member in cls:
                if member.value == normalized:
                    return member
        return None

    @property
    def order(self) -> int:
        return MODE_ORDER.index(self)

    def is_unlocked_from(self, current: "AgentMode") -> bool:
        """Return True when this mode is the current mode or one already passed."""
        return self.order <= current.order


MODE_ORDER: List[AgentMode] = [
    AgentMode.SCOPE,
    AgentMode.CLARIFY,
    AgentMode.PLAN,
    AgentMode.BUILD,
    AgentMode.VERIFY,
    AgentMode.DONE,
]


class TaskStatus(str, Enum):
    """Overall status of a governed task."""
    PENDING = "pending"
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in (TaskStatus.COMPLETED, TaskStatus.FAILED, TaskStatus.CANCELLED)

    def can_transition_to(self, new_status: "TaskStatus") -> bool:
        """Monotonic status ordering; cancellation is reachable from anywhere."""
        if new_status == self:
            return True
        if new_status is TaskStatus.CANCELLED:
            return True
        if self.is_terminal:
            return False
        return _STATUS_RANK[new_status] > _STATUS_RANK[self]


_STATUS_RANK: Dict[TaskStatus, int] = {
    TaskStatus.PENDING: 0,
    TaskStatus.IN_PROGRESS: 1,
    TaskStatus.COMPLETED: 2,
    TaskStatus.FAILED: 2,
    TaskStatus.CANCELLED: 3,
}


# ===== TASK RECORD =====

class WireModel(BaseModel):
    """Base for server payloads; unknown fields are ignored."""
    model_config = ConfigDict(extra="ignore", use_enum_values=False)


class Classification(WireModel):
    """Task type, complexity and risk as classified by the engine."""
    type: Optional[str] = None
    complexity: Optional[str] = None
    riskLevel: Optional[str] = None
    requiredIntegrations: List[str] = Field(default_factory=list)
    confidence: Optional[float] = None


class ScopeAnalysis(WireModel):
    """Outcome of the scoping stage."""
    compatible: bool = True
    requiredIntegrations: List[str] = Field(default_factory=list)
    estimatedComplexity: Optional[str] = None
    ambiguities: List[str] = Field(default_factory=list)
    clarificationNeeded: List[str] = Field(default_factory=list)
    canProceed: bool = True

    @property
    def has_questions(self) -> bool:
        return len(self.clarificationNeeded) > 0


class PlanStep(WireModel):
    id: str
    tool: str = ""
    action: str = ""
    description: str = ""
    estimatedDuration: float = 0
    dependencies: List[str] = Field(default_factory=list)


class PlanPhase(WireModel):
    name: str
    riskLevel: str = "low"
    requiresApproval: bool = False
    steps: List[PlanStep] = Field(default_factory=list)


class RiskAssessment(WireModel):
    level: Optional[str] = None
    factors: List[str] = Field(default_factory=list)
    requiresApproval: bool = False


class ExecutionPlan(WireModel):
    """Ordered phases of steps proposed by the engine."""
    phases: List[PlanPhase] = Field(default_factory=list)
    estimatedDuration: Optional[float] = None
    estimatedCost: Optional[float] = None
    riskAssessment: Optional[RiskAssessment] = None
    rollbackPlan: Optional[str] = None
    researchSources: List[Any] = Field(default_factory=list)

    @field_validator("phases")
    @classmethod
    def validate_unique_step_ids(cls, phases: List[PlanPhase]) -> List[PlanPhase]:
        seen: set[str] = set()
        for phase in phases:
            for step in phase.steps:
                if step.id in seen:
                    raise ValueError(f"Duplicate plan step id '{step.id}'")
                seen.add(step.id)
        return phases

    def step_ids(self) -> List[str]:
        return [step.id for phase in self.phases for step in phase.steps]


class FailedStep(WireModel):
    stepId: str
    error: str = ""
    timestamp: Optional[str] = None


class ExecutionProgress(WireModel):
    """Progress of the BUILD stage; one run is identified by its start time."""
    currentPhase: int = 0
    currentStep: Optional[str] = None
    totalPhases: int = 0
    totalSteps: int = 0
    completedSteps: List[str] = Field(default_factory=list)
    failedSteps: List[FailedStep] = Field(default_factory=list)
    startTime: Optional[str] = None
    estimatedCompletionTime: Optional[str] = None


class Verification(WireModel):
    success: bool = False
    healthChecks: List[Dict[str, Any]] = Field(default_factory=list)
    dataIntegrity: Optional[Dict[str, Any]] = None
    deploymentUrls: List[str] = Field(default_factory=list)
    recommendations: List[str] = Field(default_factory=list)
    rollbackInstructions: Optional[str] = None


class GovernedTask(WireModel):
    """The unit of work tracked through the governed lifecycle."""
    id: str
    userId: Optional[str] = None
    mode: AgentMode = AgentMode.SCOPE
    request: str = ""
    classification: Optional[Classification] = None
    scopeAnalysis: Optional[ScopeAnalysis] = None
    plan: Optional[ExecutionPlan] = None
    approvalToken: Optional[str] = None
    executionProgress: Optional[ExecutionProgress] = None
    executionResults: List[Dict[str, Any]] = Field(default_factory=list)
    verification: Optional[Verification] = None
    status: TaskStatus = TaskStatus.PENDING
    error: Optional[str] = None
    createdAt: Optional[str] = None
    updatedAt: Optional[str] = None


# ===== FILE GENERATION =====

class FileStatus(str, Enum):
    PENDING = "pending"
    GENERATING = "generating"
    COMPLETE = "complete"
    ERROR = "error"


class FileGenerationPhase(str, Enum):
    PLANNING = "planning"
    STRUCTURE_COMPLETE = "structure_complete"
    GENERATING_FILE = "generating_file"
    FILE_COMMITTED = "file_committed"
    FILE_COMPLETE = "file_complete"
    FILE_ERROR = "file_error"
    COMPLETE = "complete"
    ERROR = "error"


class FileGenerationEntry(BaseModel):
    """One tracked file; identified by path once known, by position before."""
    path: str = ""
    status: FileStatus = FileStatus.PENDING
    remoteUrl: Optional[str] = None
    error: Optional[str] = None


# ===== PUSH CHANNEL EVENTS =====

class StreamEventType(str, Enum):
    CONNECTED = "connected"
    UPDATE = "update"
    FILE_GENERATION = "file_generation"
    HEARTBEAT = "heartbeat"
    COMPLETE = "complete"
    ERROR = "error"
    TIMEOUT = "timeout"


class ConnectedEvent(WireModel):
    kind: Literal["connected"] = "connected"
    taskId: Optional[str] = None
    timestamp: Optional[str] = None


class UpdateEvent(WireModel):
    """A task state update; absent or null fields leave the snapshot unchanged."""
    kind: Literal["update"] = "update"
    mode: AgentMode
    status: TaskStatus
    classification: Optional[Classification] = None
    scopeAnalysis: Optional[ScopeAnalysis] = None
    plan: Optional[ExecutionPlan] = None
    executionProgress: Optional[ExecutionProgress] = None
    verification: Optional[Verification] = None
    error: Optional[str] = None


class FileGenerationEvent(WireModel):
    """File-by-file generation progress; also the latest progress record."""
    kind: Literal["file_generation"] = "file_generation"
    phase: str
    message: Optional[str] = None
    totalFiles: Optional[int] = None
    completedFiles: Optional[int] = None
    currentFile: Optional[str] = None
    file: Optional[str] = None
    progress: Optional[float] = None
    repositories: Optional[List[str]] = None
    githubUrl: Optional[str] = None
    error: Optional[str] = None

    @property
    def file_identifier(self) -> Optional[str]:
        return self.currentFile or self.file


class HeartbeatEvent(WireModel):
    kind: Literal["heartbeat"] = "heartbeat"
    timestamp: Optional[str] = None


class CompleteEvent(WireModel):
    kind: Literal["complete"] = "complete"
    status: Optional[str] = None


class ErrorEvent(WireModel):
    kind: Literal["error"] = "error"
    message: Optional[str] = None


class TimeoutEvent(WireModel):
    kind: Literal["timeout"] = "timeout"
    message: Optional[str] = None


StreamEvent = Union[
    ConnectedEvent,
    UpdateEvent,
    FileGenerationEvent,
    HeartbeatEvent,
    CompleteEvent,
    ErrorEvent,
    TimeoutEvent,
]

_EVENT_MODELS: Dict[StreamEventType, type] = {
    StreamEventType.CONNECTED: ConnectedEvent,
    StreamEventType.UPDATE: UpdateEvent,
    StreamEventType.FILE_GENERATION: FileGenerationEvent,
    StreamEventType.HEARTBEAT: HeartbeatEvent,
    StreamEventType.COMPLETE: CompleteEvent,
    StreamEventType.ERROR: ErrorEvent,
    StreamEventType.TIMEOUT: TimeoutEvent,
}


def parse_stream_event(event_name: str, data: Dict[str, Any]) -> StreamEvent:
    """Validate a named push event payload into its typed model.

    Raises:
        ValueError: if the event name is unknown.
        pydantic.ValidationError: if the payload does not match the event schema.
    """
    try:
        event_type = StreamEventType(event_name)
    except ValueError as exc:
        raise ValueError(f"Unknown stream event '{event_name}'") from exc

    model = _EVENT_MODELS[event_type]
    payload = {key: value for key, value in data.items() if key != "kind"}
    return model.model_validate(payload)


def parse_update_leniently(data: Dict[str, Any]) -> Tuple[UpdateEvent, List[str]]:
    """Validate an ``update`` payload, dropping optional fields that fail validation.

    ``mode`` and ``status`` must be valid; any other top-level field that does not
    validate is left out so the rest of the update still applies.

    Returns:
        The update event and the sorted names of the fields that were dropped.

    Raises:
        pydantic.ValidationError: if ``mode`` or ``status`` is missing or invalid.
    """
    payload = {key: value for key, value in data.items() if key != "kind"}
    try:
        return UpdateEvent.model_validate(payload), []
    except ValidationError as exc:
        invalid = {str(error["loc"][0]) for error in exc.errors() if error["loc"]}
        if not invalid or invalid & {"mode", "status"}:
            raise

    for field_name in invalid:
        payload.pop(field_name, None)
    return UpdateEvent.model_validate(payload), sorted(invalid)
