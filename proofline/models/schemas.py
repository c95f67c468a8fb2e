"""
Pydantic data models for the Proofline timeline engine.
"""
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Union
from uuid import uuid4

from pydantic import BaseModel, Field, computed_field, field_validator, model_validator

from proofline.errors import ErrorResponse
from proofline.utils.timeutils import utc_now

# Steps at least this long are treated as overnight even without the explicit flag
OVERNIGHT_THRESHOLD_MINUTES = 480

DEFAULT_ADAPTIVE_CHECK_INTERVAL_MINUTES = 30


class StepStatus(str, Enum):
    """Status of a timeline step."""
    PENDING = "pending"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"


TERMINAL_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})
OPEN_STATUSES = frozenset({StepStatus.PENDING, StepStatus.ACTIVE})


class BakeStatus(str, Enum):
    """Lifecycle state of a bake."""
    ACTIVE = "active"
    PAUSED = "paused"
    COMPLETED = "completed"


class RecalibrationMode(str, Enum):
    """Strategies for recomputing the remaining schedule."""
    SHIFT_ALL = "shift_all"
    COMPRESS_TO_FINISH = "compress_to_finish"
    EDIT_SINGLE = "edit_single"


class AlarmKind(str, Enum):
    """Kinds of alarms derived from a timeline."""
    T0 = "t0"
    MISSED = "missed"
    BEDTIME = "bedtime"
    WAKEUP = "wakeup"
    ADAPTIVE_CHECK = "adaptive_check"


class AnalyticsEventType(str, Enum):
    """Events observed by the analytics tap."""
    BAKE_STARTED = "bakeStarted"
    STEP_COMPLETED = "stepCompleted"
    STEP_SKIPPED = "stepSkipped"
    RECALIBRATION_APPLIED = "recalibrationApplied"
    BAKE_PAUSED = "bakePaused"
    BAKE_RESUMED = "bakeResumed"
    BAKE_COMPLETED = "bakeCompleted"


class Step(BaseModel):
    """A single scheduled step of a bake."""
    id: str = Field(default_factory=lambda: str(uuid4()), description="Opaque step identifier")
    step_index: int = Field(..., ge=0, description="Canonical order within the timeline")
    name: str = Field(..., description="Display name")
    instructions: str = Field(default="", description="Display text, not used for scheduling")
    status: StepStatus = StepStatus.PENDING
    scheduled_start: datetime
    scheduled_end: datetime
    estimated_duration_minutes: int = Field(..., ge=1)
    actual_duration_minutes: Optional[int] = Field(
        default=None,
        description="Set once, at the completion transition"
    )
    is_adaptive: bool = Field(
        default=False,
        description="Step has no fixed end and finishes only on explicit confirmation"
    )
    is_overnight: bool = Field(default=False, description="Explicit overnight flag")
    can_overlap: bool = Field(
        default=False,
        description="May run in parallel with adjacent overlapping steps"
    )
    adaptive_check_interval_minutes: int = Field(
        default=DEFAULT_ADAPTIVE_CHECK_INTERVAL_MINUTES,
        ge=1,
        description="Spacing of readiness checks while an adaptive step is active"
    )
    ended_at: Optional[datetime] = Field(
        default=None,
        description="When the step was completed or skipped"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "id": "bulk",
                    "step_index": 1,
                    "name": "Bulk Fermentation",
                    "instructions": "Let dough rise with periodic folds",
                    "status": "pending",
                    "scheduled_start": "2025-03-01T09:30:00Z",
                    "scheduled_end": "2025-03-01T17:30:00Z",
                    "estimated_duration_minutes": 480,
                    "is_adaptive": True,
                    "can_overlap": False,
                    "adaptive_check_interval_minutes": 30
                }
            ]
        }
    }

    @field_validator('name')
    @classmethod
    def name_must_not_be_empty(cls, v: str) -> str:
        if not v.strip():
            raise ValueError('Step name cannot be empty')
        return v.strip()

    @computed_field
    @property
    def runs_overnight(self) -> bool:
        """Explicitly flagged overnight, or long enough to span a night."""
        return self.is_overnight or self.estimated_duration_minutes >= OVERNIGHT_THRESHOLD_MINUTES

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def overlaps(self, other: "Step") -> bool:
        """True if the two scheduled ranges intersect."""
        return self.scheduled_start < other.scheduled_end and other.scheduled_start < self.scheduled_end


class Timeline(BaseModel):
    """The ordered, time-scheduled step sequence for one bake."""
    bake_id: str = Field(default_factory=lambda: str(uuid4()))
    name: str = ""
    status: BakeStatus = BakeStatus.ACTIVE
    steps: List[Step] = Field(default_factory=list)
    paused_at: Optional[datetime] = None
    created_at: datetime = Field(default_factory=utc_now)

    @field_validator('steps')
    @classmethod
    def steps_ordered_by_index(cls, v: List[Step]) -> List[Step]:
        indexes = [step.step_index for step in v]
        if len(set(indexes)) != len(indexes):
            raise ValueError('Step indexes must be unique within a timeline')
        ids = [step.id for step in v]
        if len(set(ids)) != len(ids):
            raise ValueError('Step ids must be unique within a timeline')
        return sorted(v, key=lambda s: s.step_index)

    def find_step(self, step_id: str) -> Optional[Step]:
        """Get step by id."""
        for step in self.steps:
            if step.id == step_id:
                return step
        return None

    def get_step_by_index(self, step_index: int) -> Optional[Step]:
        """Get step by its canonical index."""
        for step in self.steps:
            if step.step_index == step_index:
                return step
        return None

    def get_active_steps(self) -> List[Step]:
        return [step for step in self.steps if step.status == StepStatus.ACTIVE]

    def get_pending_steps(self) -> List[Step]:
        return [step for step in self.steps if step.status == StepStatus.PENDING]

    def get_open_steps(self) -> List[Step]:
        """Steps that are still pending or active."""
        return [step for step in self.steps if step.status in OPEN_STATUSES]

    def first_pending(self) -> Optional[Step]:
        pending = self.get_pending_steps()
        return pending[0] if pending else None

    @property
    def is_finished(self) -> bool:
        """No step is left pending or active."""
        return bool(self.steps) and not self.get_open_steps()

    def overlap_groups(self) -> List[List[Step]]:
        """
        Declared overlap groups: runs of consecutive ``can_overlap`` steps
        whose time ranges intersect their predecessor's.

        Only groups with two or more members are returned.
        """
        groups: List[List[Step]] = []
        current: List[Step] = []

        for step in self.steps:
            if step.can_overlap and current and current[-1].overlaps(step):
                current.append(step)
                continue
            if len(current) > 1:
                groups.append(current)
            current = [step] if step.can_overlap else []

        if len(current) > 1:
            groups.append(current)
        return groups

    def share_overlap_group(self, a: Step, b: Step) -> bool:
        """True if both steps belong to the same declared overlap group."""
        for group in self.overlap_groups():
            ids = {step.id for step in group}
            if a.id in ids and b.id in ids:
                return True
        return False


class StepTemplate(BaseModel):
    """A step definition used to lay out a new timeline."""
    name: str
    instructions: str = ""
    estimated_duration_minutes: int = Field(..., ge=1)
    is_adaptive: bool = False
    is_overnight: bool = False
    can_overlap: bool = False
    adaptive_check_interval_minutes: Optional[int] = Field(
        default=None,
        ge=1,
        description="Defaults to the configured adaptive check interval"
    )


class StartBakeRequest(BaseModel):
    """Request to start a new bake from an ordered list of step templates."""
    name: str = Field(..., description="Display name of the bake")
    steps: List[StepTemplate] = Field(..., min_length=1)
    start_time: Optional[datetime] = Field(
        default=None,
        description="Planned start of the first step (defaults to now)"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {
                    "name": "Country loaf",
                    "steps": [
                        {"name": "Mix Ingredients", "estimated_duration_minutes": 30},
                        {"name": "Bulk Fermentation", "estimated_duration_minutes": 480, "is_adaptive": True},
                        {"name": "Shape Loaves", "estimated_duration_minutes": 30},
                        {"name": "Final Rise", "estimated_duration_minutes": 240},
                        {"name": "Bake", "estimated_duration_minutes": 45}
                    ]
                }
            ]
        }
    }


class RecalibrationRequest(BaseModel):
    """An explicit user-requested recomputation of the remaining schedule."""
    mode: RecalibrationMode
    delta_minutes: int = Field(..., description="Minutes to apply; may be negative")
    target_step_id: Optional[str] = Field(
        default=None,
        description="Required only for edit_single"
    )

    model_config = {
        "json_schema_extra": {
            "examples": [
                {"mode": "shift_all", "delta_minutes": 30},
                {"mode": "edit_single", "delta_minutes": -15, "target_step_id": "bulk"}
            ]
        }
    }


class Alarm(BaseModel):
    """A scheduled notification tied to a step's planned time."""
    step_id: str
    bake_id: str
    kind: AlarmKind
    scheduled_time: datetime

    @property
    def job_id(self) -> str:
        """Stable identifier; bake id first so a bake's alarms share a prefix."""
        return f"{self.bake_id}:{self.step_id}:{self.kind.value}:{self.scheduled_time.isoformat()}"


class OverlapConflict(BaseModel):
    """Two open steps of an overlap group running at the same time."""
    step_ids: List[str]
    step_names: List[str]
    overlap_start: datetime
    overlap_end: datetime
    reason: str


class AnalyticsEvent(BaseModel):
    """A timeline event recorded by the analytics tap."""
    event_type: AnalyticsEventType
    bake_id: str
    step_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now)
    properties: Dict[str, Any] = Field(default_factory=dict)


class BakeAnalytics(BaseModel):
    """Summary of a bake's recorded events."""
    bake_id: str
    total_events: int = 0
    steps_completed: int = 0
    steps_skipped: int = 0
    times_recalibrated: int = 0
    times_paused: int = 0
    average_step_drift_minutes: float = Field(
        default=0.0,
        description="Mean of actual minus estimated minutes over completed steps"
    )
    event_types: Dict[str, int] = Field(default_factory=dict)


# Commands accepted by the bake command bus

class MarkDoneCommand(BaseModel):
    command: Literal["mark_done"] = "mark_done"
    step_id: str


class SkipStepCommand(BaseModel):
    command: Literal["skip"] = "skip"
    step_id: str
    pull_forward: bool = False


class ConfirmReadyCommand(BaseModel):
    command: Literal["confirm_ready"] = "confirm_ready"
    step_id: str


class ActivateNextCommand(BaseModel):
    command: Literal["activate_next"] = "activate_next"


class RecalibrateCommand(BaseModel):
    command: Literal["recalibrate"] = "recalibrate"
    request: RecalibrationRequest


class PauseBakeCommand(BaseModel):
    command: Literal["pause"] = "pause"


class ResumeBakeCommand(BaseModel):
    command: Literal["resume"] = "resume"


BakeCommand = Union[
    MarkDoneCommand,
    SkipStepCommand,
    ConfirmReadyCommand,
    ActivateNextCommand,
    RecalibrateCommand,
    PauseBakeCommand,
    ResumeBakeCommand,
]


class StepTransition(BaseModel):
    """Outcome of a state machine operation."""
    timeline: Timeline
    step_id: Optional[str] = None
    activated_step_id: Optional[str] = None
    warnings: List[ErrorResponse] = Field(default_factory=list)


class TimelineMutation(BaseModel):
    """
    A committed change to a bake's timeline.

    Built only by the command bus after a command succeeds; the notification
    scheduler and the analytics tap consume it, so rescheduling always sees
    the already-mutated timeline.
    """
    bake_id: str
    command: str
    before: Timeline
    after: Timeline
    changed_step_ids: List[str] = Field(default_factory=list)
    events: List[AnalyticsEvent] = Field(default_factory=list)
    occurred_at: datetime = Field(default_factory=utc_now)


class CommandResult(BaseModel):
    """Typed result returned across the command boundary."""
    ok: bool
    bake_id: str
    command: str
    timeline: Optional[Timeline] = None
    changed_step_ids: List[str] = Field(default_factory=list)
    alarms: List[Alarm] = Field(default_factory=list)
    warnings: List[ErrorResponse] = Field(default_factory=list)
    needs_recalibration: bool = False
    error: Optional[ErrorResponse] = None

    @model_validator(mode="after")
    def error_matches_ok(self) -> "CommandResult":
        if not self.ok and self.error is None:
            raise ValueError("Failed command results must carry an error")
        return self


class RecalibrationPreview(BaseModel):
    """Dry-run output of a recalibration, for diffing before committing."""
    bake_id: str
    request: RecalibrationRequest
    before: Timeline
    after: Timeline
    changed_step_ids: List[str] = Field(default_factory=list)
    applied_compression: Dict[str, int] = Field(
        default_factory=dict,
        description="Per-step cumulative compression (compress_to_finish only)"
    )


class TimelineView(BaseModel):
    """Read model of a bake's timeline with its drift and conflict report."""
    timeline: Timeline
    needs_recalibration: bool = False
    conflicts: List[OverlapConflict] = Field(default_factory=list)
