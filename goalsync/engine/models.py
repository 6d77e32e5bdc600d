"""Goal data contract — Pydantic v2 models."""

from __future__ import annotations

import uuid
from datetime import date as calendar_date, datetime, timezone
from enum import Enum
from typing import Annotated, Literal, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def assume_utc(value: datetime | None) -> datetime | None:
    """Naive datetimes are taken to be UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GoalType(str, Enum):
    study_time = "study_time"
    course_completion = "course_completion"
    streak = "streak"
    grade = "grade"


class GoalStatus(str, Enum):
    active = "active"
    paused = "paused"
    completed = "completed"
    expired = "expired"


class GoalPriority(str, Enum):
    low = "low"
    medium = "medium"
    high = "high"


DEFAULT_UNITS: dict[GoalType, str] = {
    GoalType.study_time: "hours",
    GoalType.course_completion: "modules",
    GoalType.streak: "days",
    GoalType.grade: "%",
}

COURSE_SCOPED_TYPES = frozenset({GoalType.course_completion, GoalType.grade})


# ---------------------------------------------------------------------------
# Per-type metadata (tagged union on `kind`)
# ---------------------------------------------------------------------------

class _MetadataBase(BaseModel):
    model_config = ConfigDict(frozen=True)

    baseline_value: float = 0.0
    notifications_enabled: bool = True


class StudyTimeMetadata(_MetadataBase):
    kind: Literal["study_time"] = "study_time"


class StreakMetadata(_MetadataBase):
    kind: Literal["streak"] = "streak"


class CourseCompletionMetadata(_MetadataBase):
    kind: Literal["course_completion"] = "course_completion"
    course_id: str | None = None
    course_title: str | None = None


class GradeMetadata(_MetadataBase):
    kind: Literal["grade"] = "grade"
    course_id: str | None = None
    course_title: str | None = None


GoalMetadata = Annotated[
    Union[StudyTimeMetadata, StreakMetadata, CourseCompletionMetadata, GradeMetadata],
    Field(discriminator="kind"),
]


def make_metadata(
    goal_type: GoalType,
    baseline_value: float,
    notifications_enabled: bool = True,
    course_id: str | None = None,
    course_title: str | None = None,
) -> StudyTimeMetadata | StreakMetadata | CourseCompletionMetadata | GradeMetadata:
    if goal_type == GoalType.study_time:
        return StudyTimeMetadata(baseline_value=baseline_value, notifications_enabled=notifications_enabled)
    if goal_type == GoalType.streak:
        return StreakMetadata(baseline_value=baseline_value, notifications_enabled=notifications_enabled)
    if goal_type == GoalType.course_completion:
        return CourseCompletionMetadata(
            baseline_value=baseline_value,
            notifications_enabled=notifications_enabled,
            course_id=course_id,
            course_title=course_title,
        )
    return GradeMetadata(
        baseline_value=baseline_value,
        notifications_enabled=notifications_enabled,
        course_id=course_id,
        course_title=course_title,
    )


# ---------------------------------------------------------------------------
# Goal records
# ---------------------------------------------------------------------------

class Goal(BaseModel):
    id: str = Field(default_factory=lambda: f"goal-{uuid.uuid4().hex}")
    owner_id: str
    title: str
    description: str | None = None
    type: GoalType
    target_value: float
    current_value: float = Field(default=0.0, ge=0.0)
    unit: str
    priority: GoalPriority = GoalPriority.medium
    status: GoalStatus = GoalStatus.active
    start_date: datetime = Field(default_factory=utcnow)
    end_date: datetime | None = None
    completed_at: datetime | None = None
    created_at: datetime = Field(default_factory=utcnow)
    updated_at: datetime = Field(default_factory=utcnow)
    metadata: GoalMetadata

    @field_validator("start_date", "end_date", "completed_at", "created_at", "updated_at")
    @classmethod
    def normalize_dates(cls, value: datetime | None) -> datetime | None:
        return assume_utc(value)

    @model_validator(mode="after")
    def _check_consistency(self) -> "Goal":
        if self.metadata.kind != self.type.value:
            raise ValueError(f"metadata kind {self.metadata.kind!r} does not match goal type {self.type.value!r}")
        if (self.status == GoalStatus.completed) != (self.completed_at is not None):
            raise ValueError("completed_at must be set exactly when status is completed")
        return self

    @property
    def course_id(self) -> str | None:
        return getattr(self.metadata, "course_id", None)


class GoalWithProgress(Goal):
    progress_percentage: int = 0
    days_remaining: int | None = None
    is_overdue: bool = False


class GoalCreate(BaseModel):
    """User input for a new goal. Baseline and ids are assigned by the engine."""

    title: str = Field(min_length=1)
    description: str | None = None
    type: GoalType
    target_value: float = Field(gt=0)
    unit: str | None = None
    priority: GoalPriority = GoalPriority.medium
    start_date: datetime | None = None
    end_date: datetime | None = None
    course_id: str | None = None
    course_title: str | None = None
    notifications_enabled: bool = True

    @field_validator("start_date", "end_date")
    @classmethod
    def normalize_dates(cls, value: datetime | None) -> datetime | None:
        return assume_utc(value)

    @model_validator(mode="after")
    def _check_course_scope(self) -> "GoalCreate":
        if self.course_id is not None and self.type not in COURSE_SCOPED_TYPES:
            raise ValueError(f"course_id is only valid for {sorted(t.value for t in COURSE_SCOPED_TYPES)} goals")
        if self.unit is None:
            self.unit = DEFAULT_UNITS[self.type]
        return self


class StatusUpdate(BaseModel):
    status: GoalStatus


# ---------------------------------------------------------------------------
# History, stats, events
# ---------------------------------------------------------------------------

class ProgressHistoryEntry(BaseModel):
    id: str = Field(default_factory=lambda: f"ph-{uuid.uuid4().hex}")
    goal_id: str
    owner_id: str
    progress_value: float
    progress_percentage: int
    recorded_at: datetime = Field(default_factory=utcnow)


class HistoryDay(BaseModel):
    date: calendar_date
    completed: int = 0
    active: int = 0
    total_progress: int = 0


class GoalStats(BaseModel):
    total: int = 0
    active: int = 0
    completed: int = 0
    completion_rate: int = 0


class CompletionEvent(BaseModel):
    goal_id: str
    owner_id: str
    title: str
    target_value: float
    unit: str
    completed_at: datetime


class SuggestedGoal(BaseModel):
    title: str
    description: str
    type: GoalType
    target_value: float
    unit: str
    priority: GoalPriority
