"""Activity provider contract and the push-fed in-memory provider.

Providers are synchronous, read-only and cheap. A provider signals that it
cannot produce a reading by raising ProviderReadError.
"""

from __future__ import annotations

from typing import Protocol, runtime_checkable

from pydantic import BaseModel, Field

from goalsync.engine.errors import ProviderReadError


class StudyTimeReading(BaseModel):
    weekly_minutes: float = Field(default=0.0, ge=0.0)


class StreakReading(BaseModel):
    current_streak: int = Field(default=0, ge=0)


class CourseProgress(BaseModel):
    completed_modules: int = Field(default=0, ge=0)
    total_modules: int = Field(default=0, ge=0)
    progress: float = Field(default=0.0, ge=0.0)  # percent


class GradePrediction(BaseModel):
    predicted_grade: float = Field(default=0.0, ge=0.0)


@runtime_checkable
class ActivityProvider(Protocol):
    def study_time(self) -> StudyTimeReading: ...

    def streak(self) -> StreakReading: ...

    def course_progress(self) -> dict[str, CourseProgress]: ...

    def grade_prediction(self) -> GradePrediction: ...


class ActivityUpdate(BaseModel):
    """Partial push of readings; omitted signals keep their last value."""

    study_time: StudyTimeReading | None = None
    streak: StreakReading | None = None
    course_progress: dict[str, CourseProgress] | None = None
    grade_prediction: GradePrediction | None = None


class InMemoryActivityProvider:
    """Holds the most recent readings pushed by a client.

    A signal that has never been pushed is unavailable and raises
    ProviderReadError, so derivation keeps the last known value.
    """

    def __init__(
        self,
        study_time: StudyTimeReading | None = None,
        streak: StreakReading | None = None,
        course_progress: dict[str, CourseProgress] | None = None,
        grade_prediction: GradePrediction | None = None,
    ):
        self._study_time = study_time
        self._streak = streak
        self._course_progress = course_progress
        self._grade_prediction = grade_prediction

    def apply(self, update: ActivityUpdate) -> None:
        if update.study_time is not None:
            self._study_time = update.study_time
        if update.streak is not None:
            self._streak = update.streak
        if update.course_progress is not None:
            merged = dict(self._course_progress or {})
            merged.update(update.course_progress)
            self._course_progress = merged
        if update.grade_prediction is not None:
            self._grade_prediction = update.grade_prediction

    def study_time(self) -> StudyTimeReading:
        if self._study_time is None:
            raise ProviderReadError("no study time reading")
        return self._study_time

    def streak(self) -> StreakReading:
        if self._streak is None:
            raise ProviderReadError("no streak reading")
        return self._streak

    def course_progress(self) -> dict[str, CourseProgress]:
        if self._course_progress is None:
            raise ProviderReadError("no course progress reading")
        return dict(self._course_progress)

    def grade_prediction(self) -> GradePrediction:
        if self._grade_prediction is None:
            raise ProviderReadError("no grade prediction")
        return self._grade_prediction
