"""SM-2 style spaced-repetition scheduler.

Provides:
- ReviewGrade, the three grades a learner can give a card
- SchedulerConfig, tunables resolved from the environment
- ReviewState / ScheduleResult pydantic models
- SpacedRepetitionScheduler, a pure function object with an injectable clock

New cards walk through fixed learning steps first; after the last step the
interval grows multiplicatively with the ease factor.
"""
from __future__ import annotations

import os
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Callable, List, Optional

from pydantic import BaseModel, Field, field_validator

SECONDS_PER_DAY = 60 * 60 * 24
DEFAULT_LEARNING_STEPS = [SECONDS_PER_DAY, 3 * SECONDS_PER_DAY]

# SM-2 quality for each grade
_GRADE_QUALITY = {'hard': 2, 'good': 4, 'easy': 5}


class ReviewGrade(str, Enum):
    HARD = 'hard'
    GOOD = 'good'
    EASY = 'easy'


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def parse_learning_steps(value: Optional[str]) -> Optional[List[int]]:
    if not value:
        return None
    steps = []
    for part in value.split(','):
        try:
            step = int(float(part.strip()))
        except ValueError:
            continue
        if step > 0:
            steps.append(step)
    return steps or None


class SchedulerConfig(BaseModel):
    learning_steps_seconds: List[int] = Field(default_factory=lambda: list(DEFAULT_LEARNING_STEPS))
    easy_bonus: float = 1.3
    day_seconds: int = SECONDS_PER_DAY
    initial_ease_factor: float = 2.5
    min_ease_factor: float = 1.3
    max_ease_factor: float = 3.5
    max_interval_seconds: int = 365 * SECONDS_PER_DAY

    @classmethod
    def from_env(cls) -> 'SchedulerConfig':
        return cls(
            learning_steps_seconds=parse_learning_steps(os.getenv('SR_LEARNING_STEPS')) or list(DEFAULT_LEARNING_STEPS),
            easy_bonus=float(os.getenv('SR_EASY_BONUS', '1.3')),
            initial_ease_factor=float(os.getenv('SR_INITIAL_EASE', '2.5')),
            min_ease_factor=float(os.getenv('SR_MIN_EASE', '1.3')),
            max_ease_factor=float(os.getenv('SR_MAX_EASE', '3.5')),
            max_interval_seconds=int(float(os.getenv('SR_MAX_INTERVAL_DAYS', '365')) * SECONDS_PER_DAY),
        )

    @property
    def initial_interval_seconds(self) -> int:
        if self.learning_steps_seconds:
            return self.learning_steps_seconds[0]
        return self.day_seconds


class SchedulingSnapshot(BaseModel):
    ease_factor: Optional[float] = None
    interval: Optional[int] = None
    repetitions: Optional[int] = None


class ReviewState(BaseModel):
    ease_factor: float
    interval: int
    repetitions: int
    next_review_date: datetime
    last_reviewed_at: Optional[datetime] = None

    @field_validator('next_review_date', 'last_reviewed_at')
    @classmethod
    def _assume_utc(cls, value):
        return ensure_utc(value)

    def snapshot(self) -> SchedulingSnapshot:
        return SchedulingSnapshot(ease_factor=self.ease_factor, interval=self.interval, repetitions=self.repetitions)

    def same_as(self, other: Optional['ReviewState']) -> bool:
        if other is None:
            return False
        return (
            self.ease_factor == other.ease_factor
            and self.interval == other.interval
            and self.repetitions == other.repetitions
            and self.next_review_date == other.next_review_date
            and self.last_reviewed_at == other.last_reviewed_at
        )


class ScheduleResult(ReviewState):
    last_reviewed_at: datetime


class SpacedRepetitionScheduler:
    def __init__(self, config: Optional[SchedulerConfig] = None, clock: Optional[Callable[[], datetime]] = None):
        self.config = config or SchedulerConfig.from_env()
        self._clock = clock or utcnow

    def now(self) -> datetime:
        return self._clock()

    def initial_state(self, now: Optional[datetime] = None) -> ReviewState:
        now = now or self.now()
        interval = self.config.initial_interval_seconds
        return ReviewState(
            ease_factor=self.config.initial_ease_factor,
            interval=interval,
            repetitions=0,
            next_review_date=now + timedelta(seconds=interval),
            last_reviewed_at=None,
        )

    def schedule(self, state: Optional[SchedulingSnapshot | ReviewState], grade: ReviewGrade | str, now: Optional[datetime] = None) -> ScheduleResult:
        grade = ReviewGrade(grade)
        now = now or self.now()
        cfg = self.config

        ease = state.ease_factor if state is not None and state.ease_factor is not None else cfg.initial_ease_factor
        interval = state.interval if state is not None and state.interval is not None else cfg.initial_interval_seconds
        repetitions = state.repetitions if state is not None and state.repetitions is not None else 0
        if repetitions < 0:
            raise ValueError(f'repetitions must be non-negative, got {repetitions}')
        ease = self._clamp_ease(ease)
        interval = max(1, min(int(interval), cfg.max_interval_seconds))

        updated_ease = self._next_ease(ease, _GRADE_QUALITY[grade.value])
        if grade is ReviewGrade.HARD:
            next_repetitions = 0
            next_interval = cfg.initial_interval_seconds
        else:
            next_repetitions = repetitions + 1
            next_interval = self._next_interval(interval, next_repetitions, updated_ease, grade)

        return ScheduleResult(
            ease_factor=updated_ease,
            interval=next_interval,
            repetitions=next_repetitions,
            last_reviewed_at=now,
            next_review_date=now + timedelta(seconds=next_interval),
        )

    def _next_interval(self, current: int, repetitions: int, ease: float, grade: ReviewGrade) -> int:
        cfg = self.config
        steps = cfg.learning_steps_seconds
        if steps and repetitions <= len(steps):
            if grade is ReviewGrade.EASY:
                # easy skips the current learning step
                candidate = steps[min(repetitions, len(steps) - 1)]
            else:
                candidate = steps[repetitions - 1]
        else:
            current_days = max(1.0, current / cfg.day_seconds)
            bonus = cfg.easy_bonus if grade is ReviewGrade.EASY else 1.0
            candidate = max(1, round(current_days * ease * bonus)) * cfg.day_seconds

        # good never shortens the interval, easy always lengthens it
        if grade is ReviewGrade.EASY and candidate <= current:
            candidate = current + cfg.day_seconds
        candidate = max(candidate, current)
        return min(candidate, cfg.max_interval_seconds)

    def _next_ease(self, current: float, quality: int) -> float:
        miss = 5 - quality
        return self._clamp_ease(current + (0.1 - miss * (0.08 + miss * 0.02)))

    def _clamp_ease(self, value: float) -> float:
        return max(self.config.min_ease_factor, min(self.config.max_ease_factor, float(value)))
