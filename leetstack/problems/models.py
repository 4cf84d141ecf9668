from __future__ import annotations

import uuid
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel


class ProblemRecord(BaseModel):
    """A coding problem an owner tracks for review, keyed by its question index."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    problem_id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str
    question_index: str
    title: str
    title_slug: str
    difficulty: str
    description: str
    paid_only: bool = False
    solution: Optional[str] = None
    ideal_solution_code: Optional[str] = None
    note: Optional[str] = None
    example_testcases: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_reviewed_at: Optional[datetime] = None
    last_review_status: Optional[str] = None
    review_interval_seconds: Optional[int] = None
    review_ease_factor: Optional[float] = None
    review_repetitions: Optional[int] = None
    next_review_date: Optional[datetime] = None


class ProblemView(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    id: str
    question_index: str
    title: str
    title_slug: str
    difficulty: str
    description: str
    is_paid_only: bool = False
    solution: Optional[str] = None
    ideal_solution_code: Optional[str] = None
    note: Optional[str] = None
    example_testcases: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    last_reviewed_at: Optional[datetime] = None
    last_review_status: Optional[str] = None
    review_interval_seconds: Optional[int] = None
    review_ease_factor: Optional[float] = None
    review_repetitions: Optional[int] = None
    next_review_date: Optional[datetime] = None

    @classmethod
    def from_record(cls, problem: ProblemRecord) -> 'ProblemView':
        return cls(
            id=problem.problem_id,
            is_paid_only=problem.paid_only,
            **problem.model_dump(exclude={'problem_id', 'owner_id', 'paid_only'}),
        )
