from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from leetstack.notes.models import CardRecord


class JobStatus(str, Enum):
    PENDING = 'pending'
    PROCESSING = 'processing'
    COMPLETED = 'completed'
    FAILED = 'failed'

    @property
    def is_terminal(self) -> bool:
        return self in (JobStatus.COMPLETED, JobStatus.FAILED)


# forward-only edges; terminal states have none
ALLOWED_TRANSITIONS = {
    JobStatus.PENDING: {JobStatus.PROCESSING},
    JobStatus.PROCESSING: {JobStatus.COMPLETED, JobStatus.FAILED},
    JobStatus.COMPLETED: set(),
    JobStatus.FAILED: set(),
}


class CapturePayload(BaseModel):
    content: str
    topic: Optional[str] = None
    requirements: Optional[str] = None


class JobRecord(BaseModel):
    job_id: str
    owner_id: str
    url: str
    topic: Optional[str] = None
    requirements: Optional[str] = None
    status: JobStatus = JobStatus.PENDING
    request_payload: CapturePayload
    result_note_id: Optional[str] = None
    result_topic: Optional[str] = None
    result_summary: Optional[str] = None
    result_cards: Optional[List[CardRecord]] = None
    result_new_cards: Optional[int] = None
    error_message: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    expires_at: int

    def to_storage(self) -> Dict[str, Any]:
        return self.model_dump(mode='json')


class JobResult(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    note_id: Optional[str] = None
    topic: Optional[str] = None
    summary: Optional[str] = None
    cards: List[CardRecord] = Field(default_factory=list)
    new_cards: Optional[int] = None


class JobView(BaseModel):
    """What a client may see of a job; ``result`` only once completed."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    job_id: str
    status: JobStatus
    url: str
    topic: Optional[str] = None
    requirements: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    error_message: Optional[str] = None
    result: Optional[JobResult] = None

    @classmethod
    def from_record(cls, job: JobRecord) -> 'JobView':
        result = None
        if job.status is JobStatus.COMPLETED:
            result = JobResult(
                note_id=job.result_note_id,
                topic=job.result_topic or job.topic,
                summary=job.result_summary,
                cards=job.result_cards or [],
                new_cards=job.result_new_cards,
            )
        return cls(
            job_id=job.job_id,
            status=job.status,
            url=job.url,
            topic=job.topic,
            requirements=job.requirements,
            created_at=job.created_at,
            updated_at=job.updated_at,
            error_message=job.error_message,
            result=result,
        )
