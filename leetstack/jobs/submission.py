import os
import uuid
from datetime import datetime, timezone
from typing import Callable, Optional
from urllib.parse import urlsplit, urlunsplit

from leetstack.jobs.job_store import JobStore
from leetstack.jobs.models import CapturePayload, JobRecord, JobStatus, JobView
from leetstack.notes.models import optional_text
from leetstack.utils import get_logger, AlreadyExists, InvalidArgument, NotFound

LOG = get_logger()

GENERAL_NOTE_MAX_CONTENT = int(os.getenv('GENERAL_NOTE_MAX_CONTENT', '8000'))
JOB_TTL_SECONDS = int(os.getenv('JOB_TTL_SECONDS', '600'))
JOB_CREATE_MAX_ATTEMPTS = int(os.getenv('JOB_CREATE_MAX_ATTEMPTS', '3'))


def normalize_url(value) -> Optional[str]:
    """Return a canonical http(s) URL or None when ``value`` is not one."""
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        parts = urlsplit(value.strip())
        # .port raises on a malformed port
        parts.port
    except ValueError:
        return None
    scheme = parts.scheme.lower()
    if scheme not in ('http', 'https') or not parts.hostname:
        return None
    return urlunsplit((scheme, parts.netloc.lower(), parts.path or '/', parts.query, parts.fragment))


def sanitize_content(value, max_length: int = GENERAL_NOTE_MAX_CONTENT) -> str:
    if not isinstance(value, str):
        return ''
    trimmed = value.strip()
    if len(trimmed) <= max_length:
        return trimmed
    return f'{trimmed[:max_length]}...'


class JobSubmissionService:
    """Accepts captures as pending jobs and answers owner-scoped status queries.

    Never waits for generation; the worker picks jobs up separately.
    """

    def __init__(self, store: Optional[JobStore] = None, clock: Optional[Callable[[], datetime]] = None):
        self.store = store or JobStore.get_instance()
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def submit(self, owner_id: str, url: str, content: str, topic: Optional[str] = None, requirements: Optional[str] = None) -> str:
        normalized_url = normalize_url(url)
        if not normalized_url:
            raise InvalidArgument('url must be a valid HTTP or HTTPS URL')
        normalized_content = sanitize_content(content)
        if not normalized_content:
            raise InvalidArgument('payload is required')
        topic = optional_text(topic)
        requirements = optional_text(requirements)

        now = self._clock()
        for attempt in range(1, JOB_CREATE_MAX_ATTEMPTS + 1):
            job = JobRecord(
                job_id=str(uuid.uuid4()),
                owner_id=owner_id,
                url=normalized_url,
                topic=topic,
                requirements=requirements,
                status=JobStatus.PENDING,
                request_payload=CapturePayload(content=normalized_content, topic=topic, requirements=requirements),
                created_at=now,
                updated_at=now,
                expires_at=int(now.timestamp()) + JOB_TTL_SECONDS,
            )
            try:
                self.store.create(job)
                return job.job_id
            except AlreadyExists:
                LOG.error('job_id_collision', extra={'job_id': job.job_id, 'attempt': attempt})
        raise AlreadyExists('could not allocate a unique job id')

    def get_status(self, owner_id: str, job_id: str) -> JobView:
        try:
            job = self.store.get(job_id)
        except NotFound:
            raise NotFound('Job not found', job_id=job_id)
        if job.owner_id != owner_id:
            # foreign jobs look exactly like missing ones
            raise NotFound('Job not found', job_id=job_id)
        return JobView.from_record(job)
