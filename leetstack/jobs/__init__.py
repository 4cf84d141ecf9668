"""Capture jobs: records, store, submission, polling and the generation worker."""

from .models import JobStatus, ALLOWED_TRANSITIONS, CapturePayload, JobRecord, JobResult, JobView
from .job_store import JobStore
from .submission import JobSubmissionService, normalize_url, sanitize_content
from .poller import JobPoller, PollTimeout
from .worker import GenerationWorker

__all__ = [
	'JobStatus',
	'ALLOWED_TRANSITIONS',
	'CapturePayload',
	'JobRecord',
	'JobResult',
	'JobView',
	'JobStore',
	'JobSubmissionService',
	'normalize_url',
	'sanitize_content',
	'JobPoller',
	'PollTimeout',
	'GenerationWorker',
]
