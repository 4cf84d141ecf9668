"""Best-effort push of review results to the server of record."""
from __future__ import annotations

import os
import time
from datetime import datetime
from typing import Optional

import requests
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from tenacity import retry, stop_after_attempt, wait_exponential, retry_if_exception_type

from leetstack.utils import get_logger

LOG = get_logger()

REVIEW_SYNC_BASE_URL = os.getenv('REVIEW_SYNC_BASE_URL', 'http://localhost:8000')
REVIEW_SYNC_API_KEY = os.getenv('REVIEW_SYNC_API_KEY', '')
REVIEW_SYNC_TIMEOUT = float(os.getenv('REVIEW_SYNC_TIMEOUT', '10'))
REVIEW_SYNC_RETRY_ATTEMPTS = int(os.getenv('REVIEW_SYNC_RETRY_ATTEMPTS', '3'))
REVIEW_SYNC_RETRY_MULTIPLIER = float(os.getenv('REVIEW_SYNC_RETRY_MULTIPLIER', '1'))
REVIEW_SYNC_RETRY_MAX_WAIT = float(os.getenv('REVIEW_SYNC_RETRY_MAX_WAIT', '8'))


class ReviewSyncError(Exception):
    """Transient failure; retried."""


class ReviewSyncRejected(Exception):
    """The server refused the payload (4xx); not retried."""


class ReviewSyncPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    last_reviewed_at: datetime
    next_review_date: datetime
    last_review_status: Optional[str] = None
    review_interval_seconds: Optional[int] = None
    review_ease_factor: Optional[float] = None
    review_repetitions: Optional[int] = None


class ReviewSyncClient:
    def __init__(self, base_url: str = None, api_key: str = None, timeout: float = None, session: Optional[requests.Session] = None):
        self.base_url = (base_url or REVIEW_SYNC_BASE_URL).rstrip('/')
        self.api_key = api_key if api_key is not None else REVIEW_SYNC_API_KEY
        self.timeout = timeout or REVIEW_SYNC_TIMEOUT
        self.session = session or requests.Session()

    def _path_for(self, source_type: str, source_id: str) -> str:
        if source_type == 'problem':
            return f'/problems/{source_id}/review'
        return f'/notes/{source_id}/review'

    @retry(
        stop=stop_after_attempt(REVIEW_SYNC_RETRY_ATTEMPTS),
        wait=wait_exponential(multiplier=REVIEW_SYNC_RETRY_MULTIPLIER, max=REVIEW_SYNC_RETRY_MAX_WAIT),
        retry=retry_if_exception_type(ReviewSyncError),
        reraise=True,
    )
    def send(self, source_type: str, source_id: str, payload: ReviewSyncPayload):
        url = self.base_url + self._path_for(source_type, source_id)
        headers = {'Content-Type': 'application/json'}
        if self.api_key:
            headers['Authorization'] = f'Bearer {self.api_key}'
        start = time.time()
        try:
            resp = self.session.patch(url, data=payload.model_dump_json(by_alias=True), headers=headers, timeout=self.timeout)
        except requests.RequestException as e:
            raise ReviewSyncError(str(e)) from e
        duration_ms = int((time.time() - start) * 1000)
        if resp.status_code >= 500:
            raise ReviewSyncError(f'server returned {resp.status_code}')
        if resp.status_code >= 400:
            raise ReviewSyncRejected(f'server rejected review sync with {resp.status_code}')
        LOG.debug('review_sync_sent', extra={'url': url, 'status_code': resp.status_code, 'duration_ms': duration_ms})
