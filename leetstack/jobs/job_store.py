import os
import json
import time
import threading
from datetime import datetime, timezone
from typing import Optional, Dict, Any

try:
    import redis
except ImportError:
    redis = None

from leetstack.jobs.models import ALLOWED_TRANSITIONS, JobRecord, JobStatus
from leetstack.utils import (
    get_logger,
    log_job_transition,
    backend_for,
    connect_redis,
    AlreadyExists,
    InvalidTransition,
    NotFound,
    PersistenceFailure,
    PreconditionFailed,
)

LOG = get_logger()

JOB_KEY_PREFIX = os.getenv('JOB_KEY_PREFIX', 'note_job')
JOB_CAS_MAX_RETRIES = int(os.getenv('JOB_CAS_MAX_RETRIES', '5'))


def _redis_errors():
    if redis is None:
        return ()
    return (redis.RedisError,)


class JobStore:
    """Keyed job records with a compare-and-swap status transition.

    Backed by Redis when ``JOB_STORE_BACKEND=redis`` and reachable (CAS via
    WATCH/MULTI, reclamation via EXPIREAT), otherwise by a process-local dict
    guarded by a lock.
    """

    _instance = None

    def __init__(self, client=None):
        self._in_memory: Dict[str, Dict[str, Any]] = {}
        self._lock = threading.Lock()
        self._client = client
        if self._client is None and backend_for('JOB_STORE_BACKEND') == 'redis':
            self._client = connect_redis('job_store')
        self._use_redis = self._client is not None
        LOG.info('JobStore initialized', extra={'backend': 'redis' if self._use_redis else 'memory'})

    @classmethod
    def get_instance(cls) -> 'JobStore':
        if cls._instance is None:
            cls._instance = JobStore()
        return cls._instance

    def _key(self, job_id: str) -> str:
        return f'{JOB_KEY_PREFIX}:{job_id}'

    def create(self, job: JobRecord) -> JobRecord:
        obj = job.to_storage()
        try:
            if self._use_redis:
                created = self._client.set(self._key(job.job_id), json.dumps(obj), nx=True)
                if not created:
                    raise AlreadyExists(f'job {job.job_id} already exists', job_id=job.job_id)
                self._client.expireat(self._key(job.job_id), job.expires_at)
            else:
                with self._lock:
                    if job.job_id in self._in_memory:
                        raise AlreadyExists(f'job {job.job_id} already exists', job_id=job.job_id)
                    self._in_memory[job.job_id] = obj
        except _redis_errors() as e:
            LOG.error('job_create_failed', extra={'job_id': job.job_id, 'error': str(e)})
            raise PersistenceFailure(str(e), job_id=job.job_id) from e
        LOG.info('job_created', extra={'job_id': job.job_id, 'owner_id': job.owner_id})
        return job

    def get(self, job_id: str) -> JobRecord:
        try:
            if self._use_redis:
                raw = self._client.get(self._key(job_id))
                obj = json.loads(raw) if raw else None
            else:
                with self._lock:
                    obj = self._in_memory.get(job_id)
                    obj = dict(obj) if obj is not None else None
        except _redis_errors() as e:
            LOG.error('job_get_failed', extra={'job_id': job_id, 'error': str(e)})
            raise PersistenceFailure(str(e), job_id=job_id) from e
        if obj is None:
            raise NotFound(f'job {job_id} not found', job_id=job_id)
        return JobRecord.model_validate(obj)

    def _apply(self, obj: Dict[str, Any], job_id: str, from_status: JobStatus, to_status: JobStatus, fields: Dict[str, Any]) -> Dict[str, Any]:
        current = JobStatus(obj['status'])
        if current is not from_status:
            raise PreconditionFailed(
                f'job {job_id} is {current.value}, expected {from_status.value}',
                job_id=job_id, current=current.value, expected=from_status.value,
            )
        updated = dict(obj)
        updated.update(fields)
        updated['status'] = to_status.value
        updated['updated_at'] = datetime.now(timezone.utc).isoformat()
        # round-trip through the model so fields are validated before they are written
        return JobRecord.model_validate(updated).to_storage()

    def transition(self, job_id: str, from_status: JobStatus, to_status: JobStatus, fields: Optional[Dict[str, Any]] = None) -> JobRecord:
        from_status, to_status = JobStatus(from_status), JobStatus(to_status)
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransition(f'{from_status.value} -> {to_status.value} is not allowed', job_id=job_id)
        fields = {k: v for k, v in (fields or {}).items() if k not in ('job_id', 'owner_id', 'status', 'created_at', 'expires_at')}

        if not self._use_redis:
            with self._lock:
                obj = self._in_memory.get(job_id)
                if obj is None:
                    raise NotFound(f'job {job_id} not found', job_id=job_id)
                updated = self._apply(obj, job_id, from_status, to_status, fields)
                self._in_memory[job_id] = updated
        else:
            updated = self._transition_redis(job_id, from_status, to_status, fields)

        log_job_transition(job_id, from_status.value, to_status.value, updated.get('owner_id'))
        return JobRecord.model_validate(updated)

    def _transition_redis(self, job_id: str, from_status: JobStatus, to_status: JobStatus, fields: Dict[str, Any]) -> Dict[str, Any]:
        key = self._key(job_id)
        try:
            with self._client.pipeline() as pipe:
                for _ in range(JOB_CAS_MAX_RETRIES):
                    try:
                        pipe.watch(key)
                        raw = pipe.get(key)
                        if not raw:
                            raise NotFound(f'job {job_id} not found', job_id=job_id)
                        updated = self._apply(json.loads(raw), job_id, from_status, to_status, fields)
                        pipe.multi()
                        pipe.set(key, json.dumps(updated))
                        pipe.expireat(key, updated['expires_at'])
                        pipe.execute()
                        return updated
                    except redis.WatchError:
                        # someone wrote between WATCH and EXEC; re-read and re-check the status
                        continue
                    finally:
                        pipe.reset()
        except _redis_errors() as e:
            LOG.error('job_transition_failed', extra={'job_id': job_id, 'error': str(e)})
            raise PersistenceFailure(str(e), job_id=job_id) from e
        raise PersistenceFailure(f'job {job_id} kept changing during transition', job_id=job_id)

    def purge_expired(self, now: Optional[int] = None) -> int:
        """Drop records past ``expires_at``. Redis expires keys natively."""
        if self._use_redis:
            return 0
        now = int(now if now is not None else time.time())
        with self._lock:
            expired = [job_id for job_id, obj in self._in_memory.items() if obj.get('expires_at', now + 1) <= now]
            for job_id in expired:
                del self._in_memory[job_id]
        if expired:
            LOG.info('jobs_purged', extra={'count': len(expired)})
        return len(expired)

    def health(self) -> str:
        if not self._use_redis:
            return 'ok (memory)'
        try:
            self._client.ping()
            return 'ok'
        except _redis_errors() as e:
            return f'error: {e}'
