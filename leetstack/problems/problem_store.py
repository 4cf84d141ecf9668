import os
import json
import threading
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

try:
    import redis
except ImportError:
    redis = None

from leetstack.notes.models import optional_text
from leetstack.problems.models import ProblemRecord
from leetstack.utils import get_logger, backend_for, connect_redis, InvalidArgument, NotFound, PersistenceFailure

LOG = get_logger()

PROBLEM_KEY_PREFIX = os.getenv('PROBLEM_KEY_PREFIX', 'problems')

REQUIRED_FIELDS = ('title', 'titleSlug', 'difficulty', 'description')


def _redis_errors():
    if redis is None:
        return ()
    return (redis.RedisError,)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def normalize_question_index(value) -> Optional[str]:
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return str(int(value)) if float(value).is_integer() else str(value)
    return optional_text(value)


def _index_sort_key(problem: ProblemRecord):
    index = problem.question_index
    return (0, int(index), '') if index.isdigit() else (1, 0, index)


class ProblemStore:
    """Tracked problems partitioned by owner: one Redis hash per owner, or a nested dict."""

    _instance = None

    def __init__(self, client=None):
        self._in_memory: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()
        self._client = client
        if self._client is None and backend_for('PROBLEM_STORE_BACKEND') == 'redis':
            self._client = connect_redis('problem_store')
        self._use_redis = self._client is not None

    @classmethod
    def get_instance(cls) -> 'ProblemStore':
        if cls._instance is None:
            cls._instance = ProblemStore()
        return cls._instance

    def _key(self, owner_id: str) -> str:
        return f'{PROBLEM_KEY_PREFIX}:{owner_id}'

    def _load(self, owner_id: str, question_index: str) -> Optional[ProblemRecord]:
        try:
            if self._use_redis:
                raw = self._client.hget(self._key(owner_id), question_index)
                obj = json.loads(raw) if raw else None
            else:
                with self._lock:
                    obj = self._in_memory.get(owner_id, {}).get(question_index)
        except _redis_errors() as e:
            LOG.error('problem_get_failed', extra={'question_index': question_index, 'error': str(e)})
            raise PersistenceFailure(str(e), question_index=question_index) from e
        return ProblemRecord.model_validate(obj) if obj is not None else None

    def _write(self, problem: ProblemRecord):
        obj = problem.model_dump(mode='json')
        try:
            if self._use_redis:
                self._client.hset(self._key(problem.owner_id), problem.question_index, json.dumps(obj))
            else:
                with self._lock:
                    self._in_memory.setdefault(problem.owner_id, {})[problem.question_index] = obj
        except _redis_errors() as e:
            LOG.error('problem_write_failed', extra={'question_index': problem.question_index, 'error': str(e)})
            raise PersistenceFailure(str(e), question_index=problem.question_index) from e

    def get(self, owner_id: str, question_index: str) -> ProblemRecord:
        problem = self._load(owner_id, question_index)
        if problem is None:
            raise NotFound('Question not found', question_index=question_index)
        return problem

    def list(self, owner_id: str) -> List[ProblemRecord]:
        try:
            if self._use_redis:
                objs = [json.loads(raw) for raw in self._client.hgetall(self._key(owner_id)).values()]
            else:
                with self._lock:
                    objs = [dict(obj) for obj in self._in_memory.get(owner_id, {}).values()]
        except _redis_errors() as e:
            LOG.error('problem_list_failed', extra={'owner_id': owner_id, 'error': str(e)})
            raise PersistenceFailure(str(e), owner_id=owner_id) from e
        return sorted((ProblemRecord.model_validate(obj) for obj in objs), key=_index_sort_key)

    def upsert(self, owner_id: str, payload: Dict[str, Any]) -> Tuple[ProblemRecord, bool]:
        """Create or overwrite the problem at ``payload['questionIndex']``; returns (problem, created).

        Review fields and ``createdAt`` survive an overwrite.
        """
        missing = [f for f in REQUIRED_FIELDS if optional_text(payload.get(f)) is None]
        if missing:
            raise InvalidArgument(f"Missing required fields: {', '.join(missing)}")
        question_index = normalize_question_index(payload.get('questionIndex', payload.get('index')))
        if not question_index:
            raise InvalidArgument('questionIndex must be provided')

        existing = self._load(owner_id, question_index)
        now = _now()
        fields = {
            'title': optional_text(payload['title']),
            'title_slug': optional_text(payload['titleSlug']),
            'difficulty': optional_text(payload['difficulty']),
            'description': optional_text(payload['description']),
            'paid_only': bool(payload.get('isPaidOnly', payload.get('paidOnly', False))),
            'solution': optional_text(payload.get('solution')),
            'ideal_solution_code': optional_text(payload.get('idealSolutionCode')),
            'note': optional_text(payload.get('note')),
            'example_testcases': optional_text(payload.get('exampleTestcases')),
            'updated_at': now,
        }
        problem_id = optional_text(payload.get('id')) or optional_text(payload.get('questionId'))
        if problem_id:
            fields['problem_id'] = problem_id
        if existing is not None:
            problem = existing.model_copy(update=fields)
        else:
            problem = ProblemRecord(owner_id=owner_id, question_index=question_index, created_at=now, **fields)
        self._write(problem)
        LOG.info('problem_saved', extra={'question_index': question_index, 'owner_id': owner_id, 'created': existing is None})
        return problem, existing is None

    def update_review(self, owner_id: str, question_index: str, last_reviewed_at: datetime, last_review_status: Optional[str] = None,
                      next_review_date: Optional[datetime] = None, review_interval_seconds: Optional[int] = None,
                      review_ease_factor: Optional[float] = None, review_repetitions: Optional[int] = None) -> ProblemRecord:
        problem = self.get(owner_id, question_index)
        updates = {
            'last_reviewed_at': last_reviewed_at,
            'last_review_status': last_review_status,
            'updated_at': _now(),
        }
        # scheduling fields are only replaced when the caller sends them
        for name, value in (
            ('next_review_date', next_review_date),
            ('review_interval_seconds', review_interval_seconds),
            ('review_ease_factor', review_ease_factor),
            ('review_repetitions', review_repetitions),
        ):
            if value is not None:
                updates[name] = value
        problem = problem.model_copy(update=updates)
        self._write(problem)
        return problem

    def health(self) -> str:
        if not self._use_redis:
            return 'ok (memory)'
        try:
            self._client.ping()
            return 'ok'
        except _redis_errors() as e:
            return f'error: {e}'
