"""Client-side review state store.

Holds the per-card ReviewState map, reconciles it with snapshots pulled from
the server of record, and pushes freshly graded states back in the
background.

Staleness policy: every entry carries ``local_version`` (bumped on each local
grade) and ``synced_version`` (the newest version the server acknowledged).
While ``local_version > synced_version`` the entry is unsynced and remote
snapshots are ignored for it, so an optimistic grade is never clobbered by a
snapshot that predates it.
"""
from __future__ import annotations

import json
import os
import threading
import time
from concurrent.futures import Executor, Future, ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Iterable, Iterator, List, Optional, Tuple

from pydantic import BaseModel, ConfigDict, field_validator
from pydantic.alias_generators import to_camel

from leetstack.scheduling.review_sync import ReviewSyncClient, ReviewSyncPayload, ReviewSyncRejected
from leetstack.scheduling.scheduler import ReviewGrade, ReviewState, SpacedRepetitionScheduler, ensure_utc
from leetstack.utils import backend_for, connect_redis, get_logger, log_review_sync

LOG = get_logger()

REVIEW_SYNC_WORKERS = int(os.getenv('REVIEW_SYNC_WORKERS', '2'))
REVIEW_STATE_REDIS_KEY = os.getenv('REVIEW_STATE_REDIS_KEY', 'review_state')
DAY_STREAK_WINDOW_DAYS = 30

_KEY_SEPARATOR = '|'


class SourceType(str, Enum):
    PROBLEM = 'problem'
    NOTE = 'note'


class CardKey(BaseModel):
    model_config = ConfigDict(frozen=True)

    owner_id: str
    source_type: SourceType
    source_id: str
    card_id: Optional[str] = None

    def as_string(self) -> str:
        return _KEY_SEPARATOR.join([self.owner_id, self.source_type.value, self.source_id, self.card_id or ''])

    @classmethod
    def from_string(cls, value: str) -> 'CardKey':
        owner_id, source_type, source_id, card_id = value.split(_KEY_SEPARATOR, 3)
        return cls(owner_id=owner_id, source_type=source_type, source_id=source_id, card_id=card_id or None)


class RemoteSnapshot(BaseModel):
    """Review fields as the server of record reports them; any may be null."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    next_review_date: Optional[datetime] = None
    last_reviewed_at: Optional[datetime] = None
    review_interval_seconds: Optional[int] = None
    review_ease_factor: Optional[float] = None
    review_repetitions: Optional[int] = None

    @field_validator('next_review_date', 'last_reviewed_at')
    @classmethod
    def _assume_utc(cls, value):
        return ensure_utc(value)


class Reviewable(BaseModel):
    key: CardKey
    snapshot: RemoteSnapshot = RemoteSnapshot()


class GradeOutcome(BaseModel):
    key: CardKey
    grade: ReviewGrade
    state: ReviewState
    streak: int
    sync_pending: bool


class InMemoryReviewBackend:
    def __init__(self):
        self._entries: Dict[str, Dict[str, Any]] = {}
        self._seq = 0

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        entry = self._entries.get(key)
        return dict(entry) if entry is not None else None

    def save(self, key: str, entry: Dict[str, Any]):
        self._entries[key] = dict(entry)

    def delete(self, key: str):
        self._entries.pop(key, None)

    def items(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        for key, entry in list(self._entries.items()):
            yield key, dict(entry)

    def next_seq(self) -> int:
        self._seq += 1
        return self._seq


class RedisReviewBackend:
    """One Redis hash holding every entry as JSON."""

    def __init__(self, client, hash_key: str = REVIEW_STATE_REDIS_KEY):
        self._client = client
        self._hash_key = hash_key

    def load(self, key: str) -> Optional[Dict[str, Any]]:
        raw = self._client.hget(self._hash_key, key)
        return json.loads(raw) if raw else None

    def save(self, key: str, entry: Dict[str, Any]):
        self._client.hset(self._hash_key, key, json.dumps(entry))

    def delete(self, key: str):
        self._client.hdel(self._hash_key, key)

    def items(self) -> Iterator[Tuple[str, Dict[str, Any]]]:
        for key, raw in self._client.hgetall(self._hash_key).items():
            yield key, json.loads(raw)

    def next_seq(self) -> int:
        return int(self._client.incr(f'{self._hash_key}:seq'))


def default_review_backend():
    if backend_for('REVIEW_STATE_BACKEND') == 'redis':
        client = connect_redis('review_state')
        if client is not None:
            return RedisReviewBackend(client)
    return InMemoryReviewBackend()


def _dump_state(state: ReviewState) -> Dict[str, Any]:
    return state.model_dump(mode='json')


class ReviewStateStore:
    def __init__(
        self,
        scheduler: Optional[SpacedRepetitionScheduler] = None,
        backend=None,
        sync: Optional[ReviewSyncClient] = None,
        executor: Optional[Executor] = None,
    ):
        self.scheduler = scheduler or SpacedRepetitionScheduler()
        self._backend = backend if backend is not None else default_review_backend()
        self._sync = sync
        self._executor = executor
        self._lock = threading.RLock()
        self._pending: List[Future] = []

    # entries

    def _new_entry(self, state: ReviewState) -> Dict[str, Any]:
        return {
            'state': _dump_state(state),
            'local_version': 0,
            'synced_version': 0,
            'streak': 0,
            'last_grade': None,
            'seq': self._backend.next_seq(),
        }

    def get(self, key: CardKey) -> Optional[ReviewState]:
        entry = self._backend.load(key.as_string())
        if entry is None:
            return None
        return ReviewState.model_validate(entry['state'])

    def get_or_init(self, key: CardKey) -> Tuple[ReviewState, bool]:
        with self._lock:
            entry = self._backend.load(key.as_string())
            if entry is not None:
                return ReviewState.model_validate(entry['state']), False
            state = self.scheduler.initial_state()
            self._backend.save(key.as_string(), self._new_entry(state))
            return state, True

    def is_unsynced(self, key: CardKey) -> bool:
        entry = self._backend.load(key.as_string())
        return entry is not None and entry['local_version'] > entry['synced_version']

    def streak(self, key: CardKey) -> int:
        entry = self._backend.load(key.as_string())
        return int(entry['streak']) if entry else 0

    # reconciliation

    def _with_due_date(self, state: ReviewState) -> ReviewState:
        # a reviewed card is always due exactly one interval after its last review
        if state.last_reviewed_at is None:
            return state
        return state.model_copy(update={'next_review_date': state.last_reviewed_at + timedelta(seconds=state.interval)})

    def _adopt(self, snapshot: RemoteSnapshot) -> ReviewState:
        initial = self.scheduler.initial_state()
        return self._with_due_date(ReviewState(
            ease_factor=snapshot.review_ease_factor if snapshot.review_ease_factor is not None else initial.ease_factor,
            interval=snapshot.review_interval_seconds if snapshot.review_interval_seconds is not None else initial.interval,
            repetitions=snapshot.review_repetitions if snapshot.review_repetitions is not None else initial.repetitions,
            next_review_date=snapshot.next_review_date or initial.next_review_date,
            last_reviewed_at=snapshot.last_reviewed_at,
        ))

    def _merge(self, current: ReviewState, snapshot: RemoteSnapshot) -> ReviewState:
        updates = {}
        if snapshot.review_ease_factor is not None:
            updates['ease_factor'] = snapshot.review_ease_factor
        if snapshot.review_interval_seconds is not None:
            updates['interval'] = snapshot.review_interval_seconds
        if snapshot.review_repetitions is not None:
            updates['repetitions'] = snapshot.review_repetitions
        if snapshot.next_review_date is not None:
            updates['next_review_date'] = snapshot.next_review_date
        if snapshot.last_reviewed_at is not None:
            updates['last_reviewed_at'] = snapshot.last_reviewed_at
        return self._with_due_date(current.model_copy(update=updates))

    def reconcile(self, key: CardKey, snapshot: Optional[RemoteSnapshot]) -> Tuple[ReviewState, bool]:
        """Fold a server snapshot into local state; returns (state, changed)."""
        snapshot = snapshot or RemoteSnapshot()
        k = key.as_string()
        with self._lock:
            entry = self._backend.load(k)
            if entry is None:
                state = self._adopt(snapshot)
                self._backend.save(k, self._new_entry(state))
                return state, True
            current = ReviewState.model_validate(entry['state'])
            if entry['local_version'] > entry['synced_version']:
                LOG.debug('reconcile_skipped_unsynced', extra={'card_key': k})
                return current, False
            merged = self._merge(current, snapshot)
            if merged.same_as(current):
                return current, False
            entry['state'] = _dump_state(merged)
            self._backend.save(k, entry)
            return merged, True

    def reload(self, reviewables: Iterable[Reviewable], owner_id: Optional[str] = None) -> int:
        """Reconcile a full reviewable set and drop state for keys not in it.

        When ``owner_id`` is given only that owner's entries are eligible for
        removal. Returns the number of entries dropped.
        """
        valid = set()
        for item in reviewables:
            self.reconcile(item.key, item.snapshot)
            valid.add(item.key.as_string())
        dropped = 0
        with self._lock:
            for k, _ in self._backend.items():
                if k in valid:
                    continue
                if owner_id is not None and CardKey.from_string(k).owner_id != owner_id:
                    continue
                self._backend.delete(k)
                dropped += 1
        if dropped:
            LOG.info('review_state_pruned', extra={'dropped': dropped, 'owner_id': owner_id})
        return dropped

    # grading

    def grade(self, key: CardKey, grade: ReviewGrade | str) -> GradeOutcome:
        grade = ReviewGrade(grade)
        k = key.as_string()
        with self._lock:
            current, _ = self.get_or_init(key)
            result = self.scheduler.schedule(current, grade)
            state = ReviewState.model_validate(result.model_dump())
            entry = self._backend.load(k)
            entry['state'] = _dump_state(state)
            entry['streak'] = 0 if grade is ReviewGrade.HARD else int(entry['streak']) + 1
            entry['local_version'] = int(entry['local_version']) + 1
            entry['last_grade'] = grade.value
            self._backend.save(k, entry)
            version = entry['local_version']
            streak = entry['streak']

        future = self._enqueue_sync(key, version, state, grade)
        sync_pending = True
        if future is not None and future.done() and future.exception() is None:
            sync_pending = not future.result()
        return GradeOutcome(key=key, grade=grade, state=state, streak=streak, sync_pending=sync_pending)

    # sync

    def _executor_or_default(self) -> Executor:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=REVIEW_SYNC_WORKERS, thread_name_prefix='review-sync')
        return self._executor

    def _enqueue_sync(self, key: CardKey, version: int, state: ReviewState, grade: ReviewGrade) -> Optional[Future]:
        if self._sync is None:
            return None
        payload = ReviewSyncPayload(
            last_reviewed_at=state.last_reviewed_at,
            next_review_date=state.next_review_date,
            last_review_status=grade.value,
            review_interval_seconds=state.interval,
            review_ease_factor=state.ease_factor,
            review_repetitions=state.repetitions,
        )
        future = self._executor_or_default().submit(self._run_sync, key, version, payload)
        with self._lock:
            self._pending = [f for f in self._pending if not f.done()]
            self._pending.append(future)
        return future

    def _run_sync(self, key: CardKey, version: int, payload: ReviewSyncPayload) -> bool:
        start = time.time()
        try:
            self._sync.send(key.source_type.value, key.source_id, payload)
        except ReviewSyncRejected as e:
            # permanent rejection: clear the unsynced mark so resync stops and snapshots apply again
            log_review_sync(key.as_string(), version, False, int((time.time() - start) * 1000), error=str(e))
            self._mark_synced(key, version)
            return False
        except Exception as e:
            # local state stays unsynced and is retried by resync()
            log_review_sync(key.as_string(), version, False, int((time.time() - start) * 1000), error=str(e))
            return False
        self._mark_synced(key, version)
        log_review_sync(key.as_string(), version, True, int((time.time() - start) * 1000))
        return True

    def _mark_synced(self, key: CardKey, version: int):
        k = key.as_string()
        with self._lock:
            entry = self._backend.load(k)
            if entry is None:
                return
            entry['synced_version'] = max(int(entry['synced_version']), version)
            self._backend.save(k, entry)

    def unsynced_keys(self) -> List[CardKey]:
        return [
            CardKey.from_string(k)
            for k, entry in self._backend.items()
            if entry['local_version'] > entry['synced_version']
        ]

    def resync(self) -> int:
        """Re-enqueue every unsynced entry; returns how many were queued."""
        queued = 0
        for key in self.unsynced_keys():
            entry = self._backend.load(key.as_string())
            if entry is None or not entry.get('last_grade'):
                continue
            state = ReviewState.model_validate(entry['state'])
            if self._enqueue_sync(key, entry['local_version'], state, ReviewGrade(entry['last_grade'])) is not None:
                queued += 1
        return queued

    def wait_for_sync(self, timeout: Optional[float] = None):
        with self._lock:
            pending = list(self._pending)
        wait(pending, timeout=timeout)

    def close(self):
        if self._executor is not None:
            self._executor.shutdown(wait=True)

    # queries

    def due(self, now: Optional[datetime] = None, owner_id: Optional[str] = None, limit: Optional[int] = None) -> List[CardKey]:
        now = now or self.scheduler.now()
        rows = []
        for k, entry in self._backend.items():
            key = CardKey.from_string(k)
            if owner_id is not None and key.owner_id != owner_id:
                continue
            state = ReviewState.model_validate(entry['state'])
            if state.next_review_date <= now:
                rows.append((state.next_review_date, entry.get('seq', 0), key))
        rows.sort(key=lambda r: (r[0], r[1]))
        keys = [r[2] for r in rows]
        return keys[:limit] if limit else keys

    def day_streak(self, now: Optional[datetime] = None, owner_id: Optional[str] = None) -> int:
        """Consecutive days, ending today, with at least one review (minimum 1)."""
        now = now or self.scheduler.now()
        days = set()
        for k, entry in self._backend.items():
            if owner_id is not None and CardKey.from_string(k).owner_id != owner_id:
                continue
            reviewed = ReviewState.model_validate(entry['state']).last_reviewed_at
            if reviewed is not None:
                days.add(reviewed.date())
        streak = 0
        for offset in range(DAY_STREAK_WINDOW_DAYS):
            if (now - timedelta(days=offset)).date() in days:
                streak += 1
            else:
                break
        return streak or 1
