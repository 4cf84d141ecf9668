import os
import json
import threading
import uuid
from datetime import datetime, timezone
from typing import Dict, List, Optional, Tuple

try:
    import redis
except ImportError:
    redis = None

from leetstack.notes.models import CardRecord, NoteRecord
from leetstack.utils import get_logger, backend_for, connect_redis, NotFound, PersistenceFailure

LOG = get_logger()

NOTE_KEY_PREFIX = os.getenv('NOTE_KEY_PREFIX', 'notes')

# sentinel: insert at the end unless told otherwise
INSERT_AT_END = object()


def _redis_errors():
    if redis is None:
        return ()
    return (redis.RedisError,)


def _now() -> datetime:
    return datetime.now(timezone.utc)


class NoteStore:
    """Notes partitioned by owner: one Redis hash per owner, or a nested dict."""

    _instance = None

    def __init__(self, client=None):
        self._in_memory: Dict[str, Dict[str, dict]] = {}
        self._lock = threading.Lock()
        self._client = client
        if self._client is None and backend_for('NOTE_STORE_BACKEND') == 'redis':
            self._client = connect_redis('note_store')
        self._use_redis = self._client is not None

    @classmethod
    def get_instance(cls) -> 'NoteStore':
        if cls._instance is None:
            cls._instance = NoteStore()
        return cls._instance

    def _key(self, owner_id: str) -> str:
        return f'{NOTE_KEY_PREFIX}:{owner_id}'

    def _load_all(self, owner_id: str) -> List[dict]:
        try:
            if self._use_redis:
                return [json.loads(raw) for raw in self._client.hgetall(self._key(owner_id)).values()]
            with self._lock:
                return [dict(obj) for obj in self._in_memory.get(owner_id, {}).values()]
        except _redis_errors() as e:
            LOG.error('note_list_failed', extra={'owner_id': owner_id, 'error': str(e)})
            raise PersistenceFailure(str(e), owner_id=owner_id) from e

    def _write(self, note: NoteRecord):
        obj = note.model_dump(mode='json')
        try:
            if self._use_redis:
                self._client.hset(self._key(note.owner_id), note.note_id, json.dumps(obj))
            else:
                with self._lock:
                    self._in_memory.setdefault(note.owner_id, {})[note.note_id] = obj
        except _redis_errors() as e:
            LOG.error('note_write_failed', extra={'note_id': note.note_id, 'error': str(e)})
            raise PersistenceFailure(str(e), note_id=note.note_id) from e

    def get(self, owner_id: str, note_id: str) -> NoteRecord:
        try:
            if self._use_redis:
                raw = self._client.hget(self._key(owner_id), note_id)
                obj = json.loads(raw) if raw else None
            else:
                with self._lock:
                    obj = self._in_memory.get(owner_id, {}).get(note_id)
        except _redis_errors() as e:
            LOG.error('note_get_failed', extra={'note_id': note_id, 'error': str(e)})
            raise PersistenceFailure(str(e), note_id=note_id) from e
        if obj is None:
            raise NotFound('Note not found', note_id=note_id)
        return NoteRecord.model_validate(obj)

    def list(self, owner_id: str) -> List[NoteRecord]:
        notes = [NoteRecord.model_validate(obj) for obj in self._load_all(owner_id)]
        return sorted(notes, key=lambda n: n.created_at)

    def find_by_url(self, owner_id: str, url: str) -> Optional[NoteRecord]:
        for note in self.list(owner_id):
            if note.source_url == url:
                return note
        return None

    def create(self, owner_id: str, source_url: str, topic: Optional[str], summary: Optional[str], cards: List[CardRecord], request_payload: Optional[dict] = None) -> NoteRecord:
        now = _now()
        note = NoteRecord(
            note_id=str(uuid.uuid4()),
            owner_id=owner_id,
            source_url=source_url,
            topic=topic,
            summary=summary,
            cards=cards,
            request_payload=request_payload,
            created_at=now,
            updated_at=now,
        )
        self._write(note)
        LOG.info('note_created', extra={'note_id': note.note_id, 'owner_id': owner_id, 'card_count': len(cards)})
        return note

    def append_cards(self, owner_id: str, note_id: str, cards: List[CardRecord], summary: Optional[str] = None) -> NoteRecord:
        note = self.get(owner_id, note_id)
        if not cards:
            return note
        note.cards = note.cards + cards
        if summary and not note.summary:
            note.summary = summary
        note.updated_at = _now()
        self._write(note)
        LOG.info('note_cards_appended', extra={'note_id': note_id, 'added': len(cards), 'total': len(note.cards)})
        return note

    def insert_card(self, owner_id: str, note_id: str, card: CardRecord, insert_after=INSERT_AT_END) -> NoteRecord:
        """Insert ``card``; ``insert_after=None`` puts it first, an unknown id puts it last."""
        note = self.get(owner_id, note_id)
        cards = list(note.cards)
        index = len(cards)
        if insert_after is None:
            index = 0
        elif insert_after is not INSERT_AT_END:
            for i, existing in enumerate(cards):
                if existing.id == insert_after:
                    index = i + 1
                    break
        cards.insert(index, card)
        note.cards = cards
        note.updated_at = _now()
        self._write(note)
        return note

    def delete_card(self, owner_id: str, note_id: str, card_id: str) -> NoteRecord:
        note = self.get(owner_id, note_id)
        remaining = [c for c in note.cards if c.id != card_id]
        if len(remaining) == len(note.cards):
            raise NotFound('Card not found', note_id=note_id, card_id=card_id)
        note.cards = remaining
        note.updated_at = _now()
        self._write(note)
        return note

    def update_review(self, owner_id: str, note_id: str, last_reviewed_at: datetime, next_review_date: datetime, last_review_status: Optional[str] = None,
                      review_interval_seconds: Optional[int] = None, review_ease_factor: Optional[float] = None, review_repetitions: Optional[int] = None) -> NoteRecord:
        note = self.get(owner_id, note_id)
        note.last_reviewed_at = last_reviewed_at
        note.next_review_date = next_review_date
        note.last_review_status = last_review_status
        note.review_interval_seconds = review_interval_seconds
        note.review_ease_factor = review_ease_factor
        note.review_repetitions = review_repetitions
        note.updated_at = _now()
        self._write(note)
        return note

    def upsert_summary(self, owner_id: str, source_url: str, summary: str, topic: Optional[str] = None) -> Tuple[NoteRecord, bool]:
        """Attach ``summary`` to the owner's note for ``source_url``, creating an empty note if needed."""
        existing = self.find_by_url(owner_id, source_url)
        if existing is None:
            return self.create(owner_id, source_url, topic, summary, []), True
        existing.summary = summary
        existing.topic = topic or existing.topic
        existing.updated_at = _now()
        self._write(existing)
        LOG.info('note_summary_updated', extra={'note_id': existing.note_id, 'owner_id': owner_id})
        return existing, False

    def update_summary(self, owner_id: str, note_id: str, **fields) -> NoteRecord:
        """Overwrite ``summary`` and/or ``topic``; only the keyword arguments given are touched."""
        note = self.get(owner_id, note_id)
        for name in ('summary', 'topic'):
            if name in fields:
                setattr(note, name, fields[name])
        note.updated_at = _now()
        self._write(note)
        return note

    def health(self) -> str:
        if not self._use_redis:
            return 'ok (memory)'
        try:
            self._client.ping()
            return 'ok'
        except _redis_errors() as e:
            return f'error: {e}'
