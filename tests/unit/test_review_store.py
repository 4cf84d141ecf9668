from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from leetstack.scheduling import (
    ReviewStateStore,
    CardKey,
    SourceType,
    RemoteSnapshot,
    Reviewable,
    InMemoryReviewBackend,
    RedisReviewBackend,
    ReviewSyncError,
    ReviewSyncRejected,
)
from tests.fixtures.mock_redis import MockRedisClient
from tests.fixtures.sample_data import FIXED_NOW, SNAPSHOT_REVIEWED


def note_card(card_id='card-1', note_id='note-1', owner='alice@example.com'):
    return CardKey(owner_id=owner, source_type=SourceType.NOTE, source_id=note_id, card_id=card_id)


@pytest.fixture
def sync_client():
    return MagicMock()


@pytest.fixture
def store(scheduler, sync_client):
    s = ReviewStateStore(scheduler=scheduler, backend=InMemoryReviewBackend(), sync=sync_client)
    yield s
    s.close()


@pytest.mark.unit
def test_card_key_string_round_trip():
    key = CardKey(owner_id='alice', source_type='problem', source_id='two-sum')
    assert key.as_string() == 'alice|problem|two-sum|'
    assert CardKey.from_string(key.as_string()) == key
    assert CardKey.from_string(note_card().as_string()) == note_card()


@pytest.mark.unit
def test_get_is_side_effect_free(store):
    assert store.get(note_card()) is None
    assert store.get(note_card()) is None
    assert store.due(now=FIXED_NOW + timedelta(days=400)) == []


@pytest.mark.unit
def test_get_or_init_reports_creation_once(store):
    state, created = store.get_or_init(note_card())
    assert created is True
    assert state.repetitions == 0
    assert state.next_review_date == FIXED_NOW + timedelta(days=1)
    again, created_again = store.get_or_init(note_card())
    assert created_again is False
    assert again.same_as(state)


@pytest.mark.unit
def test_reconcile_adopts_snapshot_with_fallbacks(store):
    state, changed = store.reconcile(note_card(), RemoteSnapshot(review_repetitions=4))
    assert changed is True
    assert state.repetitions == 4
    assert state.ease_factor == 2.5
    assert state.next_review_date == FIXED_NOW + timedelta(days=1)

    last = FIXED_NOW - timedelta(days=2)
    other, _ = store.reconcile(note_card('card-2'), RemoteSnapshot(last_reviewed_at=last))
    # no next date: due one interval after the last review
    assert other.next_review_date == last + timedelta(seconds=other.interval)


@pytest.mark.unit
def test_reconcile_is_idempotent(store):
    snapshot = RemoteSnapshot.model_validate(SNAPSHOT_REVIEWED)
    store.get_or_init(note_card())
    first, changed_first = store.reconcile(note_card(), snapshot)
    second, changed_second = store.reconcile(note_card(), snapshot)
    assert changed_first is True
    assert changed_second is False
    assert first.same_as(second)
    assert store.get(note_card()).same_as(first)


@pytest.mark.unit
def test_reconcile_only_writes_on_change(scheduler):
    backend = InMemoryReviewBackend()
    backend.save = MagicMock(wraps=backend.save)
    s = ReviewStateStore(scheduler=scheduler, backend=backend)
    s.reconcile(note_card(), RemoteSnapshot.model_validate(SNAPSHOT_REVIEWED))
    writes = backend.save.call_count
    s.reconcile(note_card(), RemoteSnapshot.model_validate(SNAPSHOT_REVIEWED))
    s.reconcile(note_card(), RemoteSnapshot())
    assert backend.save.call_count == writes


@pytest.mark.unit
def test_unsynced_grade_is_not_clobbered(scheduler):
    sync = MagicMock()
    sync.send.side_effect = ReviewSyncError('offline')
    s = ReviewStateStore(scheduler=scheduler, backend=InMemoryReviewBackend(), sync=sync)
    s.reconcile(note_card(), RemoteSnapshot.model_validate(SNAPSHOT_REVIEWED))
    outcome = s.grade(note_card(), 'good')
    s.wait_for_sync(timeout=5)
    assert s.is_unsynced(note_card())

    stale = RemoteSnapshot.model_validate(SNAPSHOT_REVIEWED)
    state, changed = s.reconcile(note_card(), stale)
    assert changed is False
    assert state.same_as(outcome.state)
    s.close()


@pytest.mark.unit
@pytest.mark.parametrize('snapshot', [
    RemoteSnapshot(last_reviewed_at=FIXED_NOW - timedelta(days=2), review_interval_seconds=5 * 86400),
    RemoteSnapshot(last_reviewed_at=FIXED_NOW - timedelta(days=2), next_review_date=FIXED_NOW + timedelta(days=30), review_interval_seconds=86400),
    RemoteSnapshot(last_reviewed_at=FIXED_NOW - timedelta(days=10)),
    RemoteSnapshot(review_interval_seconds=7 * 86400),
])
def test_reconciled_state_is_due_one_interval_after_last_review(store, snapshot):
    graded = note_card('graded')
    store.grade(graded, 'good')
    store.wait_for_sync(timeout=5)
    for key in (note_card('fresh'), graded):
        state, _ = store.reconcile(key, snapshot)
        if state.last_reviewed_at is not None:
            assert state.next_review_date == state.last_reviewed_at + timedelta(seconds=state.interval)
        assert store.get(key).same_as(state)


@pytest.mark.unit
def test_merge_with_new_last_review_moves_due_date(store):
    store.get_or_init(note_card())
    last = FIXED_NOW - timedelta(days=10)
    state, changed = store.reconcile(note_card(), RemoteSnapshot(last_reviewed_at=last))
    assert changed is True
    assert state.next_review_date == last + timedelta(seconds=state.interval)


@pytest.mark.unit
def test_rejected_sync_stops_retrying_and_accepts_server_values(scheduler):
    sync = MagicMock()
    sync.send.side_effect = ReviewSyncRejected('server rejected review sync with 404')
    s = ReviewStateStore(scheduler=scheduler, backend=InMemoryReviewBackend(), sync=sync)
    s.grade(note_card(), 'good')
    s.wait_for_sync(timeout=5)
    assert not s.is_unsynced(note_card())
    assert s.unsynced_keys() == []
    assert s.resync() == 0
    assert sync.send.call_count == 1

    state, changed = s.reconcile(note_card(), RemoteSnapshot.model_validate(SNAPSHOT_REVIEWED))
    assert changed is True
    assert state.interval == SNAPSHOT_REVIEWED['reviewIntervalSeconds']
    assert state.repetitions == SNAPSHOT_REVIEWED['reviewRepetitions']
    s.close()


@pytest.mark.unit
def test_synced_grade_accepts_server_values(store, sync_client):
    store.grade(note_card(), 'easy')
    store.wait_for_sync(timeout=5)
    assert sync_client.send.call_count == 1
    assert not store.is_unsynced(note_card())

    state, changed = store.reconcile(note_card(), RemoteSnapshot(review_repetitions=9))
    assert changed is True
    assert state.repetitions == 9


@pytest.mark.unit
def test_grade_sends_review_payload(store, sync_client):
    outcome = store.grade(note_card(), 'good')
    store.wait_for_sync(timeout=5)
    source_type, source_id, payload = sync_client.send.call_args.args
    assert (source_type, source_id) == ('note', 'note-1')
    body = payload.model_dump(by_alias=True)
    assert body['lastReviewStatus'] == 'good'
    assert body['reviewRepetitions'] == outcome.state.repetitions
    assert body['reviewIntervalSeconds'] == outcome.state.interval
    assert body['nextReviewDate'] == outcome.state.next_review_date


@pytest.mark.unit
def test_grade_updates_streak(store):
    key = note_card()
    assert store.grade(key, 'good').streak == 1
    assert store.grade(key, 'easy').streak == 2
    assert store.grade(key, 'hard').streak == 0
    assert store.streak(key) == 0


@pytest.mark.unit
def test_sync_failure_is_soft(scheduler):
    sync = MagicMock()
    sync.send.side_effect = RuntimeError('boom')
    s = ReviewStateStore(scheduler=scheduler, backend=InMemoryReviewBackend(), sync=sync)
    outcome = s.grade(note_card(), 'good')
    s.wait_for_sync(timeout=5)
    assert outcome.state.repetitions == 1
    assert s.unsynced_keys() == [note_card()]

    sync.send.side_effect = None
    assert s.resync() == 1
    s.wait_for_sync(timeout=5)
    assert s.unsynced_keys() == []
    s.close()


@pytest.mark.unit
def test_grade_without_sync_client_stays_pending(scheduler):
    s = ReviewStateStore(scheduler=scheduler, backend=InMemoryReviewBackend())
    outcome = s.grade(note_card(), 'good')
    assert outcome.sync_pending is True


@pytest.mark.unit
def test_reload_drops_removed_keys(store):
    keep = Reviewable(key=note_card('card-1'))
    gone = note_card('card-2')
    store.get_or_init(gone)
    store.grade(gone, 'good')
    other_owner = note_card('card-9', owner='bob@example.com')
    store.get_or_init(other_owner)

    dropped = store.reload([keep], owner_id='alice@example.com')
    assert dropped == 1
    assert store.get(gone) is None
    assert store.streak(gone) == 0
    assert store.get(keep.key) is not None
    assert store.get(other_owner) is not None


@pytest.mark.unit
def test_due_orders_by_date_then_insertion(store, fixed_clock):
    a, b, c = note_card('a'), note_card('b'), note_card('c')
    store.reconcile(a, RemoteSnapshot(next_review_date=FIXED_NOW - timedelta(hours=1)))
    store.reconcile(b, RemoteSnapshot(next_review_date=FIXED_NOW - timedelta(hours=3)))
    store.reconcile(c, RemoteSnapshot(next_review_date=FIXED_NOW - timedelta(hours=1)))
    store.get_or_init(note_card('later'))
    assert store.due() == [b, a, c]
    assert store.due(limit=1) == [b]
    assert store.due(owner_id='bob@example.com') == []


@pytest.mark.unit
def test_day_streak_counts_consecutive_days(store, fixed_clock):
    assert store.day_streak() == 1
    for days_ago, card in ((0, 'a'), (1, 'b'), (2, 'c'), (4, 'd')):
        store.reconcile(note_card(card), RemoteSnapshot(last_reviewed_at=FIXED_NOW - timedelta(days=days_ago)))
    assert store.day_streak() == 3


@pytest.mark.unit
def test_redis_backend_round_trip(scheduler):
    client = MockRedisClient()
    s = ReviewStateStore(scheduler=scheduler, backend=RedisReviewBackend(client))
    s.grade(note_card(), 'good')
    assert 'alice@example.com|note|note-1|card-1' in client.store['review_state']

    reopened = ReviewStateStore(scheduler=scheduler, backend=RedisReviewBackend(client))
    assert reopened.get(note_card()).repetitions == 1
    assert reopened.streak(note_card()) == 1
    assert reopened.reload([]) == 1
    assert client.store['review_state'] == {}
