import asyncio

import pytest

from leetstack.jobs import GenerationWorker
from tests.fixtures.mock_generation import StubGenerator, cards_payload
from tests.fixtures.sample_data import MALFORMED_PAYLOAD, SAMPLE_CONTENT, SAMPLE_URL, SNAPSHOT_REVIEWED


def submit(api_client, headers, **body):
    body.setdefault('url', SAMPLE_URL)
    body.setdefault('content', SAMPLE_CONTENT)
    return api_client.post('/notes/jobs', json=body, headers=headers)


def run_worker(job_store, note_store, job_id, response):
    worker = GenerationWorker(job_store, note_store, StubGenerator(response), timeout=5)
    return asyncio.run(worker.process(job_id))


@pytest.fixture
def note_id(api_client, auth_headers, job_store, note_store):
    job_id = submit(api_client, auth_headers).json()['jobId']
    run_worker(job_store, note_store, job_id, cards_payload(2))
    return api_client.get(f'/notes/jobs/{job_id}', headers=auth_headers).json()['result']['noteId']


@pytest.mark.integration
def test_capture_happy_path(api_client, auth_headers, job_store, note_store):
    r = submit(api_client, auth_headers)
    assert r.status_code == 202
    job_id = r.json()['jobId']
    assert 'X-Request-ID' in r.headers

    status = api_client.get(f'/notes/jobs/{job_id}', headers=auth_headers)
    assert status.status_code == 200
    assert status.json()['status'] == 'pending'
    assert status.json()['result'] is None

    run_worker(job_store, note_store, job_id, cards_payload(2))

    data = api_client.get(f'/notes/jobs/{job_id}', headers=auth_headers).json()
    assert data['status'] == 'completed'
    assert len(data['result']['cards']) == 2
    assert data['result']['newCards'] == 2
    assert data['result']['topic'] == 'Consistent hashing'
    assert data['result']['cards'][0]['id'].startswith('card-')


@pytest.mark.integration
def test_payload_field_is_accepted_as_content(api_client, auth_headers, job_store):
    r = api_client.post('/notes/jobs', json={'url': SAMPLE_URL, 'payload': 'pasted text'}, headers=auth_headers)
    assert r.status_code == 202
    assert job_store.get(r.json()['jobId']).request_payload.content == 'pasted text'


@pytest.mark.integration
def test_malformed_generation_fails_job(api_client, auth_headers, job_store, note_store):
    job_id = submit(api_client, auth_headers).json()['jobId']
    run_worker(job_store, note_store, job_id, MALFORMED_PAYLOAD)

    data = api_client.get(f'/notes/jobs/{job_id}', headers=auth_headers).json()
    assert data['status'] == 'failed'
    assert data['errorMessage']
    assert data['result'] is None
    assert note_store.list('alice@example.com') == []


@pytest.mark.integration
def test_requests_without_key_are_rejected(api_client):
    r = api_client.post('/notes/jobs', json={'url': SAMPLE_URL, 'content': SAMPLE_CONTENT})
    assert r.status_code == 401
    body = r.json()
    assert body['success'] is False
    assert body['error']['code'] == 'unauthorized'

    r = api_client.get('/notes/jobs/anything', headers={'Authorization': 'Bearer nope'})
    assert r.status_code == 401


@pytest.mark.integration
def test_foreign_job_looks_missing(api_client, auth_headers, other_auth_headers):
    job_id = submit(api_client, auth_headers).json()['jobId']
    r = api_client.get(f'/notes/jobs/{job_id}', headers=other_auth_headers)
    assert r.status_code == 404
    assert r.json()['error']['code'] == 'not_found'


@pytest.mark.integration
@pytest.mark.parametrize('body', [
    {'url': 'not-a-url', 'content': SAMPLE_CONTENT},
    {'url': SAMPLE_URL, 'content': '   '},
    {'content': SAMPLE_CONTENT},
    {'url': SAMPLE_URL, 'content': 42},
])
def test_invalid_capture_is_400(api_client, auth_headers, body):
    r = api_client.post('/notes/jobs', json=body, headers=auth_headers)
    assert r.status_code == 400
    assert r.json()['error']['code'] == 'invalid_argument'


@pytest.mark.integration
def test_get_note(api_client, auth_headers, other_auth_headers, note_id):
    r = api_client.get(f'/notes/{note_id}', headers=auth_headers)
    assert r.status_code == 200
    body = r.json()
    assert body['noteId'] == note_id
    assert body['url'] == SAMPLE_URL
    assert len(body['cards']) == 2
    assert 'ownerId' not in body

    assert api_client.get(f'/notes/{note_id}', headers=other_auth_headers).status_code == 404


@pytest.mark.integration
def test_add_card_positions(api_client, auth_headers, note_id):
    cards = api_client.get(f'/notes/{note_id}', headers=auth_headers).json()['cards']
    first_id = cards[0]['id']

    r = api_client.post(f'/notes/{note_id}/cards', json={'front': 'Top', 'back': 'B', 'insertAfterCardId': None}, headers=auth_headers)
    assert r.status_code == 201
    assert r.json()['cards'][0]['front'] == 'Top'

    r = api_client.post(f'/notes/{note_id}/cards', json={'front': 'Middle', 'back': 'B', 'insertAfterCardId': first_id}, headers=auth_headers)
    fronts = [c['front'] for c in r.json()['cards']]
    assert fronts.index('Middle') == fronts.index('Question 0') + 1

    r = api_client.post(f'/notes/{note_id}/cards', json={'front': 'Bottom', 'back': 'B', 'tags': ['x', ' ']}, headers=auth_headers)
    last = r.json()['cards'][-1]
    assert last['front'] == 'Bottom'
    assert last['tags'] == ['x']
    assert len(r.json()['cards']) == 5


@pytest.mark.integration
def test_add_card_requires_front_and_back(api_client, auth_headers, note_id):
    r = api_client.post(f'/notes/{note_id}/cards', json={'front': 'only'}, headers=auth_headers)
    assert r.status_code == 400


@pytest.mark.integration
def test_delete_card(api_client, auth_headers, note_id):
    card_id = api_client.get(f'/notes/{note_id}', headers=auth_headers).json()['cards'][0]['id']
    r = api_client.delete(f'/notes/{note_id}/cards/{card_id}', headers=auth_headers)
    assert r.status_code == 200
    assert [c['id'] for c in r.json()['cards']].count(card_id) == 0

    r = api_client.delete(f'/notes/{note_id}/cards/{card_id}', headers=auth_headers)
    assert r.status_code == 404


@pytest.mark.integration
def test_review_patch_updates_note(api_client, auth_headers, note_id):
    body = dict(SNAPSHOT_REVIEWED, lastReviewStatus='good')
    r = api_client.patch(f'/notes/{note_id}/review', json=body, headers=auth_headers)
    assert r.status_code == 200
    data = r.json()
    assert data['reviewIntervalSeconds'] == 259200
    assert data['reviewEaseFactor'] == 2.6
    assert data['reviewRepetitions'] == 2
    assert data['lastReviewStatus'] == 'good'
    assert data['nextReviewDate'].startswith('2024-02-23T08:00:00')


@pytest.mark.integration
def test_review_patch_unknown_note_is_404(api_client, auth_headers):
    r = api_client.patch('/notes/missing/review', json=SNAPSHOT_REVIEWED, headers=auth_headers)
    assert r.status_code == 404


@pytest.mark.integration
def test_review_patch_validates_dates(api_client, auth_headers, note_id):
    r = api_client.patch(f'/notes/{note_id}/review', json={'lastReviewedAt': 'yesterday'}, headers=auth_headers)
    assert r.status_code == 400
