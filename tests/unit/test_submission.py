import pytest

from leetstack.jobs import JobSubmissionService, JobStatus, normalize_url, sanitize_content
from leetstack.jobs import submission as submission_mod
from leetstack.utils import AlreadyExists, InvalidArgument, NotFound
from tests.fixtures.sample_data import FIXED_NOW, FixedClock, SAMPLE_CONTENT, SAMPLE_URL

OWNER = 'alice@example.com'


@pytest.mark.unit
@pytest.mark.parametrize('raw,expected', [
    ('https://x.test/a', 'https://x.test/a'),
    ('  HTTPS://X.Test/Path?q=1  ', 'https://x.test/Path?q=1'),
    ('http://x.test', 'http://x.test/'),
    ('ftp://x.test/a', None),
    ('x.test/a', None),
    ('https://', None),
    ('http://x.test:notaport/', None),
    ('', None),
    (None, None),
    (42, None),
])
def test_normalize_url(raw, expected):
    assert normalize_url(raw) == expected


@pytest.mark.unit
def test_sanitize_content_trims_and_truncates():
    assert sanitize_content('  text  ') == 'text'
    assert sanitize_content('   ') == ''
    assert sanitize_content(None) == ''
    long = 'x' * 9000
    assert sanitize_content(long) == 'x' * 8000 + '...'


@pytest.mark.unit
def test_submit_creates_pending_job_with_ttl(job_store):
    service = JobSubmissionService(job_store, clock=FixedClock())
    job_id = service.submit(OWNER, SAMPLE_URL, f'  {SAMPLE_CONTENT}  ', topic=' ', requirements=' brief ')
    job = job_store.get(job_id)
    assert job.status is JobStatus.PENDING
    assert job.request_payload.content == SAMPLE_CONTENT
    assert job.topic is None
    assert job.requirements == 'brief'
    assert job.expires_at == int(FIXED_NOW.timestamp()) + 600


@pytest.mark.unit
@pytest.mark.parametrize('url,content', [
    ('not a url', SAMPLE_CONTENT),
    ('mailto:a@x.test', SAMPLE_CONTENT),
    (SAMPLE_URL, ''),
    (SAMPLE_URL, '   '),
    (SAMPLE_URL, None),
])
def test_submit_rejects_bad_input(submission, url, content):
    with pytest.raises(InvalidArgument):
        submission.submit(OWNER, url, content)


@pytest.mark.unit
def test_submit_retries_on_id_collision(job_store, monkeypatch):
    ids = iter(['dup', 'dup', 'fresh'])
    monkeypatch.setattr(submission_mod.uuid, 'uuid4', lambda: next(ids))
    service = JobSubmissionService(job_store)
    assert service.submit(OWNER, SAMPLE_URL, SAMPLE_CONTENT) == 'dup'
    assert service.submit(OWNER, SAMPLE_URL, SAMPLE_CONTENT) == 'fresh'


@pytest.mark.unit
def test_submit_gives_up_after_repeated_collisions(job_store, monkeypatch):
    monkeypatch.setattr(submission_mod.uuid, 'uuid4', lambda: 'same')
    service = JobSubmissionService(job_store)
    service.submit(OWNER, SAMPLE_URL, SAMPLE_CONTENT)
    with pytest.raises(AlreadyExists):
        service.submit(OWNER, SAMPLE_URL, SAMPLE_CONTENT)


@pytest.mark.unit
def test_get_status_pending_has_no_result(submission):
    job_id = submission.submit(OWNER, SAMPLE_URL, SAMPLE_CONTENT)
    view = submission.get_status(OWNER, job_id)
    assert view.status is JobStatus.PENDING
    assert view.result is None
    assert view.model_dump(by_alias=True)['jobId'] == job_id


@pytest.mark.unit
def test_get_status_hides_foreign_and_missing_jobs(submission):
    job_id = submission.submit(OWNER, SAMPLE_URL, SAMPLE_CONTENT)
    with pytest.raises(NotFound):
        submission.get_status('bob@example.com', job_id)
    with pytest.raises(NotFound):
        submission.get_status(OWNER, 'missing')


@pytest.mark.unit
def test_get_status_result_only_when_completed(submission, job_store):
    job_id = submission.submit(OWNER, SAMPLE_URL, SAMPLE_CONTENT)
    job_store.transition(job_id, 'pending', 'processing', {'result_note_id': 'early'})
    assert submission.get_status(OWNER, job_id).result is None
    job_store.transition(job_id, 'processing', 'completed', {'result_note_id': 'note-1', 'result_topic': 'T'})
    view = submission.get_status(OWNER, job_id)
    assert view.result.note_id == 'note-1'
    assert view.result.topic == 'T'
