import os
import pytest
from pathlib import Path

from dotenv import load_dotenv

# load test env first; module-level config is read at import time
env_path = Path(__file__).resolve().parents[1] / '.env.test'
if env_path.exists():
    load_dotenv(env_path)

os.environ.setdefault('TESTING', '1')
os.environ['LOG_FILE_PATH'] = ''
os.environ.setdefault('LOG_LEVEL', 'WARNING')
os.environ.setdefault('JOB_DISPATCH', 'none')
os.environ.setdefault('REVIEW_SYNC_RETRY_MULTIPLIER', '0')
os.environ.setdefault('REVIEW_SYNC_RETRY_ATTEMPTS', '3')
for backend_var in ('JOB_STORE_BACKEND', 'NOTE_STORE_BACKEND', 'REVIEW_STATE_BACKEND', 'PROBLEM_STORE_BACKEND'):
    os.environ[backend_var] = 'memory'

from tests.fixtures.mock_generation import StubGenerator, cards_payload
from tests.fixtures.mock_redis import MockRedisClient
from tests.fixtures.sample_data import FixedClock, TEST_API_KEY, OTHER_API_KEY


@pytest.fixture(autouse=True)
def reset_singletons():
    from leetstack.jobs import JobStore
    from leetstack.notes import NoteStore
    from leetstack.problems import ProblemStore
    from leetstack.generation import CardGenerator
    from leetstack.utils import ApiKeyIdentityProvider
    for cls in (JobStore, NoteStore, ProblemStore, CardGenerator, ApiKeyIdentityProvider):
        cls._instance = None
    yield


@pytest.fixture
def fixed_clock():
    return FixedClock()


@pytest.fixture
def scheduler(fixed_clock):
    from leetstack.scheduling import SpacedRepetitionScheduler, SchedulerConfig
    return SpacedRepetitionScheduler(SchedulerConfig(), clock=fixed_clock)


@pytest.fixture
def redis_client():
    return MockRedisClient()


@pytest.fixture
def job_store():
    from leetstack.jobs import JobStore
    return JobStore()


@pytest.fixture
def note_store():
    from leetstack.notes import NoteStore
    return NoteStore()


@pytest.fixture
def problem_store():
    from leetstack.problems import ProblemStore
    return ProblemStore()


@pytest.fixture
def stub_generator():
    return StubGenerator(cards_payload(2))


@pytest.fixture
def worker(job_store, note_store, stub_generator):
    from leetstack.jobs import GenerationWorker
    return GenerationWorker(job_store, note_store, stub_generator, timeout=5)


@pytest.fixture
def submission(job_store):
    from leetstack.jobs import JobSubmissionService
    return JobSubmissionService(job_store)


@pytest.fixture
def identity():
    from leetstack.utils import ApiKeyIdentityProvider
    provider = ApiKeyIdentityProvider({})
    provider.register(TEST_API_KEY, 'alice@example.com')
    provider.register(OTHER_API_KEY, 'bob@example.com')
    return provider


@pytest.fixture
def auth_headers():
    return {'Authorization': f'Bearer {TEST_API_KEY}'}


@pytest.fixture
def other_auth_headers():
    return {'Authorization': f'Bearer {OTHER_API_KEY}'}


@pytest.fixture
def api_client(job_store, note_store, problem_store, stub_generator, identity):
    from fastapi.testclient import TestClient
    import main

    main.app.dependency_overrides[main.get_job_store] = lambda: job_store
    main.app.dependency_overrides[main.get_note_store] = lambda: note_store
    main.app.dependency_overrides[main.get_problem_store] = lambda: problem_store
    main.app.dependency_overrides[main.get_generator] = lambda: stub_generator
    main.app.dependency_overrides[main.get_identity] = lambda: identity
    main.app.dependency_overrides[main.get_dispatch_mode] = lambda: 'none'
    try:
        yield TestClient(main.app)
    finally:
        main.app.dependency_overrides.clear()
