import os
import time
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, Optional, List

from fastapi import FastAPI, Request, Response, Depends
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel
from pydantic_settings import BaseSettings, SettingsConfigDict

from leetstack.generation import CardGenerator
from leetstack.jobs import JobStore, JobSubmissionService, GenerationWorker, normalize_url, sanitize_content
from leetstack.notes import NoteStore, NoteView, NoteSummaryView, CardRecord, INSERT_AT_END, clean_tags, optional_text
from leetstack.problems import ProblemStore, ProblemView
from leetstack.scheduling import ReviewSyncPayload
from leetstack.utils import (
    get_logger,
    log_request,
    set_request_context,
    ApiKeyIdentityProvider,
    LeetStackError,
    InvalidArgument,
    NotFound,
)

LOG = get_logger()


class Settings(BaseSettings):
    model_config = SettingsConfigDict(extra='ignore')

    HOST: str = '0.0.0.0'
    PORT: int = 8000
    ENVIRONMENT: str = 'development'
    LOG_LEVEL: str = 'INFO'
    CORS_ORIGIN: str = '*'
    # background: run the worker in-process after submit; none: an external trigger calls the worker
    JOB_DISPATCH: str = 'background'
    JOB_PURGE_INTERVAL_SECONDS: int = 60
    REDIS_REQUIRED_FOR_READY: bool = False


settings = Settings()

app = FastAPI(title='LeetStack Capture Service', version='1.0.0', description='Turns captured study material into spaced-repetition cards')

# CORS config
origins = [o.strip() for o in settings.CORS_ORIGIN.split(',') if o.strip()]
app.add_middleware(
    CORSMiddleware,
    allow_origins=origins or ["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# strong references so in-flight worker tasks are not garbage collected
_background_tasks = set()


@app.middleware('http')
async def add_request_id_and_logging(request: Request, call_next):
    # prefer incoming X-Request-ID header for cross-service tracing
    request_id = request.headers.get('x-request-id') or os.urandom(8).hex()
    request.state.request_id = request_id
    set_request_context(request_id)
    start = time.time()
    try:
        response: Response = await call_next(request)
    except Exception:
        LOG.exception('Unhandled exception in request')
        body = {'success': False, 'error': {'code': 'internal_error', 'message': 'Internal server error', 'request_id': request_id}}
        return JSONResponse(status_code=500, content=body)
    duration = int((time.time() - start) * 1000)
    log_request(request_id, request.method, request.url.path, response.status_code, duration, request.client.host if request.client else None)
    response.headers['X-Request-ID'] = request_id
    return response


def _error_body(request: Request, code: str, message: str) -> dict:
    return {'success': False, 'error': {'code': code, 'message': message, 'request_id': getattr(request.state, 'request_id', None)}}


@app.exception_handler(LeetStackError)
async def leetstack_error_handler(request: Request, exc: LeetStackError):
    if exc.http_status >= 500:
        LOG.error('request_failed', extra={'code': exc.code, 'error': exc.message, 'path': request.url.path})
    return JSONResponse(status_code=exc.http_status, content=_error_body(request, exc.code, exc.public_message))


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    first = exc.errors()[0] if exc.errors() else {}
    field = '.'.join(str(p) for p in first.get('loc', ()) if p != 'body')
    message = f"{field}: {first.get('msg', 'invalid request')}" if field else first.get('msg', 'invalid request')
    return JSONResponse(status_code=400, content=_error_body(request, InvalidArgument.code, message))


# Dependencies (overridable in tests)

def get_job_store() -> JobStore:
    return JobStore.get_instance()


def get_note_store() -> NoteStore:
    return NoteStore.get_instance()


def get_problem_store() -> ProblemStore:
    return ProblemStore.get_instance()


def get_generator() -> CardGenerator:
    return CardGenerator.get_instance()


def get_identity() -> ApiKeyIdentityProvider:
    return ApiKeyIdentityProvider.get_instance()


def get_submission_service(store: JobStore = Depends(get_job_store)) -> JobSubmissionService:
    return JobSubmissionService(store)


def get_worker(jobs: JobStore = Depends(get_job_store), notes: NoteStore = Depends(get_note_store)) -> GenerationWorker:
    return GenerationWorker(jobs, notes)


def get_dispatch_mode() -> str:
    return settings.JOB_DISPATCH.lower()


def current_owner(request: Request, identity: ApiKeyIdentityProvider = Depends(get_identity)) -> str:
    owner_id = identity.verify(request.headers.get('authorization'))
    set_request_context(getattr(request.state, 'request_id', None), owner_id)
    return owner_id


@app.get('/health')
async def health():
    return {'status': 'ok', 'timestamp': datetime.now(timezone.utc).isoformat(), 'service': 'leetstack'}


@app.get('/ready')
async def ready(jobs: JobStore = Depends(get_job_store), notes: NoteStore = Depends(get_note_store), problems: ProblemStore = Depends(get_problem_store)):
    services = {
        'job_store': await asyncio.to_thread(jobs.health),
        'note_store': await asyncio.to_thread(notes.health),
        'problem_store': await asyncio.to_thread(problems.health),
        'generation': 'ok' if os.getenv('GENERATION_API_KEY') or os.getenv('OPENAI_API_KEY') else 'warn: no generation key',
    }
    ready_ok = True
    for name in ('job_store', 'note_store', 'problem_store'):
        if services[name].startswith('error') and settings.REDIS_REQUIRED_FOR_READY:
            ready_ok = False
    status_code = 200 if ready_ok else 503
    return JSONResponse(status_code=status_code, content={'status': 'ready' if ready_ok else 'not ready', 'services': services})


class CaptureRequest(BaseModel):
    url: Optional[str] = None
    payload: Optional[str] = None
    content: Optional[str] = None
    topic: Optional[str] = None
    requirements: Optional[str] = None


class AddCardRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    front: Optional[str] = None
    back: Optional[str] = None
    extra: Optional[str] = None
    tags: Optional[List[str]] = None
    insert_after_card_id: Optional[str] = None


def _dispatch(worker: GenerationWorker, job_id: str):
    task = asyncio.create_task(worker.process(job_id))
    _background_tasks.add(task)
    task.add_done_callback(_background_tasks.discard)


@app.post('/notes/jobs', status_code=202)
async def submit_capture(
    req: CaptureRequest,
    owner_id: str = Depends(current_owner),
    service: JobSubmissionService = Depends(get_submission_service),
    worker: GenerationWorker = Depends(get_worker),
    dispatch: str = Depends(get_dispatch_mode),
):
    content = req.payload if req.payload is not None else req.content
    job_id = await asyncio.to_thread(service.submit, owner_id, req.url, content, req.topic, req.requirements)
    if dispatch == 'background':
        _dispatch(worker, job_id)
    return JSONResponse(status_code=202, content={'jobId': job_id})


@app.get('/notes/jobs/{job_id}')
async def job_status(job_id: str, owner_id: str = Depends(current_owner), service: JobSubmissionService = Depends(get_submission_service)):
    view = await asyncio.to_thread(service.get_status, owner_id, job_id)
    return JSONResponse(status_code=200, content=view.model_dump(mode='json', by_alias=True))


def _note_response(note, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=NoteView.from_record(note).model_dump(mode='json', by_alias=True))


class SummaryRequest(BaseModel):
    url: Optional[str] = None
    content: Optional[str] = None
    topic: Optional[str] = None


class NoteSummaryUpdate(BaseModel):
    summary: Optional[str] = None
    topic: Optional[str] = None


SUMMARY_MAX_CONTENT = int(os.getenv('SUMMARY_MAX_CONTENT', '100000'))


@app.get('/notes')
async def list_notes(owner_id: str = Depends(current_owner), notes: NoteStore = Depends(get_note_store)):
    records = await asyncio.to_thread(notes.list, owner_id)
    # newest first
    views = [NoteSummaryView.from_record(n).model_dump(mode='json', by_alias=True) for n in reversed(records)]
    return JSONResponse(status_code=200, content={'notes': views})


@app.get('/notes/by-url')
async def get_note_by_url(url: Optional[str] = None, owner_id: str = Depends(current_owner), notes: NoteStore = Depends(get_note_store)):
    if not url:
        raise InvalidArgument('url query parameter is required')
    normalized_url = normalize_url(url)
    if not normalized_url:
        raise InvalidArgument('url must be a valid HTTP or HTTPS URL')
    note = await asyncio.to_thread(notes.find_by_url, owner_id, normalized_url)
    if note is None:
        raise NotFound('Note not found')
    return _note_response(note)


@app.post('/notes/summary')
async def create_summary(
    req: SummaryRequest,
    request: Request,
    owner_id: str = Depends(current_owner),
    notes: NoteStore = Depends(get_note_store),
    generator: CardGenerator = Depends(get_generator),
):
    normalized_url = normalize_url(req.url)
    if not normalized_url:
        raise InvalidArgument('url must be a valid HTTP or HTTPS URL')
    content = sanitize_content(req.content, SUMMARY_MAX_CONTENT)
    if not content:
        raise InvalidArgument('content is required')
    topic = optional_text(req.topic)
    summary = await asyncio.to_thread(generator.summarize, content, topic, getattr(request.state, 'request_id', None))
    note, created = await asyncio.to_thread(notes.upsert_summary, owner_id, normalized_url, summary, topic)
    LOG.info('note_summary_saved', extra={'note_id': note.note_id, 'created': created, 'summary_length': len(summary)})
    return {'summary': summary, 'noteId': note.note_id}


@app.get('/notes/{note_id}')
async def get_note(note_id: str, owner_id: str = Depends(current_owner), notes: NoteStore = Depends(get_note_store)):
    note = await asyncio.to_thread(notes.get, owner_id, note_id)
    return _note_response(note)


@app.post('/notes/{note_id}/cards', status_code=201)
async def add_card(note_id: str, req: AddCardRequest, owner_id: str = Depends(current_owner), notes: NoteStore = Depends(get_note_store)):
    front, back = optional_text(req.front), optional_text(req.back)
    if not front or not back:
        raise InvalidArgument('front and back fields are required')
    card = CardRecord(front=front, back=back, extra=optional_text(req.extra), tags=clean_tags(req.tags))
    insert_after = INSERT_AT_END
    if 'insert_after_card_id' in req.model_fields_set and req.insert_after_card_id is None:
        insert_after = None
    elif optional_text(req.insert_after_card_id):
        insert_after = optional_text(req.insert_after_card_id)
    note = await asyncio.to_thread(notes.insert_card, owner_id, note_id, card, insert_after)
    return _note_response(note, status_code=201)


@app.delete('/notes/{note_id}/cards/{card_id}')
async def delete_card(note_id: str, card_id: str, owner_id: str = Depends(current_owner), notes: NoteStore = Depends(get_note_store)):
    note = await asyncio.to_thread(notes.delete_card, owner_id, note_id, card_id)
    return _note_response(note)


@app.patch('/notes/{note_id}/review')
async def update_note_review(note_id: str, req: ReviewSyncPayload, owner_id: str = Depends(current_owner), notes: NoteStore = Depends(get_note_store)):
    note = await asyncio.to_thread(
        notes.update_review,
        owner_id,
        note_id,
        req.last_reviewed_at,
        req.next_review_date,
        req.last_review_status,
        req.review_interval_seconds,
        req.review_ease_factor,
        req.review_repetitions,
    )
    return _note_response(note)


@app.patch('/notes/{note_id}')
async def update_note_summary(note_id: str, req: NoteSummaryUpdate, owner_id: str = Depends(current_owner), notes: NoteStore = Depends(get_note_store)):
    fields = {name: getattr(req, name) for name in ('summary', 'topic') if name in req.model_fields_set}
    if not req.summary and not req.topic:
        raise InvalidArgument('At least one of summary or topic must be provided')
    note = await asyncio.to_thread(notes.update_summary, owner_id, note_id, **fields)
    return {'noteId': note.note_id, 'summary': note.summary, 'topic': note.topic}


class ProblemReviewRequest(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    last_reviewed_at: datetime
    last_review_status: Optional[str] = None
    next_review_date: Optional[datetime] = None
    review_interval_seconds: Optional[int] = None
    review_ease_factor: Optional[float] = None
    review_repetitions: Optional[int] = None


def _problem_response(problem, status_code: int = 200) -> JSONResponse:
    return JSONResponse(status_code=status_code, content=ProblemView.from_record(problem).model_dump(mode='json', by_alias=True))


@app.post('/problems')
async def save_problem(payload: Dict[str, Any], owner_id: str = Depends(current_owner), problems: ProblemStore = Depends(get_problem_store)):
    problem, created = await asyncio.to_thread(problems.upsert, owner_id, payload)
    return _problem_response(problem, status_code=201 if created else 200)


@app.get('/problems')
async def list_problems(owner_id: str = Depends(current_owner), problems: ProblemStore = Depends(get_problem_store)):
    records = await asyncio.to_thread(problems.list, owner_id)
    return JSONResponse(status_code=200, content=[ProblemView.from_record(p).model_dump(mode='json', by_alias=True) for p in records])


@app.patch('/problems/{question_index}/review')
async def update_problem_review(question_index: str, req: ProblemReviewRequest, owner_id: str = Depends(current_owner), problems: ProblemStore = Depends(get_problem_store)):
    problem = await asyncio.to_thread(
        problems.update_review,
        owner_id,
        question_index.strip(),
        req.last_reviewed_at,
        req.last_review_status,
        req.next_review_date,
        req.review_interval_seconds,
        req.review_ease_factor,
        req.review_repetitions,
    )
    return _problem_response(problem)


async def _purge_loop(jobs: JobStore, interval: int):
    while True:
        await asyncio.sleep(interval)
        try:
            await asyncio.to_thread(jobs.purge_expired)
        except LeetStackError:
            LOG.exception('job_purge_failed')


@app.on_event('startup')
async def on_startup():
    LOG.info('LeetStack service starting', extra={'env': settings.ENVIRONMENT, 'dispatch': settings.JOB_DISPATCH})
    if not (os.getenv('GENERATION_API_KEY') or os.getenv('OPENAI_API_KEY')):
        LOG.warning('GENERATION_API_KEY not set; capture jobs will fail at generation')
    if settings.JOB_PURGE_INTERVAL_SECONDS > 0:
        task = asyncio.create_task(_purge_loop(get_job_store(), settings.JOB_PURGE_INTERVAL_SECONDS))
        _background_tasks.add(task)
        task.add_done_callback(_background_tasks.discard)


@app.on_event('shutdown')
async def on_shutdown():
    LOG.info('LeetStack service shutting down')
    pending = [t for t in _background_tasks if not t.done()]
    for task in pending:
        task.cancel()
    if pending:
        await asyncio.gather(*pending, return_exceptions=True)


if __name__ == '__main__':
    import uvicorn

    workers = int(os.getenv('WORKERS', '1'))
    # uvicorn refuses reload with several workers
    if settings.ENVIRONMENT == 'development':
        workers = 1
    reload_enabled = (settings.ENVIRONMENT == 'development') and (workers == 1)

    uvicorn.run(
        'main:app',
        host=settings.HOST,
        port=settings.PORT,
        log_level=settings.LOG_LEVEL.lower(),
        reload=reload_enabled,
        workers=workers,
    )
