import os
import time
import asyncio
from typing import Any, Dict, Iterable, List, Optional

from leetstack.generation import CardGenerator, GeneratedStack, parse_card_payload
from leetstack.jobs.job_store import JobStore
from leetstack.jobs.models import JobRecord, JobStatus
from leetstack.notes import NoteRecord, NoteStore
from leetstack.utils import (
    get_logger,
    log_card_generation,
    NotFound,
    PersistenceFailure,
    PreconditionFailed,
    UpstreamFailure,
)

LOG = get_logger()

GENERATION_TIMEOUT_SECONDS = float(os.getenv('GENERATION_TIMEOUT_SECONDS', '120'))
GENERIC_FAILURE_MESSAGE = 'Failed to generate review cards'


class GenerationWorker:
    """Claims pending jobs, generates their cards and records the outcome.

    Delivery is at-least-once and may be concurrent; the job store's
    compare-and-swap on status is the only guard against double processing.
    """

    def __init__(self, jobs: Optional[JobStore] = None, notes: Optional[NoteStore] = None, generator: Any = None, timeout: Optional[float] = None):
        self.jobs = jobs or JobStore.get_instance()
        self.notes = notes or NoteStore.get_instance()
        self._generator = generator
        self.timeout = timeout if timeout is not None else GENERATION_TIMEOUT_SECONDS

    @property
    def generator(self):
        if self._generator is None:
            self._generator = CardGenerator.get_instance()
        return self._generator

    async def process(self, job_id: str) -> Optional[JobStatus]:
        """Run one job. Returns the terminal status it reached, or None for a no-op."""
        try:
            job = await asyncio.to_thread(self.jobs.get, job_id)
        except NotFound:
            LOG.error('job_not_found', extra={'job_id': job_id})
            return None
        if job.status is not JobStatus.PENDING:
            LOG.info('job_already_handled', extra={'job_id': job_id, 'status': job.status.value})
            return None

        try:
            await asyncio.to_thread(self.jobs.transition, job_id, JobStatus.PENDING, JobStatus.PROCESSING)
        except PreconditionFailed:
            LOG.info('job_claimed_elsewhere', extra={'job_id': job_id})
            return None

        try:
            fields = await self._run(job)
        except asyncio.TimeoutError:
            LOG.error('generation_timeout', extra={'job_id': job_id, 'timeout_seconds': self.timeout})
            return await self._fail(job_id, f'Generation timed out after {self.timeout:g} seconds')
        except UpstreamFailure as e:
            LOG.error('generation_failed', extra={'job_id': job_id, 'error': e.message})
            return await self._fail(job_id, e.message)
        except PersistenceFailure as e:
            LOG.error('note_persist_failed', extra={'job_id': job_id, 'error': e.message})
            return await self._fail(job_id, GENERIC_FAILURE_MESSAGE)
        except Exception:
            LOG.exception('job_processor_error', extra={'job_id': job_id})
            return await self._fail(job_id, GENERIC_FAILURE_MESSAGE)

        try:
            await asyncio.to_thread(self.jobs.transition, job_id, JobStatus.PROCESSING, JobStatus.COMPLETED, fields)
        except PreconditionFailed as e:
            LOG.warning('job_complete_lost_race', extra={'job_id': job_id, 'error': e.message})
            return None
        except PersistenceFailure as e:
            LOG.error('job_complete_failed', extra={'job_id': job_id, 'error': e.message})
            return await self._fail(job_id, GENERIC_FAILURE_MESSAGE)
        return JobStatus.COMPLETED

    async def _run(self, job: JobRecord) -> Dict[str, Any]:
        start = time.time()
        payload = job.request_payload
        topic = payload.topic or job.topic
        requirements = payload.requirements or job.requirements

        existing = await asyncio.to_thread(self.notes.find_by_url, job.owner_id, job.url)
        anchor = existing.cards[-1] if existing is not None and existing.cards else None

        raw = await asyncio.wait_for(
            asyncio.to_thread(
                self.generator.generate,
                job.url,
                payload.content,
                topic=topic,
                requirements=requirements,
                anchor=anchor,
                job_id=job.job_id,
            ),
            timeout=self.timeout,
        )
        stack = parse_card_payload(raw, topic)
        note = await asyncio.to_thread(self._persist, job, existing, stack)

        log_card_generation(job.job_id, len(note.cards), len(stack.cards), int((time.time() - start) * 1000), appended=existing is not None)
        return {
            'result_note_id': note.note_id,
            'result_topic': note.topic or stack.topic,
            'result_summary': note.summary,
            'result_cards': stack.cards,
            'result_new_cards': len(stack.cards),
            'error_message': None,
        }

    def _persist(self, job: JobRecord, existing: Optional[NoteRecord], stack: GeneratedStack) -> NoteRecord:
        if existing is not None:
            return self.notes.append_cards(job.owner_id, existing.note_id, stack.cards, summary=stack.summary)
        return self.notes.create(
            job.owner_id,
            job.url,
            stack.topic,
            stack.summary,
            stack.cards,
            request_payload={'url': job.url, **job.request_payload.model_dump()},
        )

    async def _fail(self, job_id: str, message: str) -> Optional[JobStatus]:
        try:
            await asyncio.to_thread(self.jobs.transition, job_id, JobStatus.PROCESSING, JobStatus.FAILED, {'error_message': message})
        except (PreconditionFailed, NotFound) as e:
            LOG.warning('job_fail_lost_race', extra={'job_id': job_id, 'error': e.message})
            return None
        except PersistenceFailure as e:
            LOG.error('job_fail_not_recorded', extra={'job_id': job_id, 'error': e.message})
            return None
        return JobStatus.FAILED

    async def handle_job_events(self, records: Iterable[Dict[str, Any]]) -> List[str]:
        """Process a change-notification batch; only INSERT events carrying a job id count."""
        processed = []
        for record in records or []:
            if (record or {}).get('eventName') != 'INSERT':
                continue
            job_id = record.get('jobId') or (record.get('keys') or {}).get('jobId')
            if not job_id:
                continue
            try:
                await self.process(job_id)
                processed.append(job_id)
            except Exception:
                LOG.exception('job_event_failed', extra={'job_id': job_id})
        return processed
