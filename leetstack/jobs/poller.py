import os
import time
from typing import Callable, Optional

from leetstack.jobs.models import JobView
from leetstack.utils import get_logger, LeetStackError, NotFound

LOG = get_logger()

JOB_POLL_INTERVAL_SECONDS = float(os.getenv('JOB_POLL_INTERVAL_SECONDS', '3'))
JOB_POLL_MAX_ATTEMPTS = int(os.getenv('JOB_POLL_MAX_ATTEMPTS', '120'))
JOB_POLL_MAX_DURATION_SECONDS = float(os.getenv('JOB_POLL_MAX_DURATION_SECONDS', '360'))


class PollTimeout(LeetStackError):
    code = 'poll_timeout'
    http_status = 504


class JobPoller:
    """Client-side loop that waits for a job to reach a terminal status.

    ``fetch`` is any ``job_id -> JobView`` callable, typically
    ``functools.partial(service.get_status, owner_id)``.
    """

    def __init__(
        self,
        fetch: Callable[[str], JobView],
        interval: float = JOB_POLL_INTERVAL_SECONDS,
        max_attempts: int = JOB_POLL_MAX_ATTEMPTS,
        max_duration: float = JOB_POLL_MAX_DURATION_SECONDS,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        if interval < 0 or max_attempts < 1 or max_duration <= 0:
            raise ValueError('poll interval must be >= 0 and both caps positive')
        self.fetch = fetch
        self.interval = interval
        self.max_attempts = max_attempts
        self.max_duration = max_duration
        self._sleep = sleep
        self._clock = clock

    def wait(self, job_id: str, on_update: Optional[Callable[[JobView], None]] = None) -> JobView:
        started = self._clock()
        attempts = 0
        while True:
            attempts += 1
            try:
                view = self.fetch(job_id)
            except NotFound:
                raise
            except (LeetStackError, ConnectionError, TimeoutError) as e:
                LOG.warning('job_poll_error', extra={'job_id': job_id, 'attempt': attempts, 'error': str(e)})
            else:
                if on_update is not None:
                    on_update(view)
                if view.status.is_terminal:
                    return view

            elapsed = self._clock() - started
            if attempts >= self.max_attempts or elapsed + self.interval > self.max_duration:
                LOG.warning('job_poll_timeout', extra={'job_id': job_id, 'attempts': attempts, 'elapsed_seconds': round(elapsed, 3)})
                raise PollTimeout(f'job {job_id} did not finish after {attempts} polls', job_id=job_id)
            self._sleep(self.interval)
