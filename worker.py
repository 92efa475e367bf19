# worker.py
import logging
import time
import uuid
from concurrent.futures import ThreadPoolExecutor

from config import WorkerConfig
from errors import InvalidJobError
from events import EventLog
from models import BatchResult

logger = logging.getLogger(__name__)


class StaleJobReclaimer:
    """Returns jobs stuck in 'claimed' past the visibility timeout to 'pending'."""

    def __init__(self, db, visibility_timeout, max_attempts=None, events=None):
        self.db = db
        self.visibility_timeout = visibility_timeout
        self.max_attempts = max_attempts
        self.events = events or EventLog()

    def reclaim(self):
        try:
            count = self.db.reclaim_stale(self.visibility_timeout, max_attempts=self.max_attempts)
        except Exception as e:
            logger.error(f"Reclaiming stale jobs failed: {e}")
            self.events.emit("requeue_error", message=str(e))
            return 0
        if count:
            logger.info(f"Reclaimed {count} stale job(s) (visibility_timeout={self.visibility_timeout}s)")
        return count


class WorkerPool:
    """
    Drains claimed jobs into the broker with at most `max_parallel` calls in
    flight and records each outcome in the store.

    `db` is the job store; `signals` is anything with get_signal(id) and
    defaults to the store itself.
    """

    def __init__(self, db, broker, config=None, signals=None, events=None, worker_id=None, stop_event=None):
        self.db = db
        self.broker = broker
        self.config = config or WorkerConfig()
        self.signals = signals or db
        self.events = events or EventLog(db)
        self.worker_id = worker_id or f"worker-{uuid.uuid4().hex[:8]}"
        self.stop_event = stop_event  # threading.Event() passed in by CLI
        self.reclaimer = StaleJobReclaimer(
            db,
            self.config.visibility_timeout,
            max_attempts=self.config.max_attempts,
            events=self.events,
        )

    def run(self):
        while not (self.stop_event and self.stop_event.is_set()):
            result = self.run_cycle()
            if not result.claimed:
                self._idle()

    def _idle(self):
        if self.stop_event:
            self.stop_event.wait(self.config.poll_interval)
        else:
            time.sleep(self.config.poll_interval)

    def run_cycle(self):
        """Reclaim stale claims, then process one batch. Never raises."""
        recycled = 0
        try:
            recycled = self.reclaimer.reclaim()
            result = self.process_batch()
        except Exception as e:
            logger.exception(f"[{self.worker_id}] cycle failed: {e}")
            self.events.emit("fatal", message=str(e))
            return BatchResult(recycled=recycled, error=str(e))

        result.recycled = recycled
        # idle polls are not recorded
        if result.claimed or recycled:
            message = (f"batch done: recycled={recycled} claimed={result.claimed} "
                       f"ok={result.ok} failed={result.failed}")
            logger.info(f"[{self.worker_id}] {message}")
            self.events.emit("batch_done", message=message, **result.to_dict())
        return result

    def process_batch(self):
        """Claim up to batch_limit jobs and wait for all of them to settle."""
        jobs = self.db.claim_jobs(self.config.batch_limit)
        if not jobs:
            return BatchResult()

        workers = min(self.config.max_parallel, len(jobs))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix=self.worker_id) as pool:
            outcomes = list(pool.map(self._execute, jobs))

        ok = sum(1 for o in outcomes if o)
        return BatchResult(claimed=len(jobs), ok=ok, failed=len(jobs) - ok)

    def _resolve_signal(self, job):
        if job.signal is not None:
            return job.signal
        if job.signal_id:
            return self.signals.get_signal(job.signal_id)
        raise InvalidJobError(f"job {job.id} has neither signal nor signal_id")

    def _execute(self, job):
        try:
            signal = self._resolve_signal(job)
            self.broker.execute(signal, job.id)
            self.db.complete_job(job.id, attempt=job.attempt)
            return True
        except Exception as e:
            message = str(e) or type(e).__name__
            logger.warning(f"[{self.worker_id}] job {job.id} failed: {message}")
            try:
                self.db.fail_job(job.id, message, attempt=job.attempt)
            except Exception as store_error:
                logger.error(f"[{self.worker_id}] could not record failure of job {job.id}: {store_error}")
            self.events.emit("job_error", job_id=job.id, message=message)
            return False
