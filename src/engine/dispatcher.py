# src/engine/dispatcher.py
"""
WorkerDispatcher: worker threads that claim discovery jobs, run them against their source and
record the outcome.

There is no scheduler. Each worker polls JobStore.claim_next, so any number of dispatchers in any
number of processes can share one database.
"""
import logging
import os
import socket
import threading
import uuid

from engine.errors import LeaseExpired, SourceError
from engine.models import JOB_PENDING
from sources.base import as_page
from utils.backoff import call_with_timeout, retry_store_write
from utils.timeutils import utc_now

OUTCOME_COMPLETE = "complete"
OUTCOME_RETRY = "retry"
OUTCOME_FAILED = "failed"
OUTCOME_DEFERRED = "deferred"
OUTCOME_LOST = "lost"


def build_worker_id():
    return f"{socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


class WorkerDispatcher:
    def __init__(
        self,
        job_store,
        registry,
        integrations,
        classification=None,
        sink=None,
        breaker=None,
        lease_seconds=300,
        discovery_timeout=240.0,
        poll_seconds=5.0,
        store_retry_delay=1.0,
        store_retry_max_delay=30.0,
        clock=utc_now,
    ):
        self._job_store = job_store
        self._registry = registry
        self._integrations = integrations
        self._classification = classification
        self._sink = sink
        self._breaker = breaker
        self.lease_seconds = lease_seconds
        self.discovery_timeout = discovery_timeout
        self.poll_seconds = poll_seconds
        self.store_retry_delay = store_retry_delay
        self.store_retry_max_delay = store_retry_max_delay
        self._clock = clock
        self._threads = []
        self._stop_event = threading.Event()

    def _discover(self, job):
        source = self._registry.resolve(job.platform)
        credentials = self._integrations.credentials(job.project_id, job.platform)
        result = call_with_timeout(
            source.discover,
            self.discovery_timeout,
            credentials,
            job.cursor,
            name=f"discover-{job.platform}-{job.job_id[:8]}",
        )
        return as_page(result)

    def _store_write(self, func, *args, description, **kwargs):
        return retry_store_write(
            func,
            *args,
            base_delay=self.store_retry_delay,
            max_delay=self.store_retry_max_delay,
            stop_event=self._stop_event,
            description=description,
            **kwargs,
        )

    def process(self, job, worker_id):
        """
        Run one claimed job to an outcome and record it. Returns one of complete, retry, failed,
        deferred (its platform's circuit is open) or lost (another worker took the job over while
        this one was busy).
        """
        if self._breaker is not None:
            reopen_at = self._breaker.open_until(job.platform)
            if reopen_at is not None:
                return self._defer(job, worker_id, reopen_at)

        logging.info(f"[scan_id={job.scan_id}] [job_id={job.job_id}] [worker_id={worker_id}] Started {job.platform} discovery page={job.page}")
        try:
            page = self._discover(job)
        except Exception as e:
            retryable = e.retryable if isinstance(e, SourceError) else True
            if not isinstance(e, SourceError):
                logging.exception(f"[scan_id={job.scan_id}] [job_id={job.job_id}] Unexpected error from {job.platform} discovery")
            if retryable and self._breaker is not None:
                self._breaker.record_failure(job.platform)
            return self._record_failure(job, worker_id, e, retryable)
        if self._breaker is not None:
            self._breaker.record_success(job.platform)

        try:
            stored = self._sink.store(job, page.items) if self._sink is not None else len(page.items)
        except SourceError as e:
            return self._record_failure(job, worker_id, e, e.retryable)
        except Exception as e:
            logging.exception(f"[scan_id={job.scan_id}] [job_id={job.job_id}] Storing {len(page.items)} {job.platform} item(s) failed")
            return self._record_failure(job, worker_id, e, True)

        if job.lease_expires_at is not None and self._clock() > job.lease_expires_at:
            # Accepted anyway: ack is a no-op if the job was completed elsewhere in the meantime.
            logging.warning(f"[job_id={job.job_id}] {LeaseExpired(job.job_id, worker_id)}; recording late result")

        applied = self._store_write(
            self._job_store.ack,
            job.job_id,
            stored,
            next_cursor=page.next_cursor,
            description=f"[job_id={job.job_id}] ack",
        )
        if applied and self._classification is not None:
            self._classification.submit(job, page.items)
        return OUTCOME_COMPLETE

    def _defer(self, job, worker_id, reopen_at):
        try:
            self._store_write(
                self._job_store.defer,
                job.job_id,
                worker_id,
                reopen_at,
                reason=f"Circuit open for {job.platform}",
                description=f"[job_id={job.job_id}] defer",
            )
        except LeaseExpired as e:
            logging.warning(f"[scan_id={job.scan_id}] [job_id={job.job_id}] Deferral not recorded: {e}")
            return OUTCOME_LOST
        return OUTCOME_DEFERRED

    def _record_failure(self, job, worker_id, error, retryable):
        try:
            updated = self._store_write(
                self._job_store.fail_or_retry,
                job.job_id,
                f"{type(error).__name__}: {error}",
                retryable=retryable,
                worker_id=worker_id,
                description=f"[job_id={job.job_id}] fail_or_retry",
            )
        except LeaseExpired as e:
            logging.warning(f"[scan_id={job.scan_id}] [job_id={job.job_id}] Failure not recorded: {e}")
            return OUTCOME_LOST
        if updated is not None and updated.status == JOB_PENDING:
            return OUTCOME_RETRY
        return OUTCOME_FAILED

    def run_once(self, worker_id=None):
        """Claim and process at most one job. Returns True when a job was processed."""
        worker_id = worker_id or build_worker_id()
        job = self._job_store.claim_next(worker_id, self.lease_seconds)
        if job is None:
            return False
        self.process(job, worker_id)
        return True

    def run_loop(self, stop_event=None, once=False, worker_id=None):
        if stop_event is not None:
            # Store write retries watch the same event.
            self._stop_event = stop_event
        stop = self._stop_event
        worker_id = worker_id or build_worker_id()
        logging.info(f"[worker_id={worker_id}] Worker started lease_seconds={self.lease_seconds}")
        while not stop.is_set():
            try:
                processed = self.run_once(worker_id)
            except Exception:
                # A job left leased here is reclaimed once its lease runs out.
                logging.exception(f"[worker_id={worker_id}] Worker loop failed")
                if once:
                    break
                stop.wait(max(1.0, self.poll_seconds))
                continue
            if once:
                break
            if not processed:
                stop.wait(max(0.1, self.poll_seconds))
        logging.info(f"[worker_id={worker_id}] Worker stopping")

    def start(self, workers=1):
        if any(thread.is_alive() for thread in self._threads):
            return
        self._stop_event.clear()
        self._threads = [
            threading.Thread(
                target=self.run_loop,
                kwargs={"stop_event": self._stop_event, "worker_id": f"{build_worker_id()}-{index}"},
                name=f"hunter-worker-{index}",
                daemon=True,
            )
            for index in range(workers)
        ]
        for thread in self._threads:
            thread.start()
        logging.info(f"Started {workers} discovery worker thread(s)")

    def stop(self, timeout=10.0):
        self._stop_event.set()
        for thread in self._threads:
            thread.join(timeout=timeout)
        self._threads = []
        logging.info("Stopped discovery worker threads")

    def alive(self):
        return sum(1 for thread in self._threads if thread.is_alive())

    def wait(self, timeout=None):
        return self._stop_event.wait(timeout)
