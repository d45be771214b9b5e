# src/engine/classification.py
"""
ClassificationQueue: bounded hand-off from discovery workers to the classification collaborator.

Workers only enqueue; a consumer thread calls the collaborator. Drops (queue full) and
collaborator failures are logged and counted, so nothing disappears silently.
"""
import logging
import queue
import threading
from dataclasses import dataclass
from typing import Optional, Protocol

from engine.errors import StoreUnavailable


@dataclass
class ClassificationOutcome:
    relevant: int = 0
    classified: int = 0


class Classifier(Protocol):
    def classify(self, items) -> Optional[ClassificationOutcome]:
        ...


@dataclass
class _Batch:
    job_id: str
    scan_id: str
    platform: str
    items: list


_STOP = object()


class ClassificationQueue:
    def __init__(self, classifier, scan_store, maxsize=100, put_timeout=1.0):
        self._classifier = classifier
        self._scan_store = scan_store
        self._queue = queue.Queue(maxsize=maxsize)
        self._put_timeout = put_timeout
        self._thread = None
        self._lock = threading.Lock()
        self._stats = {"submitted": 0, "delivered": 0, "failed": 0, "dropped": 0}

    def _count(self, key):
        with self._lock:
            self._stats[key] += 1

    def stats(self):
        with self._lock:
            return dict(self._stats, queued=self._queue.qsize())

    def submit(self, job, items):
        """
        Queue one job's items for classification. Returns False when the queue stayed full.
        """
        if not items:
            return True
        batch = _Batch(job_id=job.job_id, scan_id=job.scan_id, platform=job.platform, items=list(items))
        try:
            self._queue.put(batch, timeout=self._put_timeout)
        except queue.Full:
            self._count("dropped")
            logging.error(
                f"[scan_id={job.scan_id}] [job_id={job.job_id}] Classification queue full, "
                f"{len(batch.items)} {job.platform} item(s) not classified"
            )
            return False
        self._count("submitted")
        return True

    def process_one(self, timeout=None):
        """Deliver the next batch. Returns False when nothing was waiting or the queue was stopped."""
        try:
            batch = self._queue.get(timeout=timeout)
        except queue.Empty:
            return False
        try:
            if batch is _STOP:
                return False
            self._deliver(batch)
            return True
        finally:
            self._queue.task_done()

    def _deliver(self, batch):
        try:
            outcome = self._classifier.classify(batch.items)
        except Exception:
            self._count("failed")
            logging.exception(
                f"[scan_id={batch.scan_id}] [job_id={batch.job_id}] Classification of {len(batch.items)} "
                f"{batch.platform} item(s) failed"
            )
            return
        self._count("delivered")
        if outcome is None:
            return
        try:
            self._scan_store.record_classification(batch.job_id, relevant=outcome.relevant, classified=outcome.classified)
        except StoreUnavailable:
            logging.exception(f"[scan_id={batch.scan_id}] [job_id={batch.job_id}] Could not record classification outcome")

    def _run(self):
        while self.process_one():
            pass

    def start(self):
        if self._thread and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="hunter-classification", daemon=True)
        self._thread.start()
        logging.info("Started classification queue consumer")

    def stop(self, timeout=10.0):
        if not (self._thread and self._thread.is_alive()):
            return
        self._queue.put(_STOP)
        self._thread.join(timeout=timeout)
        self._thread = None
        logging.info(f"Stopped classification queue consumer stats={self.stats()}")
