# src/engine/scan_store.py
"""
ScanStore: durable Scan rows and their aggregate fields.

Scan.status and Scan.platforms are caches of what the job rows say. They are rewritten from the
jobs inside every transaction that moves a job, and the status read path recomputes them again.
"""
import logging

from sqlalchemy import func, select, update

from engine.db import session_scope
from engine.errors import ScanNotFound
from engine.models import (
    DiscoveryJob,
    PLATFORM_PENDING,
    PLATFORM_RUNNING,
    SCAN_COMPLETE,
    SCAN_RUNNING,
    Scan,
    TERMINAL_JOB_STATUSES,
)
from utils.timeutils import utc_now


def latest_jobs_by_platform(jobs):
    latest = {}
    for job in sorted(jobs, key=lambda j: (j.created_at, j.id)):
        latest[job.platform] = job
    return latest


def derive_platform_statuses(jobs):
    """
    {platform: status} where status is the latest job's terminal status, otherwise "running".
    """
    return {
        platform: job.status if job.status in TERMINAL_JOB_STATUSES else PLATFORM_RUNNING
        for platform, job in latest_jobs_by_platform(jobs).items()
    }


def derive_scan_status(jobs):
    if jobs and all(job.status in TERMINAL_JOB_STATUSES for job in jobs):
        return SCAN_COMPLETE
    return SCAN_RUNNING


class ScanStore:
    def __init__(self, session_factory, clock=utc_now):
        self._session_factory = session_factory
        self._clock = clock

    def add(self, db, scan_id, project_id, platforms, triggered_by=None):
        now = self._clock()
        scan = Scan(
            scan_id=scan_id,
            project_id=project_id,
            status=SCAN_RUNNING,
            platforms={platform: PLATFORM_PENDING for platform in platforms},
            total_discovered=0,
            total_relevant=0,
            total_classified=0,
            triggered_by=triggered_by,
            cancel_requested=False,
            started_at=now,
        )
        db.add(scan)
        return scan

    def get(self, scan_id, db=None):
        with session_scope(self._session_factory, db) as session:
            scan = session.execute(select(Scan).where(Scan.scan_id == scan_id)).scalar_one_or_none()
            if scan is None:
                raise ScanNotFound(scan_id)
            return scan

    def list_by_project(self, project_id, limit=20, offset=0):
        with session_scope(self._session_factory) as db:
            query = (
                select(Scan)
                .where(Scan.project_id == project_id)
                .order_by(Scan.started_at.desc(), Scan.id.desc())
                .offset(offset)
                .limit(limit)
            )
            return list(db.execute(query).scalars())

    def count_running(self, db, project_id):
        query = select(func.count(Scan.id)).where(Scan.project_id == project_id, Scan.status == SCAN_RUNNING)
        return db.execute(query).scalar_one()

    def lock(self, db, scan_id):
        """
        Row lock on the scan (a no-op on SQLite, where the first write serialises instead).
        Taken before touching a scan's jobs so aggregate rewrites never interleave.
        """
        scan = db.execute(select(Scan).where(Scan.scan_id == scan_id).with_for_update()).scalar_one_or_none()
        if scan is None:
            raise ScanNotFound(scan_id)
        return scan

    def add_discovered(self, db, scan_id, count):
        if count <= 0:
            return
        db.execute(
            update(Scan)
            .where(Scan.scan_id == scan_id)
            .values(total_discovered=Scan.total_discovered + count)
        )

    def refresh(self, db, scan_id):
        """
        Rewrite platforms, status and completed_at from the current job rows. Returns the scan row.
        """
        jobs = list(db.execute(select(DiscoveryJob).where(DiscoveryJob.scan_id == scan_id)).scalars())
        statuses = derive_platform_statuses(jobs)
        started = {job.platform for job in jobs if job.started_at is not None}
        platforms = {
            platform: PLATFORM_PENDING if status == PLATFORM_RUNNING and platform not in started else status
            for platform, status in statuses.items()
        }
        status = derive_scan_status(jobs)
        values = {"platforms": platforms, "status": status}
        if status == SCAN_COMPLETE:
            values["completed_at"] = func.coalesce(Scan.completed_at, self._clock())
        db.execute(update(Scan).where(Scan.scan_id == scan_id).values(**values))
        scan = db.execute(
            select(Scan).where(Scan.scan_id == scan_id).execution_options(populate_existing=True)
        ).scalar_one()
        if status == SCAN_COMPLETE:
            logging.debug(f"[scan_id={scan_id}] All jobs terminal. platforms={platforms}")
        return scan

    def request_cancel(self, db, scan_id):
        now = self._clock()
        result = db.execute(
            update(Scan)
            .where(Scan.scan_id == scan_id, Scan.cancel_requested.is_(False))
            .values(cancel_requested=True, cancelled_at=now)
        )
        return result.rowcount == 1

    def record_classification(self, job_id, relevant=0, classified=0):
        """
        Add one job's classification outcome to its scan counters. Only the first call per job counts.
        """
        now = self._clock()
        with session_scope(self._session_factory) as db:
            job = db.execute(select(DiscoveryJob).where(DiscoveryJob.job_id == job_id)).scalar_one_or_none()
            if job is None:
                logging.warning(f"[job_id={job_id}] Classification outcome for unknown job ignored")
                return False
            claimed = db.execute(
                update(DiscoveryJob)
                .where(DiscoveryJob.job_id == job_id, DiscoveryJob.classified_at.is_(None))
                .values(classified_at=now)
            )
            if claimed.rowcount != 1:
                logging.info(f"[job_id={job_id}] Classification outcome already recorded")
                return False
            db.execute(
                update(Scan)
                .where(Scan.scan_id == job.scan_id)
                .values(
                    total_relevant=Scan.total_relevant + max(relevant, 0),
                    total_classified=Scan.total_classified + max(classified, 0),
                )
            )
            logging.info(
                f"[scan_id={job.scan_id}] [job_id={job_id}] Recorded classification relevant={relevant} classified={classified}"
            )
            return True
