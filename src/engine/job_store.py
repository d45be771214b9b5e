# src/engine/job_store.py
"""
JobStore: durable DiscoveryJob rows with lease based claiming.

Workers coordinate only through this table. claim_next is a compare-and-swap UPDATE whose WHERE
clause repeats the eligibility test, so of two workers racing for the same row exactly one sees
rowcount == 1. Every transition that moves a job also rewrites its scan's aggregate fields in the
same transaction, after taking the scan row lock.
"""
import logging
import uuid

from sqlalchemy import and_, case, func, or_, select, update
from sqlalchemy.orm import aliased

from engine.db import session_scope
from engine.errors import LeaseExpired
from engine.models import (
    DiscoveryJob,
    JOB_COMPLETE,
    JOB_FAILED,
    JOB_LEASED,
    JOB_PENDING,
    JOB_TYPE_DISCOVERY,
    JOB_TYPE_PAGINATION,
    Scan,
)
from utils.backoff import retry_delay
from utils.timeutils import seconds_from, utc_now

CANCELLED_ERROR = "cancelled"
LEASE_EXHAUSTED_ERROR = "Lease expired without a result on the last attempt"
_MAX_ERROR_CHARS = 2000
_CLAIM_BATCH = 10


def _eligible(now):
    return or_(
        and_(
            DiscoveryJob.status == JOB_PENDING,
            or_(DiscoveryJob.not_before.is_(None), DiscoveryJob.not_before <= now),
        ),
        and_(
            DiscoveryJob.status == JOB_LEASED,
            DiscoveryJob.lease_expires_at < now,
        ),
    )


def _active_leases(now, project_id=None):
    active = aliased(DiscoveryJob)
    query = select(func.count(active.id)).where(active.status == JOB_LEASED, active.lease_expires_at >= now)
    if project_id is not None:
        query = query.where(active.project_id == project_id)
    return query.scalar_subquery()


def _truncate(error):
    text = str(error) if error is not None else None
    if text and len(text) > _MAX_ERROR_CHARS:
        return text[:_MAX_ERROR_CHARS]
    return text


class JobStore:
    def __init__(
        self,
        session_factory,
        scan_store,
        clock=utc_now,
        base_delay=30.0,
        max_delay=900.0,
        max_pages=10,
        max_concurrent_per_project=0,
        max_concurrent_total=0,
    ):
        self._session_factory = session_factory
        self._scan_store = scan_store
        self._clock = clock
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.max_pages = max_pages
        # 0 means unlimited
        self.max_concurrent_per_project = max_concurrent_per_project
        self.max_concurrent_total = max_concurrent_total

    def _capacity(self, now):
        """Conditions a claim must meet on top of eligibility: unexpired leases stay under the caps."""
        conditions = []
        if self.max_concurrent_total:
            conditions.append(_active_leases(now) < self.max_concurrent_total)
        if self.max_concurrent_per_project:
            conditions.append(_active_leases(now, DiscoveryJob.project_id) < self.max_concurrent_per_project)
        return conditions

    def new_job(self, scan_id, project_id, platform, max_attempts=3, job_type=JOB_TYPE_DISCOVERY, cursor=None, page=0):
        now = self._clock()
        return DiscoveryJob(
            job_id=str(uuid.uuid4()),
            scan_id=scan_id,
            project_id=project_id,
            platform=platform,
            job_type=job_type,
            status=JOB_PENDING,
            attempts=0,
            max_attempts=max_attempts,
            cursor=cursor,
            page=page,
            created_at=now,
            updated_at=now,
        )

    def enqueue(self, jobs, db=None):
        with session_scope(self._session_factory, db) as session:
            session.add_all(jobs)
            session.flush()
        for job in jobs:
            logging.info(f"[scan_id={job.scan_id}] [job_id={job.job_id}] Enqueued {job.job_type} job platform={job.platform}")
        return jobs

    def get(self, job_id):
        with session_scope(self._session_factory) as db:
            return db.execute(select(DiscoveryJob).where(DiscoveryJob.job_id == job_id)).scalar_one_or_none()

    def list_by_scan(self, scan_id, db=None):
        with session_scope(self._session_factory, db) as session:
            query = (
                select(DiscoveryJob)
                .where(DiscoveryJob.scan_id == scan_id)
                .order_by(DiscoveryJob.created_at.asc(), DiscoveryJob.id.asc())
            )
            return list(session.execute(query).scalars())

    def count_by_status(self):
        with session_scope(self._session_factory) as db:
            rows = db.execute(select(DiscoveryJob.status, func.count(DiscoveryJob.id)).group_by(DiscoveryJob.status)).all()
        counts = {JOB_PENDING: 0, JOB_LEASED: 0, JOB_COMPLETE: 0, JOB_FAILED: 0}
        counts.update({status: count for status, count in rows})
        return counts

    def count_failed_since(self, seconds):
        since = seconds_from(self._clock(), -seconds)
        with session_scope(self._session_factory) as db:
            query = select(func.count(DiscoveryJob.id)).where(
                DiscoveryJob.status == JOB_FAILED, DiscoveryJob.updated_at >= since
            )
            return db.execute(query).scalar_one()

    def claim_next(self, worker_id, lease_seconds):
        """
        Lease the oldest eligible job to `worker_id` for `lease_seconds`. Returns None when nothing is eligible.

        Eligible means pending with its backoff gate passed, or leased with an expired lease, in a
        project and system still under their concurrent lease caps. Reclaiming an expired lease
        uses up one attempt; when none are left the job fails instead. Jobs of cancel-requested
        scans are failed as cancelled instead of being leased.
        """
        while True:
            now = self._clock()
            with session_scope(self._session_factory) as db:
                candidates = db.execute(
                    select(
                        DiscoveryJob.job_id,
                        DiscoveryJob.scan_id,
                        DiscoveryJob.status,
                        DiscoveryJob.attempts,
                        DiscoveryJob.max_attempts,
                        Scan.cancel_requested,
                    )
                    .join(Scan, Scan.scan_id == DiscoveryJob.scan_id)
                    .where(_eligible(now), *self._capacity(now))
                    .order_by(DiscoveryJob.created_at.asc(), DiscoveryJob.id.asc())
                    .limit(_CLAIM_BATCH)
                ).all()
            if not candidates:
                return None

            for job_id, scan_id, status, attempts, max_attempts, cancel_requested in candidates:
                if cancel_requested:
                    if self._fail_unclaimed(job_id, scan_id, CANCELLED_ERROR):
                        logging.info(f"[scan_id={scan_id}] [job_id={job_id}] Scan cancelled, job not leased")
                    continue
                if status == JOB_LEASED and attempts + 1 >= max_attempts:
                    exhausted = self._fail_unclaimed(
                        job_id,
                        scan_id,
                        LEASE_EXHAUSTED_ERROR,
                        DiscoveryJob.status == JOB_LEASED,
                        DiscoveryJob.attempts == attempts,
                        count_attempt=True,
                    )
                    if exhausted:
                        logging.error(
                            f"[scan_id={scan_id}] [job_id={job_id}] Lease expired on attempt {attempts + 1}/{max_attempts}, job failed"
                        )
                    continue
                job = self._try_claim(job_id, scan_id, worker_id, lease_seconds)
                if job is not None:
                    reclaimed = " (reclaimed expired lease)" if status == JOB_LEASED else ""
                    logging.info(
                        f"[scan_id={scan_id}] [job_id={job_id}] [worker_id={worker_id}] Claimed {job.platform} "
                        f"job attempt={job.attempts + 1}/{job.max_attempts}{reclaimed}"
                    )
                    return job
            # Every candidate went to another worker; look again.

    def _try_claim(self, job_id, scan_id, worker_id, lease_seconds):
        with session_scope(self._session_factory) as db:
            self._scan_store.lock(db, scan_id)
            now = self._clock()
            result = db.execute(
                update(DiscoveryJob)
                .where(
                    DiscoveryJob.job_id == job_id,
                    _eligible(now),
                    or_(DiscoveryJob.status == JOB_PENDING, DiscoveryJob.attempts + 1 < DiscoveryJob.max_attempts),
                    *self._capacity(now),
                )
                .values(
                    status=JOB_LEASED,
                    # An expired lease counts as a failed attempt.
                    attempts=case(
                        (DiscoveryJob.status == JOB_LEASED, DiscoveryJob.attempts + 1),
                        else_=DiscoveryJob.attempts,
                    ),
                    locked_by=worker_id,
                    lease_expires_at=seconds_from(now, lease_seconds),
                    started_at=func.coalesce(DiscoveryJob.started_at, now),
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                return None
            self._scan_store.refresh(db, scan_id)
            return db.execute(
                select(DiscoveryJob).where(DiscoveryJob.job_id == job_id).execution_options(populate_existing=True)
            ).scalar_one()

    def _fail_unclaimed(self, job_id, scan_id, error, *conditions, count_attempt=False):
        """Fail an eligible job without leasing it. Returns True when this call failed it."""
        with session_scope(self._session_factory) as db:
            self._scan_store.lock(db, scan_id)
            now = self._clock()
            values = {
                "status": JOB_FAILED,
                "error": error,
                "locked_by": None,
                "lease_expires_at": None,
                "not_before": None,
                "completed_at": now,
                "updated_at": now,
            }
            if count_attempt:
                values["attempts"] = DiscoveryJob.attempts + 1
            result = db.execute(
                update(DiscoveryJob)
                .where(DiscoveryJob.job_id == job_id, _eligible(now), *conditions)
                .values(**values)
            )
            if result.rowcount != 1:
                return False
            self._scan_store.refresh(db, scan_id)
            return True

    def defer(self, job_id, worker_id, not_before, reason=None):
        """
        Hand a leased job back without running it: pending again behind `not_before`, attempts
        unchanged. Raises LeaseExpired when `worker_id` no longer holds the lease.
        """
        with session_scope(self._session_factory) as db:
            job = db.execute(select(DiscoveryJob).where(DiscoveryJob.job_id == job_id)).scalar_one_or_none()
            if job is None:
                logging.warning(f"[job_id={job_id}] Deferral of unknown job ignored")
                return None
            self._scan_store.lock(db, job.scan_id)
            now = self._clock()
            result = db.execute(
                update(DiscoveryJob)
                .where(
                    DiscoveryJob.job_id == job_id,
                    DiscoveryJob.status == JOB_LEASED,
                    DiscoveryJob.locked_by == worker_id,
                )
                .values(
                    status=JOB_PENDING,
                    error=_truncate(reason),
                    locked_by=None,
                    lease_expires_at=None,
                    not_before=not_before,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                raise LeaseExpired(job_id, worker_id)
            self._scan_store.refresh(db, job.scan_id)
            logging.warning(
                f"[scan_id={job.scan_id}] [job_id={job_id}] {job.platform} job deferred until {not_before}: {reason}"
            )
            return db.execute(
                select(DiscoveryJob).where(DiscoveryJob.job_id == job_id).execution_options(populate_existing=True)
            ).scalar_one()

    def ack(self, job_id, discovered_count, next_cursor=None):
        """
        Mark a job complete and add `discovered_count` to its scan, once.

        Acking a job that is already terminal is a no-op, which also covers a late result from a
        worker whose lease was reclaimed. When `next_cursor` is given a pagination job for the same
        platform is enqueued in the same transaction. Returns True when this call completed the job.
        """
        discovered_count = max(int(discovered_count or 0), 0)
        with session_scope(self._session_factory) as db:
            job = db.execute(select(DiscoveryJob).where(DiscoveryJob.job_id == job_id)).scalar_one_or_none()
            if job is None:
                logging.warning(f"[job_id={job_id}] Ack for unknown job ignored")
                return False
            scan = self._scan_store.lock(db, job.scan_id)
            now = self._clock()
            result = db.execute(
                update(DiscoveryJob)
                .where(DiscoveryJob.job_id == job_id, DiscoveryJob.status.in_((JOB_PENDING, JOB_LEASED)))
                .values(
                    status=JOB_COMPLETE,
                    discovered_count=discovered_count,
                    error=None,
                    locked_by=None,
                    lease_expires_at=None,
                    not_before=None,
                    completed_at=now,
                    updated_at=now,
                )
            )
            if result.rowcount != 1:
                logging.info(f"[scan_id={job.scan_id}] [job_id={job_id}] Ack ignored, job already {job.status}")
                return False

            self._scan_store.add_discovered(db, job.scan_id, discovered_count)
            if next_cursor:
                if scan.cancel_requested:
                    logging.info(f"[scan_id={job.scan_id}] [job_id={job_id}] Scan cancelled, next page of {job.platform} dropped")
                elif job.page + 1 >= self.max_pages:
                    logging.warning(
                        f"[scan_id={job.scan_id}] [job_id={job_id}] Page limit {self.max_pages} reached for {job.platform}"
                    )
                else:
                    follow_up = self.new_job(
                        job.scan_id,
                        job.project_id,
                        job.platform,
                        max_attempts=job.max_attempts,
                        job_type=JOB_TYPE_PAGINATION,
                        cursor=next_cursor,
                        page=job.page + 1,
                    )
                    self.enqueue([follow_up], db=db)
            self._scan_store.refresh(db, job.scan_id)
            logging.info(f"[scan_id={job.scan_id}] [job_id={job_id}] Completed {job.platform} job discovered={discovered_count}")
            return True

    def fail_or_retry(self, job_id, error, retryable=True, worker_id=None):
        """
        Record a failed attempt.

        The attempt counter goes up by one. While budget remains and the error is retryable the job
        returns to pending behind a backoff gate; otherwise it becomes terminally failed. When
        `worker_id` is given and that worker no longer holds the lease, LeaseExpired is raised and
        nothing changes. Returns the job row as written.
        """
        with session_scope(self._session_factory) as db:
            job = db.execute(select(DiscoveryJob).where(DiscoveryJob.job_id == job_id)).scalar_one_or_none()
            if job is None:
                logging.warning(f"[job_id={job_id}] Failure report for unknown job ignored")
                return None
            if job.is_terminal:
                logging.info(f"[scan_id={job.scan_id}] [job_id={job_id}] Failure report ignored, job already {job.status}")
                return job
            if worker_id is not None and (job.status != JOB_LEASED or job.locked_by != worker_id):
                raise LeaseExpired(job_id, worker_id)

            scan = self._scan_store.lock(db, job.scan_id)
            now = self._clock()
            attempts = min(job.attempts + 1, job.max_attempts)
            message = _truncate(error)
            values = {
                "attempts": attempts,
                "error": message,
                "locked_by": None,
                "lease_expires_at": None,
                "updated_at": now,
            }
            terminal = (not retryable) or attempts >= job.max_attempts or scan.cancel_requested
            if terminal:
                values.update(status=JOB_FAILED, not_before=None, completed_at=now)
            else:
                delay = retry_delay(attempts, self.base_delay, self.max_delay)
                values.update(status=JOB_PENDING, not_before=seconds_from(now, delay))

            conditions = [
                DiscoveryJob.job_id == job_id,
                DiscoveryJob.status == job.status,
                DiscoveryJob.attempts == job.attempts,
            ]
            if worker_id is not None:
                conditions.append(DiscoveryJob.locked_by == worker_id)
            result = db.execute(update(DiscoveryJob).where(*conditions).values(**values))
            if result.rowcount != 1:
                if worker_id is not None:
                    raise LeaseExpired(job_id, worker_id)
                logging.info(f"[scan_id={job.scan_id}] [job_id={job_id}] Failure report lost a race, ignored")
                return job

            self._scan_store.refresh(db, job.scan_id)
            if terminal:
                logging.error(
                    f"[scan_id={job.scan_id}] [job_id={job_id}] {job.platform} job failed "
                    f"after attempt {attempts}/{job.max_attempts}: {message}"
                )
            else:
                logging.warning(
                    f"[scan_id={job.scan_id}] [job_id={job_id}] {job.platform} job failed "
                    f"(attempt {attempts}/{job.max_attempts}), retry not before {values['not_before']}: {message}"
                )
            return db.execute(
                select(DiscoveryJob).where(DiscoveryJob.job_id == job_id).execution_options(populate_existing=True)
            ).scalar_one()

    def fail_pending_for_scan(self, db, scan_id, reason=CANCELLED_ERROR):
        now = self._clock()
        result = db.execute(
            update(DiscoveryJob)
            .where(DiscoveryJob.scan_id == scan_id, DiscoveryJob.status == JOB_PENDING)
            .values(
                status=JOB_FAILED,
                error=reason,
                not_before=None,
                completed_at=now,
                updated_at=now,
            )
        )
        return result.rowcount

    def recover_expired(self):
        """
        Return leased jobs whose lease has run out to pending, charging the lost attempt; a job
        with no attempts left fails. claim_next does the same on reclaim; this sweep keeps the
        reported state honest while no worker is polling.
        """
        now = self._clock()
        with session_scope(self._session_factory) as db:
            expired = db.execute(
                select(DiscoveryJob.job_id, DiscoveryJob.scan_id, DiscoveryJob.attempts, DiscoveryJob.max_attempts).where(
                    DiscoveryJob.status == JOB_LEASED, DiscoveryJob.lease_expires_at < now
                )
            ).all()
        recovered = 0
        for job_id, scan_id, attempts, max_attempts in expired:
            if attempts + 1 >= max_attempts:
                self._fail_unclaimed(
                    job_id,
                    scan_id,
                    LEASE_EXHAUSTED_ERROR,
                    DiscoveryJob.status == JOB_LEASED,
                    DiscoveryJob.attempts == attempts,
                    count_attempt=True,
                )
                continue
            with session_scope(self._session_factory) as db:
                self._scan_store.lock(db, scan_id)
                result = db.execute(
                    update(DiscoveryJob)
                    .where(
                        DiscoveryJob.job_id == job_id,
                        DiscoveryJob.status == JOB_LEASED,
                        DiscoveryJob.attempts == attempts,
                        DiscoveryJob.lease_expires_at < now,
                    )
                    .values(
                        status=JOB_PENDING,
                        attempts=DiscoveryJob.attempts + 1,
                        locked_by=None,
                        lease_expires_at=None,
                        updated_at=now,
                    )
                )
                if result.rowcount == 1:
                    self._scan_store.refresh(db, scan_id)
                    recovered += 1
        if recovered:
            logging.warning(f"Recovered {recovered} job(s) with expired leases")
        return recovered
