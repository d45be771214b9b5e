# src/engine/status.py
"""
StatusAggregator: read-only view of a scan for pollers, derived from its job rows on every call.
"""
from dataclasses import dataclass, field
from typing import List, Optional

from engine.db import session_scope
from engine.models import SCAN_RUNNING, TERMINAL_JOB_STATUSES
from engine.scan_store import derive_platform_statuses, derive_scan_status, latest_jobs_by_platform


@dataclass
class PlatformStatus:
    platform: str
    status: str
    attempts: int
    error: Optional[str] = None
    discovered: int = 0
    jobs: int = 1


@dataclass
class ScanStatus:
    scan: dict
    per_platform: List[PlatformStatus] = field(default_factory=list)
    progress_percent: int = 0
    all_complete: bool = False


class StatusAggregator:
    def __init__(self, session_factory, scan_store, job_store):
        self._session_factory = session_factory
        self._scan_store = scan_store
        self._job_store = job_store

    def get_scan_status(self, scan_id):
        # Scan row and jobs come from one session so the view is consistent; nothing is written.
        with session_scope(self._session_factory) as db:
            scan = self._scan_store.get(scan_id, db=db)
            jobs = self._job_store.list_by_scan(scan_id, db=db)

        statuses = derive_platform_statuses(jobs)
        latest = latest_jobs_by_platform(jobs)
        per_platform = []
        for platform in _platform_order(scan.platforms, latest):
            platform_jobs = [job for job in jobs if job.platform == platform]
            job = latest[platform]
            per_platform.append(
                PlatformStatus(
                    platform=platform,
                    status=statuses[platform],
                    attempts=job.attempts,
                    error=job.error,
                    discovered=sum(j.discovered_count or 0 for j in platform_jobs),
                    jobs=len(platform_jobs),
                )
            )

        total = len(per_platform)
        done = sum(1 for p in per_platform if p.status in TERMINAL_JOB_STATUSES)
        progress = int(100 * done / total) if total else 0

        status = derive_scan_status(jobs)
        summary = scan.to_dict()
        summary["status"] = status
        summary["platforms"] = {p.platform: p.status for p in per_platform}
        return ScanStatus(
            scan=summary,
            per_platform=per_platform,
            progress_percent=progress,
            all_complete=status != SCAN_RUNNING,
        )


def _platform_order(requested, latest):
    # Platforms in the order the scan listed them, then any that only exist as jobs.
    ordered = [platform for platform in (requested or {}) if platform in latest]
    ordered.extend(platform for platform in latest if platform not in ordered)
    return ordered
