# src/engine/scan_manager.py
"""
ScanManager: turns one scan request into a Scan row plus one pending DiscoveryJob per source.
"""
import logging
import uuid

from engine.db import session_scope
from engine.errors import NoActiveSources, ScanAlreadyRunning


class ScanManager:
    def __init__(self, session_factory, scan_store, job_store, registry, integrations, max_attempts=3, max_running_scans_per_project=1):
        self._session_factory = session_factory
        self._scan_store = scan_store
        self._job_store = job_store
        self._registry = registry
        self._integrations = integrations
        self.max_attempts = max_attempts
        self.max_running_scans_per_project = max_running_scans_per_project

    def resolve_sources(self, project_id, sources=None):
        """
        Discovery sources for this scan: the requested names (or every active integration when
        none were requested) restricted to integrations that are active and registered.
        """
        active = [name for name in self._integrations.active_platforms(project_id) if name in self._registry]
        requested = active if sources is None else sources
        resolved = []
        seen = set()
        for name in requested:
            if name in seen:
                continue
            seen.add(name)
            if name not in active:
                logging.info(f"[project_id={project_id}] Source {name} is not an active integration, skipped")
                continue
            resolved.append(self._registry.resolve(name))
        return resolved

    def create_scan(self, project_id, sources=None, requested_by=None):
        """
        Create the scan and its jobs in one transaction. Raises NoActiveSources when nothing
        resolves and ScanAlreadyRunning when the project is at its running scan limit; in both
        cases nothing is written.
        """
        resolved = self.resolve_sources(project_id, sources)
        if not resolved:
            raise NoActiveSources(project_id, sources)
        platforms = [source.name for source in resolved]
        scan_id = str(uuid.uuid4())

        with session_scope(self._session_factory) as db:
            if self.max_running_scans_per_project:
                running = self._scan_store.count_running(db, project_id)
                if running >= self.max_running_scans_per_project:
                    raise ScanAlreadyRunning(project_id, running, self.max_running_scans_per_project)
            scan = self._scan_store.add(db, scan_id, project_id, platforms, triggered_by=requested_by)
            jobs = [
                self._job_store.new_job(scan_id, project_id, platform, max_attempts=self.max_attempts)
                for platform in platforms
            ]
            self._job_store.enqueue(jobs, db=db)

        logging.info(
            f"[scan_id={scan_id}] Created scan project_id={project_id} platforms={platforms} requested_by={requested_by}"
        )
        return scan, jobs

    def cancel_scan(self, scan_id):
        """
        Stop a scan from making further progress: pending jobs fail as cancelled and no job of the
        scan is leased again. Jobs already running finish on their own.
        """
        with session_scope(self._session_factory) as db:
            self._scan_store.lock(db, scan_id)
            newly_cancelled = self._scan_store.request_cancel(db, scan_id)
            cancelled_jobs = self._job_store.fail_pending_for_scan(db, scan_id)
            scan = self._scan_store.refresh(db, scan_id)
        if newly_cancelled:
            logging.info(f"[scan_id={scan_id}] Cancellation requested, {cancelled_jobs} pending job(s) cancelled")
        return scan
