# src/engine/errors.py
"""
Error taxonomy for scan creation, discovery and the durable stores.
"""


class HunterError(Exception):
    status_code = 500


class NoActiveSources(HunterError):
    status_code = 422

    def __init__(self, project_id, requested=None):
        self.project_id = project_id
        self.requested = list(requested or [])
        detail = f" (requested: {', '.join(self.requested)})" if self.requested else ""
        super().__init__(f"No active sources for project {project_id}{detail}")


class ScanNotFound(HunterError):
    status_code = 404

    def __init__(self, scan_id):
        self.scan_id = scan_id
        super().__init__(f"Scan not found: {scan_id}")


class ScanAlreadyRunning(HunterError):
    status_code = 409

    def __init__(self, project_id, running, limit):
        self.project_id = project_id
        self.running = running
        self.limit = limit
        super().__init__(
            f"Project {project_id} already has {running} running scan(s) (limit {limit}). "
            "Please wait for the current scan to complete."
        )


class StoreUnavailable(HunterError):
    status_code = 503


class SourceError(HunterError):
    """Raised by discovery sources. Subclasses decide whether the job is retried."""

    retryable = True


class TransientSourceError(SourceError):
    retryable = True


class TerminalSourceError(SourceError):
    """Revoked credentials, removed accounts and the like: retrying cannot help."""

    retryable = False


class DiscoveryTimeout(TransientSourceError):
    pass


class UnknownSource(TerminalSourceError):
    def __init__(self, platform):
        self.platform = platform
        super().__init__(f"Unsupported source: {platform}")


class LeaseExpired(HunterError):
    """Internal signal: a result arrived for a job whose lease already passed."""

    def __init__(self, job_id, worker_id):
        self.job_id = job_id
        self.worker_id = worker_id
        super().__init__(f"Lease on job {job_id} held by {worker_id} has expired")
