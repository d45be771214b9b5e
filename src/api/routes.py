# src/api/routes.py
from typing import List

from fastapi import APIRouter, Depends, Query, Request

from api.schemas import (
    HealthResponse,
    JobOut,
    PlatformStatusOut,
    ScanCreated,
    ScanRequest,
    ScanStatusResponse,
    ScanSummary,
)
from engine.models import JOB_PENDING
from engine.services import Services

router = APIRouter()


def get_services(request: Request) -> Services:
    return request.app.state.services


def _status_response(status) -> ScanStatusResponse:
    return ScanStatusResponse(
        scan=ScanSummary(**status.scan),
        platforms=[PlatformStatusOut(**vars(p)) for p in status.per_platform],
        progress_percent=status.progress_percent,
        all_complete=status.all_complete,
    )


@router.post(
    "/scans",
    summary="Start a discovery scan",
    response_description="Scan ID and the platforms that will be scanned",
    tags=["Scans"],
    status_code=202,
    response_model=ScanCreated,
    responses={
        202: {"description": "Scan accepted; poll its status"},
        409: {"description": "A scan is already running for this project"},
        422: {"description": "No active sources for this project"},
        503: {"description": "Job store unavailable"},
    },
)
def create_scan(request: ScanRequest, services: Services = Depends(get_services)):
    """
    Create a scan and one discovery job per source. Returns immediately; workers pick the jobs up.
    """
    scan, jobs = services.scan_manager.create_scan(
        request.project_id,
        sources=request.sources,
        requested_by=request.requested_by,
    )
    return ScanCreated(scan_id=scan.scan_id, platforms=[job.platform for job in jobs])


@router.get(
    "/scans",
    summary="Query scan history",
    response_description="Scans of a project, newest first",
    tags=["Scans"],
    response_model=List[ScanSummary],
)
def list_scans(
    project_id: str = Query(..., alias="projectId"),
    limit: int = Query(20, ge=1, le=100),
    offset: int = Query(0, ge=0),
    services: Services = Depends(get_services),
):
    scans = services.scan_store.list_by_project(project_id, limit=limit, offset=offset)
    return [ScanSummary(**scan.to_dict()) for scan in scans]


@router.get(
    "/scans/{scan_id}/status",
    summary="Get scan status",
    response_description="Per-platform status and overall progress, derived from the jobs",
    tags=["Scans"],
    response_model=ScanStatusResponse,
    responses={404: {"description": "Scan not found"}},
)
def get_scan_status(scan_id: str, services: Services = Depends(get_services)):
    """
    Safe to poll at any frequency: nothing is written.
    """
    return _status_response(services.status.get_scan_status(scan_id))


@router.get(
    "/scans/{scan_id}/jobs",
    summary="List the discovery jobs of a scan",
    tags=["Scans"],
    response_model=List[JobOut],
    responses={404: {"description": "Scan not found"}},
)
def get_scan_jobs(scan_id: str, services: Services = Depends(get_services)):
    services.scan_store.get(scan_id)
    return [JobOut(**job.to_dict()) for job in services.job_store.list_by_scan(scan_id)]


@router.post(
    "/scans/{scan_id}/cancel",
    summary="Cancel a scan",
    tags=["Scans"],
    status_code=202,
    response_model=ScanStatusResponse,
    responses={404: {"description": "Scan not found"}},
)
def cancel_scan(scan_id: str, services: Services = Depends(get_services)):
    """
    Pending jobs are cancelled; jobs already running finish and are recorded.
    """
    services.scan_manager.cancel_scan(scan_id)
    return _status_response(services.status.get_scan_status(scan_id))


@router.get("/health", response_model=HealthResponse)
def health_check(services: Services = Depends(get_services)):
    """
    Observational only: backlog and recent failures against fixed thresholds. Scheduling ignores it.
    """
    settings = services.settings
    counts = services.job_store.count_by_status()
    counts["recent_failed"] = services.job_store.count_failed_since(settings.health_failed_window_seconds)
    degraded = (
        counts[JOB_PENDING] > settings.health_pending_threshold
        or counts["recent_failed"] > settings.health_failed_threshold
    )
    return HealthResponse(
        status="degraded" if degraded else "ok",
        queue=counts,
        thresholds={"pending": settings.health_pending_threshold, "failed": settings.health_failed_threshold},
        circuits=services.breaker.snapshot() if services.breaker is not None else {},
    )
