# src/api/schemas.py
from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class ScanRequest(_CamelModel):
    project_id: str = Field(..., alias="projectId", min_length=1, description="Project (tenant) to scan")
    sources: Optional[List[str]] = Field(None, description="Sources to scan; every active integration when omitted")
    requested_by: Optional[str] = Field(None, alias="requestedBy", description="User who triggered the scan")


class ScanCreated(_CamelModel):
    scan_id: str = Field(..., alias="scanId")
    platforms: List[str]


class ScanSummary(_CamelModel):
    scan_id: str = Field(..., alias="scanId")
    project_id: str = Field(..., alias="projectId")
    status: str
    platforms: Dict[str, str]
    total_discovered: int = Field(..., alias="totalDiscovered")
    total_relevant: int = Field(..., alias="totalRelevant")
    total_classified: int = Field(..., alias="totalClassified")
    triggered_by: Optional[str] = Field(None, alias="triggeredBy")
    cancel_requested: bool = Field(False, alias="cancelRequested")
    started_at: Optional[datetime] = Field(None, alias="startedAt")
    completed_at: Optional[datetime] = Field(None, alias="completedAt")


class PlatformStatusOut(_CamelModel):
    platform: str
    status: str
    attempts: int
    error: Optional[str] = None
    discovered: int = 0
    jobs: int = 1


class ScanStatusResponse(_CamelModel):
    scan: ScanSummary
    platforms: List[PlatformStatusOut]
    progress_percent: int = Field(..., alias="progressPercent")
    all_complete: bool = Field(..., alias="allComplete")


class JobOut(_CamelModel):
    job_id: str = Field(..., alias="jobId")
    platform: str
    job_type: str = Field(..., alias="jobType")
    status: str
    attempts: int
    max_attempts: int = Field(..., alias="maxAttempts")
    error: Optional[str] = None
    page: int = 0
    discovered_count: Optional[int] = Field(None, alias="discoveredCount")
    lease_expires_at: Optional[datetime] = Field(None, alias="leaseExpiresAt")
    not_before: Optional[datetime] = Field(None, alias="notBefore")
    created_at: datetime = Field(..., alias="createdAt")
    updated_at: datetime = Field(..., alias="updatedAt")


class HealthResponse(BaseModel):
    status: str
    queue: Dict[str, int]
    thresholds: Dict[str, int]
    circuits: Dict[str, Dict[str, Any]] = {}
