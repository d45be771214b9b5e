# src/engine/models.py
from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Index, Integer, JSON, String, Text
from sqlalchemy.orm import declarative_base

from utils.timeutils import utc_now

Base = declarative_base()

# Scan.status
SCAN_RUNNING = "running"
SCAN_COMPLETE = "complete"

# DiscoveryJob.status
JOB_PENDING = "pending"
JOB_LEASED = "leased"
JOB_COMPLETE = "complete"
JOB_FAILED = "failed"
TERMINAL_JOB_STATUSES = (JOB_COMPLETE, JOB_FAILED)

# Scan.platforms values
PLATFORM_PENDING = "pending"
PLATFORM_RUNNING = "running"

JOB_TYPE_DISCOVERY = "discovery"
JOB_TYPE_PAGINATION = "pagination"


class Scan(Base):
    __tablename__ = 'scans'
    id = Column(Integer, primary_key=True, autoincrement=True)
    scan_id = Column(String, unique=True, nullable=False)
    project_id = Column(String, nullable=False, index=True)
    status = Column(String, nullable=False, default=SCAN_RUNNING)
    platforms = Column(JSON, nullable=False, default=dict)  # {"reddit": "complete", "twitter": "pending"}
    total_discovered = Column(Integer, nullable=False, default=0)
    total_relevant = Column(Integer, nullable=False, default=0)
    total_classified = Column(Integer, nullable=False, default=0)
    triggered_by = Column(String, nullable=True)
    cancel_requested = Column(Boolean, nullable=False, default=False)
    cancelled_at = Column(DateTime, nullable=True)
    started_at = Column(DateTime, nullable=False, default=utc_now)
    completed_at = Column(DateTime, nullable=True)

    def to_dict(self):
        return {
            "scan_id": self.scan_id,
            "project_id": self.project_id,
            "status": self.status,
            "platforms": dict(self.platforms or {}),
            "total_discovered": self.total_discovered,
            "total_relevant": self.total_relevant,
            "total_classified": self.total_classified,
            "triggered_by": self.triggered_by,
            "cancel_requested": bool(self.cancel_requested),
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }


class DiscoveryJob(Base):
    __tablename__ = 'discovery_jobs'
    __table_args__ = (
        Index("ix_discovery_jobs_claim", "status", "created_at"),
    )
    id = Column(Integer, primary_key=True, autoincrement=True)
    job_id = Column(String, unique=True, nullable=False)
    scan_id = Column(String, ForeignKey("scans.scan_id"), nullable=False, index=True)
    project_id = Column(String, nullable=False)
    platform = Column(String, nullable=False)
    job_type = Column(String, nullable=False, default=JOB_TYPE_DISCOVERY)
    status = Column(String, nullable=False, default=JOB_PENDING)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    error = Column(Text, nullable=True)
    cursor = Column(Text, nullable=True)
    page = Column(Integer, nullable=False, default=0)
    locked_by = Column(String, nullable=True)
    lease_expires_at = Column(DateTime, nullable=True)
    not_before = Column(DateTime, nullable=True)
    discovered_count = Column(Integer, nullable=True)  # set once, at completion
    classified_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, nullable=False, default=utc_now)
    updated_at = Column(DateTime, nullable=False, default=utc_now)
    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    @property
    def is_terminal(self):
        return self.status in TERMINAL_JOB_STATUSES

    def to_dict(self):
        return {
            "job_id": self.job_id,
            "scan_id": self.scan_id,
            "project_id": self.project_id,
            "platform": self.platform,
            "job_type": self.job_type,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "error": self.error,
            "cursor": self.cursor,
            "page": self.page,
            "locked_by": self.locked_by,
            "lease_expires_at": self.lease_expires_at,
            "not_before": self.not_before,
            "discovered_count": self.discovered_count,
            "created_at": self.created_at,
            "updated_at": self.updated_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
        }
