"""Sync job model — durable backlog of units of work."""

from datetime import datetime, timezone

from sqlalchemy import JSON, Column, Index, Integer, String, Text

from ..database import UTCDateTime
from .base import Base


class JobStatus:
    QUEUED = "QUEUED"
    ACTIVE = "ACTIVE"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    STALLED = "STALLED"
    CANCELLED = "CANCELLED"

    PENDING = (QUEUED, ACTIVE, STALLED)
    FINISHED = (COMPLETED, FAILED, CANCELLED)


class SyncJob(Base):
    """One unit of work. ``run_at`` holds the backoff state."""

    __tablename__ = "sync_jobs"
    id = Column(Integer, primary_key=True)
    queue = Column(String(30), nullable=False)
    job_type = Column(String(50), nullable=False)
    payload = Column(JSON, default=dict)
    status = Column(String(20), nullable=False, default=JobStatus.QUEUED)
    priority = Column(Integer, nullable=False, default=0)
    attempts = Column(Integer, nullable=False, default=0)
    max_attempts = Column(Integer, nullable=False, default=3)
    run_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    dedup_key = Column(String(200))
    source_ref = Column(String(100))
    heartbeat_at = Column(UTCDateTime)
    stalled_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    error_type = Column(String(50))
    result = Column(JSON)
    created_at = Column(UTCDateTime, default=lambda: datetime.now(timezone.utc))
    started_at = Column(UTCDateTime)
    finished_at = Column(UTCDateTime)

    __table_args__ = (
        Index("ix_job_claim", "queue", "status", "run_at"),
        Index("ix_job_dedup", "dedup_key", "status"),
        Index("ix_job_source_ref", "source_ref", "status"),
    )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "queue": self.queue,
            "job_type": self.job_type,
            "payload": self.payload or {},
            "status": self.status,
            "priority": self.priority,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "run_at": self.run_at.isoformat() if self.run_at else None,
            "dedup_key": self.dedup_key,
            "last_error": self.last_error,
            "error_type": self.error_type,
            "result": self.result,
            "created_at": self.created_at.isoformat() if self.created_at else None,
            "finished_at": self.finished_at.isoformat() if self.finished_at else None,
        }
