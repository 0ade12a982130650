"""
SQLAlchemy models for the auditable sync run log and the storage-level lock
that keeps full syncs from overlapping.
"""

from sqlalchemy import Column, Integer, String, DateTime, Text, JSON, Index
from sqlalchemy.sql import func
from sqlalchemy.ext.hybrid import hybrid_property
import enum
from typing import Optional

from reportcard.core.database import Base


class SyncRunStatus(str, enum.Enum):
    """Lifecycle of a sync run."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


FULL_SYNC = "full"


class SyncRun(Base):
    """One execution of a single entity-type sync or of the full chain."""

    __tablename__ = "sync_runs"

    id = Column(Integer, primary_key=True, index=True)
    entity_type = Column(String(50), nullable=False)
    status = Column(String(20), nullable=False, default=SyncRunStatus.PENDING.value)

    record_count = Column(Integer, default=0, nullable=False)
    error_message = Column(Text, nullable=True)
    details = Column(JSON, nullable=True)

    started_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    __table_args__ = (
        Index("idx_sync_runs_type_status", "entity_type", "status"),
    )

    @hybrid_property
    def duration_seconds(self) -> Optional[float]:
        """Get run duration in seconds."""
        if not self.started_at or not self.completed_at:
            return None
        return (self.completed_at - self.started_at).total_seconds()

    def __repr__(self):
        return f"<SyncRun {self.id} {self.entity_type} {self.status}>"


class SyncLock(Base):
    """Named lock row; a run holds it while ``holder_run_id`` points at it."""

    __tablename__ = "sync_locks"

    name = Column(String(50), primary_key=True)
    holder_run_id = Column(Integer, nullable=True)
    acquired_at = Column(DateTime, nullable=True)
