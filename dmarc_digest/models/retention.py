"""
Partition lifecycle and retention models.

A partition moves through active -> archived -> purged. Every rotation or
purge run leaves a RetentionLog entry for audit purposes.
"""

from sqlalchemy import Column, String, DateTime, Boolean, Integer
from datetime import datetime
import enum
from dmarc_digest.database import Base


class PartitionState(str, enum.Enum):
    ACTIVE = "active"
    ARCHIVED = "archived"
    PURGED = "purged"


class RetentionOperation(str, enum.Enum):
    ROTATE = "rotate"
    PURGE = "purge"


class Partition(Base):
    """Registry of partitions and their lifecycle state"""
    __tablename__ = "partitions"

    key = Column(String(16), primary_key=True)  # "active" or YYYY-MM
    state = Column(String(20), nullable=False, default=PartitionState.ACTIVE.value, index=True)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    archived_at = Column(DateTime, nullable=True)
    purged_at = Column(DateTime, nullable=True)

    def __repr__(self):
        return f"<Partition(key={self.key}, state={self.state})>"


class RetentionLog(Base):
    """
    Log of rotation and purge executions.

    Tracks what was moved or deleted and when.
    """
    __tablename__ = "retention_logs"

    id = Column(Integer, primary_key=True, index=True)

    operation = Column(String(20), nullable=False)  # RetentionOperation value
    partition_key = Column(String(16), nullable=True)
    rows_affected = Column(Integer, nullable=False, default=0)
    cutoff_date = Column(DateTime, nullable=True)

    # Status
    success = Column(Boolean, nullable=False)
    error_message = Column(String(500), nullable=True)

    executed_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)
    duration_seconds = Column(Integer, nullable=True)

    def __repr__(self):
        return f"<RetentionLog(operation={self.operation}, rows={self.rows_affected})>"
