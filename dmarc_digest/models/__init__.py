"""
SQLAlchemy models for DMARC Digest.

All models are exported from this module for easy importing.
"""

# Row, dedup and failure models
from dmarc_digest.models.dmarc import ReportRow, SeenMessage, IngestionFailure

# Enrichment cache
from dmarc_digest.models.analytics import GeoLocationCache

# Partition lifecycle models
from dmarc_digest.models.retention import (
    Partition, PartitionState, RetentionLog, RetentionOperation
)

__all__ = [
    "ReportRow",
    "SeenMessage",
    "IngestionFailure",
    "GeoLocationCache",
    "Partition",
    "PartitionState",
    "RetentionLog",
    "RetentionOperation",
]
