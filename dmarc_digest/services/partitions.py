"""
Monthly partition rotation and retention purge.

Provides:
- Rotation: move last month's rows from the active partition into the
  archive partition named YYYY-MM
- Retention purge: delete active rows older than retention_months
- Optional purge of whole archive partitions past the cutoff
- A RetentionLog entry for every run that changes data or fails
"""

import calendar
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from sqlalchemy.orm import Session

from dmarc_digest.config import get_settings
from dmarc_digest.metrics import record_retention_rows
from dmarc_digest.models import PartitionState, RetentionLog, RetentionOperation
from dmarc_digest.schemas import ACTIVE_PARTITION
from dmarc_digest.services.row_store import RowStore

logger = logging.getLogger(__name__)


class RetentionError(Exception):
    """Raised when a rotation or purge cannot complete"""
    pass


def month_key(value: datetime) -> str:
    """Archive partition tag for a timestamp, e.g. 2025-05"""
    return f"{value.year:04d}-{value.month:02d}"


def month_start(value: datetime) -> datetime:
    return datetime(value.year, value.month, 1)


def previous_month_start(value: datetime) -> datetime:
    if value.month == 1:
        return datetime(value.year - 1, 12, 1)
    return datetime(value.year, value.month - 1, 1)


def next_month_start(value: datetime) -> datetime:
    if value.month == 12:
        return datetime(value.year + 1, 1, 1)
    return datetime(value.year, value.month + 1, 1)


def subtract_months(value: datetime, months: int) -> datetime:
    """Calendar-month subtraction, clamping the day (Mar 31 - 1 -> Feb 28/29)"""
    total = value.year * 12 + (value.month - 1) - months
    year, month = divmod(total, 12)
    month += 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def parse_month_key(key: str) -> Optional[datetime]:
    try:
        return datetime.strptime(key, "%Y-%m")
    except ValueError:
        return None


@dataclass
class RotationResult:
    partition_key: str
    rows_moved: int = 0


@dataclass
class PurgeResult:
    cutoff: datetime
    rows_deleted: int = 0
    archives_purged: List[str] = field(default_factory=list)


class PartitionManager:
    """Drives partitions through active -> archived -> purged"""

    def __init__(
        self,
        db: Session,
        row_store: Optional[RowStore] = None,
        retention_months: Optional[int] = None,
        purge_archives: Optional[bool] = None,
        cache=None
    ):
        settings = get_settings()

        self.db = db
        self.row_store = row_store or RowStore(db)
        self.retention_months = (
            retention_months if retention_months is not None else settings.retention_months
        )
        self.purge_archives = settings.purge_archives if purge_archives is None else purge_archives
        self.cache = cache

    # ==================== Rotation ====================

    def rotate(self, now: Optional[datetime] = None) -> RotationResult:
        """
        Move previous-month rows out of the active partition

        Idempotent: once moved, nothing from that month is left to move.
        Rows from the current month are never touched.
        """
        now = now or datetime.utcnow()
        start = previous_month_start(now)
        end = month_start(now)
        archive_key = month_key(start)
        started = time.time()

        def in_previous_month(record) -> bool:
            return record.processed_at is not None and start <= record.processed_at < end

        try:
            moving = [
                record for record in self.row_store.read_rows(ACTIVE_PARTITION)
                if in_previous_month(record)
            ]
            if not moving:
                logger.info(f"Rotation: no rows for {archive_key}, nothing to do")
                return RotationResult(partition_key=archive_key)

            self.row_store.ensure_partition(archive_key, PartitionState.ARCHIVED, now=now)
            copies = [record.model_copy(update={"row_id": None}) for record in moving]
            self.row_store.append_rows(archive_key, copies)

            moved_ids = {record.row_id for record in moving}
            removed = self.row_store.delete_rows(
                ACTIVE_PARTITION, lambda record: record.row_id in moved_ids
            )
            if removed != len(moving):
                raise RetentionError(
                    f"Rotation removed {removed} active rows but copied {len(moving)}"
                )

            self._log(RetentionOperation.ROTATE, archive_key, len(moving), None, True, started=started)
            self.db.commit()

        except Exception as e:
            self.db.rollback()
            self._log_failure(RetentionOperation.ROTATE, archive_key, None, e, started)
            raise

        record_retention_rows(RetentionOperation.ROTATE.value, len(moving))
        self._invalidate_cache()

        logger.info(
            f"Rotated {len(moving)} rows into {archive_key}",
            extra={"partition": archive_key, "rows": len(moving)}
        )

        return RotationResult(partition_key=archive_key, rows_moved=len(moving))

    # ==================== Retention ====================

    def cutoff_for(self, now: datetime) -> datetime:
        return subtract_months(now, self.retention_months)

    def purge(self, now: Optional[datetime] = None) -> PurgeResult:
        """
        Delete active rows processed before now - retention_months

        Archived partitions are only purged when purge_archives is enabled,
        and then only when their whole month lies before the cutoff.
        """
        now = now or datetime.utcnow()
        cutoff = self.cutoff_for(now)
        result = PurgeResult(cutoff=cutoff)
        started = time.time()

        try:
            result.rows_deleted = self.row_store.delete_rows(
                ACTIVE_PARTITION,
                lambda record: record.processed_at is not None and record.processed_at < cutoff
            )

            if self.purge_archives:
                result.archives_purged = self._purge_archives(cutoff, now, result)

            if result.rows_deleted or result.archives_purged:
                self._log(
                    RetentionOperation.PURGE, ACTIVE_PARTITION, result.rows_deleted, cutoff, True, started=started
                )
            self.db.commit()

        except Exception as e:
            self.db.rollback()
            self._log_failure(RetentionOperation.PURGE, ACTIVE_PARTITION, cutoff, e, started)
            raise

        if result.rows_deleted or result.archives_purged:
            record_retention_rows(RetentionOperation.PURGE.value, result.rows_deleted)
            self._invalidate_cache()

        logger.info(
            f"Retention purge: deleted {result.rows_deleted} rows older than {cutoff.date()}",
            extra={"rows": result.rows_deleted}
        )

        return result

    def _purge_archives(self, cutoff: datetime, now: datetime, result: PurgeResult) -> List[str]:
        purged = []
        for partition in self.row_store.list_partitions(PartitionState.ARCHIVED):
            month = parse_month_key(partition.key)
            if month is None or next_month_start(month) > cutoff:
                continue

            deleted = self.row_store.delete_rows(partition.key, lambda record: True)
            result.rows_deleted += deleted
            partition.state = PartitionState.PURGED.value
            partition.purged_at = now
            purged.append(partition.key)

            logger.info(
                f"Purged archive partition {partition.key} ({deleted} rows)",
                extra={"partition": partition.key, "rows": deleted}
            )

        self.db.flush()
        return purged

    # ==================== Cycle ====================

    def run_cycle(self, now: Optional[datetime] = None):
        """Rotation followed by retention purge"""
        now = now or datetime.utcnow()
        return self.rotate(now), self.purge(now)

    # ==================== Helpers ====================

    def _invalidate_cache(self):
        if self.cache is not None:
            self.cache.invalidate_pattern("rollup:*")

    def _log(
        self,
        operation: RetentionOperation,
        partition_key: str,
        rows: int,
        cutoff: Optional[datetime],
        success: bool,
        error_message: Optional[str] = None,
        started: Optional[float] = None,
    ) -> RetentionLog:
        log = RetentionLog(
            operation=operation.value,
            partition_key=partition_key,
            rows_affected=rows,
            cutoff_date=cutoff,
            success=success,
            error_message=error_message[:500] if error_message else None,
            duration_seconds=int(time.time() - started) if started else 0,
        )
        self.db.add(log)
        return log

    def _log_failure(self, operation, partition_key, cutoff, error: Exception, started: float):
        logger.error(f"Failed to {operation.value} partition {partition_key}: {error}")
        try:
            self._log(operation, partition_key, 0, cutoff, False, str(error), started)
            self.db.commit()
        except Exception as log_error:
            self.db.rollback()
            logger.error(f"Could not record {operation.value} failure: {log_error}")
