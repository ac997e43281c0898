"""
Row sink backed by SQLAlchemy.

Implements the narrow storage contract the core depends on:
append_rows / read_rows / delete_rows per partition key, plus update_rows
for in-place enrichment. Methods flush but never commit: the calling
service owns the transaction so a message commit or a rotation move is
atomic.
"""
import logging
from datetime import datetime
from typing import Callable, Iterable, List, Optional

from sqlalchemy.orm import Session

from dmarc_digest.models import Partition, PartitionState, ReportRow
from dmarc_digest.schemas import ACTIVE_PARTITION, AuthOutcome, Disposition, ReportRecord

logger = logging.getLogger(__name__)


def row_to_record(row: ReportRow) -> ReportRecord:
    """Convert a stored row into the typed record"""
    return ReportRecord(
        row_id=row.id,
        partition_key=row.partition_key,
        message_id=row.message_id,
        reporting_org=row.reporting_org or "",
        source_ip=row.source_ip or "",
        disposition=Disposition.from_xml(row.disposition),
        dkim_result=AuthOutcome.from_xml(row.dkim_result),
        spf_result=AuthOutcome.from_xml(row.spf_result),
        domain=row.domain or "",
        header_from=row.header_from or "",
        count=row.count or 0,
        processed_at=row.processed_at,
        country=row.country or "",
        failure_reason=row.failure_reason or "",
    )


def record_to_row(record: ReportRecord, partition_key: str) -> ReportRow:
    """Convert a typed record into a new storage row"""
    return ReportRow(
        partition_key=partition_key,
        message_id=record.message_id,
        reporting_org=record.reporting_org,
        source_ip=record.source_ip,
        disposition=record.disposition.value,
        dkim_result=record.dkim_result.value,
        spf_result=record.spf_result.value,
        domain=record.domain,
        header_from=record.header_from,
        count=record.count,
        processed_at=record.processed_at,
        country=record.country,
        failure_reason=record.failure_reason,
    )


class RowStore:
    """Partitioned row storage"""

    def __init__(self, db: Session):
        self.db = db

    # ==================== Partition Registry ====================

    def ensure_partition(
        self,
        partition_key: str,
        state: PartitionState = PartitionState.ACTIVE,
        now: Optional[datetime] = None
    ) -> Partition:
        """Get or create the registry entry for a partition"""
        partition = self.db.get(Partition, partition_key)
        if partition is None:
            now = now or datetime.utcnow()
            partition = Partition(
                key=partition_key,
                state=state.value,
                created_at=now,
                archived_at=now if state == PartitionState.ARCHIVED else None,
            )
            self.db.add(partition)
            self.db.flush()
            logger.info(
                f"Created partition {partition_key} ({state.value})",
                extra={"partition": partition_key}
            )
        return partition

    def list_partitions(self, state: Optional[PartitionState] = None) -> List[Partition]:
        query = self.db.query(Partition)
        if state is not None:
            query = query.filter(Partition.state == state.value)
        return query.order_by(Partition.key).all()

    def archived_keys(self) -> List[str]:
        return [p.key for p in self.list_partitions(PartitionState.ARCHIVED)]

    # ==================== Row Operations ====================

    def append_rows(self, partition_key: str, records: Iterable[ReportRecord]) -> List[ReportRecord]:
        """
        Append records to a partition

        Returns:
            The same records with row_id and partition_key populated
        """
        records = list(records)
        self.ensure_partition(
            partition_key,
            PartitionState.ACTIVE if partition_key == ACTIVE_PARTITION else PartitionState.ARCHIVED
        )
        rows = [record_to_row(record, partition_key) for record in records]
        self.db.add_all(rows)
        self.db.flush()

        for record, row in zip(records, rows):
            record.row_id = row.id
            record.partition_key = partition_key

        return records

    def read_rows(self, partition_key: str) -> List[ReportRecord]:
        """Read every row of a partition in insertion order"""
        rows = self.db.query(ReportRow).filter(
            ReportRow.partition_key == partition_key
        ).order_by(ReportRow.id).all()

        return [row_to_record(row) for row in rows]

    def read_all_rows(self) -> List[ReportRecord]:
        """Active partition followed by every archived partition"""
        records = self.read_rows(ACTIVE_PARTITION)
        for key in self.archived_keys():
            records.extend(self.read_rows(key))
        return records

    def delete_rows(self, partition_key: str, predicate: Callable[[ReportRecord], bool]) -> int:
        """
        Delete rows of a partition matching a predicate

        Returns:
            Number of rows deleted
        """
        doomed = [
            record.row_id
            for record in self.read_rows(partition_key)
            if predicate(record)
        ]
        if not doomed:
            return 0

        # Chunk to stay under SQLite's bound-parameter limit
        deleted = 0
        for start in range(0, len(doomed), 500):
            chunk = doomed[start:start + 500]
            deleted += self.db.query(ReportRow).filter(
                ReportRow.id.in_(chunk)
            ).delete(synchronize_session=False)

        self.db.flush()
        return deleted

    def update_rows(self, records: Iterable[ReportRecord]) -> int:
        """
        Persist the enrichment fields of previously stored records

        Only country and failure_reason are writable; everything else is
        immutable once committed.
        """
        updated = 0
        for record in records:
            if record.row_id is None:
                continue
            row = self.db.get(ReportRow, record.row_id)
            if row is None:
                continue
            row.country = record.country
            row.failure_reason = record.failure_reason
            updated += 1

        self.db.flush()
        return updated

    def count_rows(self, partition_key: str) -> int:
        return self.db.query(ReportRow).filter(
            ReportRow.partition_key == partition_key
        ).count()
