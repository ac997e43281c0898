"""
Ingestion pipeline

Decoder -> Parser -> Dedup -> row commit, per source message:
1. Skip messages already in the dedup index
2. Decode each attachment and parse each XML payload, isolating failures
3. Commit all records of the message together with its dedup mark
4. Collect threshold alerts and send one notification per batch
"""
from dataclasses import dataclass, field
from datetime import datetime
from typing import Iterable, List, Optional, Tuple
import logging

from sqlalchemy.exc import SQLAlchemyError

from dmarc_digest.config import ConfigError, ConfigErrorKind, get_settings
from dmarc_digest.metrics import (
    record_alerts,
    record_message_processed,
    record_payload_error,
    record_records_ingested,
)
from dmarc_digest.models import IngestionFailure
from dmarc_digest.parsers.attachments import (
    AttachmentKind,
    DecodeError,
    classify_attachment,
    decode_attachment,
)
from dmarc_digest.parsers.dmarc_parser import ParseError, parse_report
from dmarc_digest.schemas import ACTIVE_PARTITION, ReportRecord
from dmarc_digest.services.dedup import DedupStore
from dmarc_digest.services.notifications import AlertSink, LogAlertSink
from dmarc_digest.services.row_store import RowStore

logger = logging.getLogger(__name__)


@dataclass
class Attachment:
    filename: str
    content: bytes


@dataclass
class InboundMessage:
    """A candidate message handed over by the mailbox side"""
    message_id: str
    attachments: List[Attachment] = field(default_factory=list)
    subject: str = ""


@dataclass
class IngestionStats:
    messages_checked: int = 0
    messages_committed: int = 0
    duplicates_skipped: int = 0
    without_attachments: int = 0
    messages_failed: int = 0  # no payload parsed; retried next run
    attachments_skipped: int = 0
    decode_errors: int = 0
    parse_errors: int = 0
    records_committed: int = 0
    alerts: List[str] = field(default_factory=list)
    notified: bool = False

    def as_dict(self) -> dict:
        data = dict(self.__dict__)
        data["alerts"] = len(self.alerts)
        return data


def format_alert(record: ReportRecord) -> str:
    return f"{record.reporting_org} - IP: {record.source_ip} failed DKIM/SPF {record.count} times"


class IngestionPipeline:
    """Ingest candidate messages into the active partition"""

    def __init__(
        self,
        row_store: Optional[RowStore],
        dedup: Optional[DedupStore] = None,
        alert_sink: Optional[AlertSink] = None,
        threshold_failures: Optional[int] = None,
        cache=None
    ):
        if row_store is None:
            raise ConfigError("Ingestion needs a row sink", kind=ConfigErrorKind.MISSING_SINK)

        settings = get_settings()

        self.row_store = row_store
        self.db = row_store.db
        self.dedup = dedup or DedupStore(self.db)
        self.alert_sink = alert_sink or LogAlertSink()
        self.alert_subject = settings.alert_subject
        self.threshold_failures = (
            threshold_failures if threshold_failures is not None else settings.threshold_failures
        )
        self.cache = cache

    # ==================== Batch ====================

    def ingest(self, messages: Iterable[InboundMessage], now: Optional[datetime] = None) -> IngestionStats:
        """
        Ingest a batch of messages

        Args:
            messages: Candidate messages with their attachments
            now: Ingestion timestamp stamped on committed rows (default: utcnow)

        Returns:
            IngestionStats for the batch
        """
        stats = IngestionStats()

        try:
            for message in messages:
                stats.messages_checked += 1
                self.process_message(message, stats, now or datetime.utcnow())
        finally:
            # Committed messages are marked seen, so their alerts must go out
            # even when a later commit aborts the run
            if stats.alerts:
                self._send_alerts(stats)

            if stats.messages_committed and self.cache is not None:
                self.cache.invalidate_pattern("rollup:*")

        logger.info("Ingestion completed", extra=stats.as_dict())

        return stats

    # ==================== Single Message ====================

    def process_message(self, message: InboundMessage, stats: IngestionStats, now: datetime) -> bool:
        """
        Process one message; returns True if its records were committed

        Raises:
            SQLAlchemyError: If the commit fails (nothing from this message is kept)
        """
        message_id = message.message_id

        if not message_id:
            logger.warning("Skipping message without a Message-ID")
            stats.messages_failed += 1
            record_message_processed("failed")
            return False

        if not message.attachments:
            logger.info("Skipping message without attachments", extra={"message_id": message_id})
            stats.without_attachments += 1
            record_message_processed("empty")
            return False

        if self.dedup.already_seen(message_id):
            logger.info("Skipping already ingested message", extra={"message_id": message_id})
            stats.duplicates_skipped += 1
            record_message_processed("duplicate")
            return False

        records, parsed_payloads = self._extract_records(message, stats)

        try:
            if parsed_payloads:
                for record in records:
                    record.processed_at = now
                self.row_store.append_rows(ACTIVE_PARTITION, records)
                self.dedup.mark_seen(message_id, len(records), committed_at=now)
            self.db.commit()
        except SQLAlchemyError:
            self.db.rollback()
            logger.error("Commit failed, message left for retry", extra={"message_id": message_id}, exc_info=True)
            raise

        if not parsed_payloads:
            logger.warning(
                "No payload could be parsed, message left for retry",
                extra={"message_id": message_id}
            )
            stats.messages_failed += 1
            record_message_processed("failed")
            return False

        stats.messages_committed += 1
        stats.records_committed += len(records)
        record_message_processed("committed")
        record_records_ingested(len(records))

        for record in records:
            if record.is_auth_failure and record.count >= self.threshold_failures:
                stats.alerts.append(format_alert(record))

        logger.info(
            f"Committed {len(records)} records from {parsed_payloads} payload(s)",
            extra={"message_id": message_id, "rows": len(records)}
        )

        return True

    def _extract_records(self, message: InboundMessage, stats: IngestionStats) -> Tuple[List[ReportRecord], int]:
        records: List[ReportRecord] = []
        parsed_payloads = 0

        for attachment in message.attachments:
            kind = classify_attachment(attachment.filename)
            if kind == AttachmentKind.OTHER:
                logger.info(
                    f"Skipping unsupported attachment {attachment.filename}",
                    extra={"message_id": message.message_id, "attachment": attachment.filename}
                )
                stats.attachments_skipped += 1
                continue

            try:
                payloads = decode_attachment(attachment.content, kind)
            except DecodeError as e:
                stats.decode_errors += 1
                self._record_failure(message.message_id, attachment.filename, "decode", e.kind.value, str(e))
                continue

            for payload in payloads:
                try:
                    report = parse_report(payload, message_id=message.message_id)
                except ParseError as e:
                    stats.parse_errors += 1
                    self._record_failure(message.message_id, attachment.filename, "parse", e.kind.value, str(e))
                    continue

                parsed_payloads += 1
                records.extend(report.records)

        return records, parsed_payloads

    def _record_failure(self, message_id: str, filename: str, stage: str, kind: str, detail: str):
        logger.warning(
            f"Failed to {stage} attachment {filename}: {detail}",
            extra={"message_id": message_id, "attachment": filename, "error_kind": kind}
        )
        record_payload_error(stage, kind)
        self.db.add(IngestionFailure(
            message_id=message_id,
            filename=filename or "",
            stage=stage,
            error_kind=kind,
            detail=detail[:2000],
        ))

    # ==================== Alerts ====================

    def _send_alerts(self, stats: IngestionStats):
        record_alerts(len(stats.alerts))
        body = "\n".join(stats.alerts)
        try:
            self.alert_sink.notify(self.alert_subject, body)
            stats.notified = True
        except Exception as e:
            # Rows are already committed; the alert text stays in the log
            logger.error(f"Failed to send alert notification: {e}\n{body}", exc_info=True)
