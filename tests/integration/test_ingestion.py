"""Integration tests for the ingestion pipeline"""
import gzip
import io
import zipfile
from datetime import datetime
from unittest.mock import MagicMock, patch

import pytest
from sqlalchemy import Text
from sqlalchemy.exc import SQLAlchemyError

from dmarc_digest.config import ConfigError, ConfigErrorKind
from dmarc_digest.models import IngestionFailure, ReportRow, SeenMessage
from dmarc_digest.schemas import ACTIVE_PARTITION
from dmarc_digest.services.ingestion import (
    Attachment,
    InboundMessage,
    IngestionPipeline,
    format_alert,
)

NOW = datetime(2025, 6, 10, 8, 0, 0)


def _failing_report(org: str, ip: str, count: int) -> bytes:
    return (
        "<feedback>"
        f"<report_metadata><org_name>{org}</org_name></report_metadata>"
        f"<record><row><source_ip>{ip}</source_ip><count>{count}</count>"
        "<policy_evaluated><disposition>none</disposition><dkim>fail</dkim><spf>pass</spf>"
        "</policy_evaluated></row></record>"
        "</feedback>"
    ).encode()


@pytest.fixture
def alert_sink():
    return MagicMock()


@pytest.fixture
def pipeline(row_store, dedup, alert_sink):
    return IngestionPipeline(row_store, dedup=dedup, alert_sink=alert_sink, threshold_failures=3)


@pytest.fixture
def message(sample_xml_with_records):
    return InboundMessage(
        message_id="<report-1@google.com>",
        attachments=[Attachment("google.com!example.com!1609459200!1609545600.xml", sample_xml_with_records)],
    )


@pytest.mark.integration
class TestCommit:
    """Test that parsed records land in the active partition"""

    def test_ingest_commits_records(self, pipeline, message, row_store, dedup):
        stats = pipeline.ingest([message], now=NOW)

        assert stats.messages_checked == 1
        assert stats.messages_committed == 1
        assert stats.records_committed == 2

        rows = row_store.read_rows(ACTIVE_PARTITION)
        assert [row.source_ip for row in rows] == ["192.168.1.1", "10.0.0.1"]
        assert all(row.processed_at == NOW for row in rows)
        assert all(row.message_id == "<report-1@google.com>" for row in rows)
        assert all(row.country == "" and row.failure_reason == "" for row in rows)
        assert dedup.already_seen("<report-1@google.com>")

    @pytest.mark.parametrize("fixture_name,filename", [
        ("sample_gzip", "report.xml.gz"),
        ("sample_zip", "report.zip"),
    ])
    def test_compressed_attachments(self, pipeline, row_store, request, fixture_name, filename):
        payload = request.getfixturevalue(fixture_name)
        msg = InboundMessage("<compressed@x>", [Attachment(filename, payload)])

        stats = pipeline.ingest([msg], now=NOW)

        assert stats.records_committed == 2
        assert row_store.count_rows(ACTIVE_PARTITION) == 2

    def test_report_without_records_is_marked_seen(self, pipeline, dedup, row_store, sample_xml):
        msg = InboundMessage("<empty-report@x>", [Attachment("report.xml", sample_xml)])

        stats = pipeline.ingest([msg], now=NOW)

        assert stats.messages_committed == 1
        assert stats.records_committed == 0
        assert row_store.count_rows(ACTIVE_PARTITION) == 0
        assert dedup.already_seen("<empty-report@x>")


@pytest.mark.integration
class TestDeduplication:
    """Test that a message is ingested at most once"""

    def test_second_run_is_a_noop(self, pipeline, message, row_store, alert_sink):
        pipeline.ingest([message], now=NOW)
        stats = pipeline.ingest([message], now=NOW)

        assert stats.duplicates_skipped == 1
        assert stats.messages_committed == 0
        assert stats.alerts == []
        assert row_store.count_rows(ACTIVE_PARTITION) == 2
        assert alert_sink.notify.call_count == 1

    def test_duplicate_within_one_batch(self, pipeline, message, row_store):
        stats = pipeline.ingest([message, message], now=NOW)

        assert stats.messages_committed == 1
        assert stats.duplicates_skipped == 1
        assert row_store.count_rows(ACTIVE_PARTITION) == 2

    def test_long_message_id(self, pipeline, message, row_store, dedup):
        """Test that an over-long Message-ID is stored whole and still deduplicates"""
        long_id = "<" + "a" * 2000 + "@example.com>"
        message.message_id = long_id

        first = pipeline.ingest([message], now=NOW)
        second = pipeline.ingest([message], now=NOW)

        assert first.messages_committed == 1
        assert second.duplicates_skipped == 1
        assert dedup.already_seen(long_id)
        assert all(row.message_id == long_id for row in row_store.read_rows(ACTIVE_PARTITION))

    @pytest.mark.parametrize("model", [ReportRow, SeenMessage, IngestionFailure])
    def test_message_id_column_is_unbounded(self, model):
        column_type = model.__table__.c.message_id.type

        assert isinstance(column_type, Text)
        assert getattr(column_type, "length", None) is None


@pytest.mark.integration
class TestAtomicCommit:
    """Test that a message is committed whole or not at all"""

    def test_all_payloads_failing_is_not_marked(self, pipeline, dedup, row_store, db_session):
        msg = InboundMessage("<broken@x>", [Attachment("report.xml.gz", b"not gzip")])

        stats = pipeline.ingest([msg], now=NOW)

        assert stats.messages_failed == 1
        assert stats.decode_errors == 1
        assert not dedup.already_seen("<broken@x>")
        assert row_store.count_rows(ACTIVE_PARTITION) == 0

        failure = db_session.query(IngestionFailure).one()
        assert failure.message_id == "<broken@x>"
        assert failure.stage == "decode"
        assert failure.error_kind == "invalid_compression"

    def test_failed_message_is_retried(self, pipeline, dedup, sample_xml_with_records):
        broken = InboundMessage("<retry@x>", [Attachment("report.xml", b"<feedback><record>")])
        fixed = InboundMessage("<retry@x>", [Attachment("report.xml", sample_xml_with_records)])

        first = pipeline.ingest([broken], now=NOW)
        second = pipeline.ingest([fixed], now=NOW)

        assert first.parse_errors == 1
        assert second.messages_committed == 1
        assert dedup.already_seen("<retry@x>")

    def test_partial_failure_commits_good_payloads(self, pipeline, dedup, row_store, sample_xml_with_records):
        msg = InboundMessage("<partial@x>", [
            Attachment("good.xml", sample_xml_with_records),
            Attachment("bad.zip", b"not a zip"),
        ])

        stats = pipeline.ingest([msg], now=NOW)

        assert stats.messages_committed == 1
        assert stats.decode_errors == 1
        assert row_store.count_rows(ACTIVE_PARTITION) == 2
        assert dedup.already_seen("<partial@x>")

    def test_commit_failure_keeps_nothing(self, pipeline, message, db_session, dedup, row_store):
        with patch.object(db_session, "commit", side_effect=SQLAlchemyError("disk full")):
            with pytest.raises(SQLAlchemyError):
                pipeline.ingest([message], now=NOW)

        assert not dedup.already_seen("<report-1@google.com>")
        assert row_store.count_rows(ACTIVE_PARTITION) == 0
        assert db_session.query(SeenMessage).count() == 0


@pytest.mark.integration
class TestSkippedMessages:
    """Test messages that are not ingested"""

    def test_unsupported_attachments_skipped(self, pipeline, dedup, sample_xml_with_records):
        msg = InboundMessage("<mixed@x>", [
            Attachment("invoice.pdf", b"%PDF-1.4"),
            Attachment("report.xml", sample_xml_with_records),
        ])

        stats = pipeline.ingest([msg], now=NOW)

        assert stats.attachments_skipped == 1
        assert stats.decode_errors == 0
        assert stats.records_committed == 2

    def test_message_without_attachments(self, pipeline, dedup):
        stats = pipeline.ingest([InboundMessage("<bare@x>", [])], now=NOW)

        assert stats.without_attachments == 1
        assert not dedup.already_seen("<bare@x>")

    def test_message_without_id(self, pipeline, sample_xml_with_records, row_store):
        msg = InboundMessage("", [Attachment("report.xml", sample_xml_with_records)])

        stats = pipeline.ingest([msg], now=NOW)

        assert stats.messages_failed == 1
        assert row_store.count_rows(ACTIVE_PARTITION) == 0


@pytest.mark.integration
class TestAlerts:
    """Test threshold notifications"""

    def test_single_notification_per_batch(self, pipeline, alert_sink):
        messages = [
            InboundMessage("<a@x>", [Attachment("a.xml", _failing_report("Org A", "192.0.2.1", 5))]),
            InboundMessage("<b@x>", [Attachment("b.xml", _failing_report("Org B", "192.0.2.2", 3))]),
            InboundMessage("<c@x>", [Attachment("c.xml", _failing_report("Org C", "192.0.2.3", 2))]),
        ]

        stats = pipeline.ingest(messages, now=NOW)

        alert_sink.notify.assert_called_once()
        subject, body = alert_sink.notify.call_args[0]
        assert subject == "DMARC Alert: DKIM/SPF failures over threshold"
        assert body == (
            "Org A - IP: 192.0.2.1 failed DKIM/SPF 5 times\n"
            "Org B - IP: 192.0.2.2 failed DKIM/SPF 3 times"
        )
        assert stats.notified is True

    def test_no_notification_below_threshold(self, pipeline, alert_sink):
        msg = InboundMessage("<low@x>", [Attachment("a.xml", _failing_report("Org", "192.0.2.1", 2))])

        stats = pipeline.ingest([msg], now=NOW)

        alert_sink.notify.assert_not_called()
        assert stats.alerts == []

    def test_passing_records_never_alert(self, row_store, dedup, alert_sink, sample_xml_with_records):
        # 192.168.1.1 passes with count 10; 10.0.0.1 fails with count 5
        pipeline = IngestionPipeline(row_store, dedup=dedup, alert_sink=alert_sink, threshold_failures=6)
        msg = InboundMessage("<m@x>", [Attachment("r.xml", sample_xml_with_records)])

        pipeline.ingest([msg], now=NOW)

        alert_sink.notify.assert_not_called()

    def test_errors_do_not_notify(self, pipeline, alert_sink):
        msg = InboundMessage("<bad@x>", [Attachment("r.xml.gz", gzip.compress(b"<feedback"))])

        pipeline.ingest([msg], now=NOW)

        alert_sink.notify.assert_not_called()

    def test_sink_failure_does_not_undo_commit(self, pipeline, alert_sink, message, dedup):
        alert_sink.notify.side_effect = ConnectionError("smtp down")

        stats = pipeline.ingest([message], now=NOW)

        assert stats.notified is False
        assert stats.alerts == ["google.com - IP: 10.0.0.1 failed DKIM/SPF 5 times"]
        assert dedup.already_seen("<report-1@google.com>")

    def test_format_alert(self, make_record):
        record = make_record(reporting_org="Yahoo", source_ip="203.0.113.5", count=12)

        assert format_alert(record) == "Yahoo - IP: 203.0.113.5 failed DKIM/SPF 12 times"


@pytest.mark.integration
class TestPipelineSetup:
    """Test configuration guards and cache invalidation"""

    def test_missing_row_sink(self):
        with pytest.raises(ConfigError) as exc_info:
            IngestionPipeline(None)

        assert exc_info.value.kind == ConfigErrorKind.MISSING_SINK

    def test_commit_invalidates_rollup_cache(self, row_store, dedup, message):
        cache = MagicMock()
        pipeline = IngestionPipeline(row_store, dedup=dedup, alert_sink=MagicMock(), cache=cache)

        pipeline.ingest([message], now=NOW)

        cache.invalidate_pattern.assert_called_once_with("rollup:*")

    def test_duplicate_only_run_keeps_cache(self, row_store, dedup, message):
        cache = MagicMock()
        pipeline = IngestionPipeline(row_store, dedup=dedup, alert_sink=MagicMock(), cache=cache)
        pipeline.ingest([message], now=NOW)
        cache.reset_mock()

        pipeline.ingest([message], now=NOW)

        cache.invalidate_pattern.assert_not_called()


@pytest.mark.integration
class TestRunAbort:
    """Test what survives when a run aborts part way"""

    def test_alerts_sent_when_later_commit_fails(self, pipeline, dedup, alert_sink):
        first = InboundMessage("<m1@x>", [Attachment("a.xml", _failing_report("Org A", "192.0.2.1", 9))])
        second = InboundMessage("<m2@x>", [Attachment("b.xml", _failing_report("Org B", "192.0.2.2", 9))])
        mark_seen = dedup.mark_seen

        def failing_mark(message_id, *args, **kwargs):
            if message_id == "<m2@x>":
                raise SQLAlchemyError("connection lost")
            return mark_seen(message_id, *args, **kwargs)

        with patch.object(dedup, "mark_seen", side_effect=failing_mark):
            with pytest.raises(SQLAlchemyError):
                pipeline.ingest([first, second], now=NOW)

        assert dedup.already_seen("<m1@x>")
        assert not dedup.already_seen("<m2@x>")
        alert_sink.notify.assert_called_once()
        _, body = alert_sink.notify.call_args[0]
        assert body == "Org A - IP: 192.0.2.1 failed DKIM/SPF 9 times"

    def test_unreadable_archive_does_not_block_batch(self, pipeline, dedup, row_store, sample_xml_with_records):
        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, 'w') as zf:
            zf.writestr("report.xml", sample_xml_with_records)
        encrypted = bytearray(buffer.getvalue())
        encrypted[6] |= 0x1
        encrypted[encrypted.index(b"PK\x01\x02") + 8] |= 0x1

        bad = InboundMessage("<encrypted@x>", [Attachment("report.zip", bytes(encrypted))])
        good = InboundMessage("<good@x>", [Attachment("report.xml", sample_xml_with_records)])

        stats = pipeline.ingest([bad, good], now=NOW)

        assert stats.decode_errors == 1
        assert stats.messages_committed == 1
        assert dedup.already_seen("<good@x>")
        assert not dedup.already_seen("<encrypted@x>")
        assert row_store.count_rows(ACTIVE_PARTITION) == 2
