from sqlalchemy import Column, Integer, String, DateTime, Text
from datetime import datetime
from dmarc_digest.database import Base


class ReportRow(Base):
    """One normalized DMARC record, stored in a partition"""
    __tablename__ = "report_rows"

    id = Column(Integer, primary_key=True, index=True)

    # "active" or a YYYY-MM archive tag
    partition_key = Column(String(16), nullable=False, index=True)

    # Source message (shared by all rows of one message)
    message_id = Column(Text, nullable=False, index=True)

    reporting_org = Column(String(255), nullable=False, default="")
    source_ip = Column(String(45), nullable=False, default="", index=True)

    # Policy evaluated: enum tokens (none/quarantine/reject/pass/fail/unknown)
    disposition = Column(String(20), nullable=False, default="unknown")
    dkim_result = Column(String(20), nullable=False, default="unknown")
    spf_result = Column(String(20), nullable=False, default="unknown")

    domain = Column(String(255), nullable=False, default="", index=True)
    header_from = Column(String(255), nullable=False, default="")
    count = Column(Integer, nullable=False, default=0)

    processed_at = Column(DateTime, nullable=False, index=True)

    # Enrichment
    country = Column(String(100), nullable=False, default="")
    failure_reason = Column(Text, nullable=False, default="")

    def __repr__(self):
        return (
            f"<ReportRow(id={self.id}, partition={self.partition_key}, "
            f"message_id={self.message_id}, source_ip={self.source_ip})>"
        )


class SeenMessage(Base):
    """Dedup index: message ids that have been committed at least once"""
    __tablename__ = "seen_messages"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Text, unique=True, index=True, nullable=False)
    record_count = Column(Integer, nullable=False, default=0)
    committed_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<SeenMessage(message_id={self.message_id}, records={self.record_count})>"


class IngestionFailure(Base):
    """Decode/parse failures kept for operator visibility"""
    __tablename__ = "ingestion_failures"

    id = Column(Integer, primary_key=True, index=True)
    message_id = Column(Text, nullable=False, index=True)
    filename = Column(String(500), nullable=False, default="")
    stage = Column(String(20), nullable=False)  # decode, parse
    error_kind = Column(String(50), nullable=False)
    detail = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False, index=True)

    def __repr__(self):
        return f"<IngestionFailure(message_id={self.message_id}, stage={self.stage}, kind={self.error_kind})>"
