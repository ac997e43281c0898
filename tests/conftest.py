"""
Test Configuration and Fixtures

Each test gets its own in-memory SQLite database so services are free to
commit and roll back. Set TEST_DATABASE_URL to run against another backend.
"""

import os

# Must be set before dmarc_digest.config is imported anywhere
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("CACHE_ENABLED", "false")
os.environ.setdefault("SMTP_HOST", "")
os.environ.setdefault("ALERT_EMAIL_TO", "")

import gzip
import io
import zipfile
from datetime import datetime

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dmarc_digest.database import Base
from dmarc_digest.schemas import ReportRecord


TEST_DATABASE_URL = os.getenv("TEST_DATABASE_URL", "sqlite://")


@pytest.fixture(scope="function")
def db_engine():
    """Create a fresh database with all tables"""
    # Import all models to register them with Base
    from dmarc_digest.models import (  # noqa: F401
        ReportRow, SeenMessage, IngestionFailure,
        GeoLocationCache, Partition, RetentionLog
    )

    if TEST_DATABASE_URL.startswith("sqlite"):
        engine = create_engine(
            TEST_DATABASE_URL,
            connect_args={"check_same_thread": False},
            poolclass=StaticPool
        )
    else:
        engine = create_engine(TEST_DATABASE_URL)

    Base.metadata.create_all(bind=engine)

    yield engine

    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture(scope="function")
def db_session(db_engine):
    """Session on the per-test database"""
    TestingSessionLocal = sessionmaker(
        autocommit=False,
        autoflush=False,
        bind=db_engine
    )
    session = TestingSessionLocal()

    yield session

    session.close()


@pytest.fixture
def row_store(db_session):
    from dmarc_digest.services.row_store import RowStore
    return RowStore(db_session)


@pytest.fixture
def dedup(db_session):
    from dmarc_digest.services.dedup import DedupStore
    return DedupStore(db_session)


@pytest.fixture
def make_record():
    """Factory for ReportRecord with sensible defaults"""
    def _make(**overrides):
        values = {
            "message_id": "<msg-1@example.com>",
            "reporting_org": "google.com",
            "source_ip": "192.0.2.1",
            "disposition": "none",
            "dkim_result": "pass",
            "spf_result": "pass",
            "domain": "example.com",
            "header_from": "example.com",
            "count": 1,
            "processed_at": datetime(2025, 6, 10, 12, 0, 0),
        }
        values.update(overrides)
        return ReportRecord(**values)
    return _make


@pytest.fixture
def sample_xml():
    """Sample DMARC XML content without records"""
    return b"""<?xml version="1.0" encoding="UTF-8"?>
<feedback>
  <report_metadata>
    <org_name>Google Inc.</org_name>
    <report_id>12345678901234567890</report_id>
    <date_range>
      <begin>1609459200</begin>
      <end>1609545600</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>example.com</domain>
    <p>quarantine</p>
  </policy_published>
</feedback>
"""


@pytest.fixture
def sample_xml_with_records():
    """Sample DMARC XML content with records"""
    return b"""<?xml version="1.0" encoding="UTF-8"?>
<feedback>
  <report_metadata>
    <org_name>google.com</org_name>
    <email>noreply-dmarc-support@google.com</email>
    <report_id>12345678901234567890</report_id>
    <date_range>
      <begin>1609459200</begin>
      <end>1609545600</end>
    </date_range>
  </report_metadata>
  <policy_published>
    <domain>example.com</domain>
    <adkim>r</adkim>
    <aspf>r</aspf>
    <p>quarantine</p>
    <sp>none</sp>
    <pct>100</pct>
  </policy_published>
  <record>
    <row>
      <source_ip>192.168.1.1</source_ip>
      <count>10</count>
      <policy_evaluated>
        <disposition>none</disposition>
        <dkim>pass</dkim>
        <spf>pass</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>example.com</header_from>
    </identifiers>
    <auth_results>
      <dkim>
        <domain>example.com</domain>
        <result>pass</result>
        <selector>selector1</selector>
      </dkim>
      <spf>
        <domain>example.com</domain>
        <result>pass</result>
        <scope>mfrom</scope>
      </spf>
    </auth_results>
  </record>
  <record>
    <row>
      <source_ip>10.0.0.1</source_ip>
      <count>5</count>
      <policy_evaluated>
        <disposition>reject</disposition>
        <dkim>fail</dkim>
        <spf>fail</spf>
      </policy_evaluated>
    </row>
    <identifiers>
      <header_from>example.com</header_from>
    </identifiers>
    <auth_results>
      <dkim>
        <domain>example.com</domain>
        <result>fail</result>
      </dkim>
      <spf>
        <domain>example.com</domain>
        <result>fail</result>
      </spf>
    </auth_results>
  </record>
</feedback>
"""


@pytest.fixture
def sample_gzip(sample_xml_with_records):
    """Sample gzipped DMARC report"""
    return gzip.compress(sample_xml_with_records)


@pytest.fixture
def sample_zip(sample_xml_with_records):
    """Sample zipped DMARC report"""
    zip_buffer = io.BytesIO()
    with zipfile.ZipFile(zip_buffer, 'w', zipfile.ZIP_DEFLATED) as zf:
        zf.writestr("report.xml", sample_xml_with_records)
    return zip_buffer.getvalue()
