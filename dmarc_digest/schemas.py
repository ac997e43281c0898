"""
Typed row schema shared by the parser, the pipeline and the services.

Enum values are the lowercase tokens found in DMARC aggregate XML, so a
value read back from storage converts with ``Disposition(value)``.
"""
import enum
from datetime import datetime
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

ACTIVE_PARTITION = "active"
UNKNOWN_COUNTRY = "Unknown"


class Disposition(str, enum.Enum):
    """Policy action applied by the receiver"""
    NONE = "none"
    QUARANTINE = "quarantine"
    REJECT = "reject"
    UNKNOWN = "unknown"

    @classmethod
    def from_xml(cls, value: Optional[str]) -> "Disposition":
        return _coerce(cls, value)


class AuthOutcome(str, enum.Enum):
    """DKIM or SPF evaluation outcome"""
    PASS = "pass"
    FAIL = "fail"
    UNKNOWN = "unknown"

    @classmethod
    def from_xml(cls, value: Optional[str]) -> "AuthOutcome":
        return _coerce(cls, value)


def _coerce(enum_cls, value):
    if value is None:
        return enum_cls.UNKNOWN
    try:
        return enum_cls(str(value).strip().lower())
    except ValueError:
        return enum_cls.UNKNOWN


class ReportRecord(BaseModel):
    """One ingested row"""
    model_config = ConfigDict(validate_assignment=True)

    message_id: str
    reporting_org: str = ""
    source_ip: str = ""
    disposition: Disposition = Disposition.UNKNOWN
    dkim_result: AuthOutcome = AuthOutcome.UNKNOWN
    spf_result: AuthOutcome = AuthOutcome.UNKNOWN
    domain: str = ""
    header_from: str = ""
    count: int = Field(default=0, ge=0)
    processed_at: Optional[datetime] = None
    country: str = ""
    failure_reason: str = ""

    # Storage identity, set once the row has been persisted
    row_id: Optional[int] = None
    partition_key: Optional[str] = None

    @field_validator('disposition', mode='before')
    @classmethod
    def coerce_disposition(cls, v):
        return v if isinstance(v, Disposition) else Disposition.from_xml(v)

    @field_validator('dkim_result', 'spf_result', mode='before')
    @classmethod
    def coerce_outcome(cls, v):
        return v if isinstance(v, AuthOutcome) else AuthOutcome.from_xml(v)

    @property
    def is_auth_failure(self) -> bool:
        """True when either mechanism explicitly failed"""
        return self.dkim_result == AuthOutcome.FAIL or self.spf_result == AuthOutcome.FAIL

    @property
    def fully_passed(self) -> bool:
        return self.dkim_result == AuthOutcome.PASS and self.spf_result == AuthOutcome.PASS


# Column order of the row schema, used for exports
ROW_FIELDS = [
    "message_id",
    "reporting_org",
    "source_ip",
    "disposition",
    "dkim_result",
    "spf_result",
    "domain",
    "header_from",
    "count",
    "processed_at",
    "country",
    "failure_reason",
]
