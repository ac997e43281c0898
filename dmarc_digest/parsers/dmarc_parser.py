"""
DMARC Aggregate Report XML Parser

Pure parser with no database dependencies. Decompression lives in
``dmarc_digest.parsers.attachments``; this module only sees XML.

Every <record> element yields exactly one ReportRecord. Missing sub-fields
fall back to empty strings, a zero count, or ``unknown`` enum values.
"""
import enum
import logging
from typing import Any, List, Optional
from xml.parsers.expat import ExpatError

import xmltodict
from pydantic import BaseModel, Field

from dmarc_digest.schemas import AuthOutcome, Disposition, ReportRecord

logger = logging.getLogger(__name__)


class ParseErrorKind(str, enum.Enum):
    MALFORMED = "malformed"


class ParseError(Exception):
    """Raised when a payload is not well-formed XML"""

    def __init__(self, message: str, kind: ParseErrorKind = ParseErrorKind.MALFORMED):
        self.kind = kind
        super().__init__(message)


class ParsedReport(BaseModel):
    """Report-level metadata plus its records (not yet stamped or enriched)"""
    reporting_org: str = ""
    report_id: str = ""
    policy_domain: str = ""
    records: List[ReportRecord] = Field(default_factory=list)


def _as_list(value: Any) -> list:
    """xmltodict returns a dict for one child and a list for repeated children"""
    if value is None:
        return []
    return value if isinstance(value, list) else [value]


def _child(node: Any, name: str) -> Any:
    if isinstance(node, dict):
        return node.get(name)
    return None


def _text(node: Any) -> str:
    """Text content of a leaf element ('' when absent or empty)"""
    if node is None:
        return ""
    if isinstance(node, dict):
        node = node.get("#text")
        if node is None:
            return ""
    if isinstance(node, list):
        return _text(node[0]) if node else ""
    return str(node).strip()


def _parse_count(node: Any) -> int:
    try:
        count = int(_text(node))
    except ValueError:
        return 0
    return count if count > 0 else 0


def _auth_domain(auth_results: Any) -> str:
    """
    Recover the authenticated domain: first DKIM domain, else first SPF domain
    """
    for mechanism in ("dkim", "spf"):
        for result in _as_list(_child(auth_results, mechanism)):
            domain = _text(_child(result, "domain"))
            if domain:
                return domain
    return ""


def _parse_record(rec: Any, org_name: str, message_id: str) -> ReportRecord:
    row = _child(rec, "row")
    policy = _child(row, "policy_evaluated")
    identifiers = _child(rec, "identifiers")

    return ReportRecord(
        message_id=message_id,
        reporting_org=org_name,
        source_ip=_text(_child(row, "source_ip")),
        count=_parse_count(_child(row, "count")),
        disposition=Disposition.from_xml(_text(_child(policy, "disposition")) or None),
        dkim_result=AuthOutcome.from_xml(_text(_child(policy, "dkim")) or None),
        spf_result=AuthOutcome.from_xml(_text(_child(policy, "spf")) or None),
        header_from=_text(_child(identifiers, "header_from")),
        domain=_auth_domain(_child(rec, "auth_results")),
    )


def parse_xml(xml_data: bytes) -> Any:
    """
    Parse raw XML into a dict tree

    Raises:
        ParseError: If the payload is not well-formed XML
    """
    try:
        return xmltodict.parse(xml_data)
    except (ExpatError, ValueError, LookupError) as e:
        # ValueError: entity declarations are refused; LookupError: unknown encoding
        raise ParseError(f"Failed to parse XML: {str(e)}")


def parse_report(xml_data: bytes, message_id: str = "") -> ParsedReport:
    """
    Parse a DMARC aggregate report

    Args:
        xml_data: Decompressed XML content as bytes
        message_id: Source message id stamped onto every record

    Returns:
        ParsedReport with one record per <record> element

    Raises:
        ParseError: If the payload is not well-formed XML
    """
    data = parse_xml(xml_data)

    # The document element is normally <feedback>; accept whatever is there
    root: Optional[Any] = next(iter(data.values()), None) if isinstance(data, dict) else None

    meta = _child(root, "report_metadata")
    org_name = _text(_child(meta, "org_name"))

    # An empty <record/> still counts as a record element
    elements = []
    if isinstance(root, dict) and "record" in root:
        elements = root["record"] if isinstance(root["record"], list) else [root["record"]]

    records = [_parse_record(rec, org_name, message_id) for rec in elements]

    report = ParsedReport(
        reporting_org=org_name,
        report_id=_text(_child(meta, "report_id")),
        policy_domain=_text(_child(_child(root, "policy_published"), "domain")),
        records=records,
    )

    logger.debug(
        f"Parsed report {report.report_id or '<no id>'} from {org_name or '<no org>'}: "
        f"{len(records)} records"
    )

    return report
