"""
CSV export of the current month's rows
"""
import csv
import io
from datetime import datetime
from typing import Iterable, Optional

from dmarc_digest.schemas import ROW_FIELDS, ReportRecord


def _cell(record: ReportRecord, name: str) -> str:
    value = getattr(record, name)
    if value is None:
        return ""
    if isinstance(value, datetime):
        return value.strftime("%Y-%m-%d %H:%M:%S")
    if hasattr(value, "value"):
        return value.value
    return str(value)


def export_month_csv(rows: Iterable[ReportRecord], now: Optional[datetime] = None) -> str:
    """
    Render rows processed in the calendar month of `now` as CSV

    Every field is quoted; the header row follows the row schema order.
    """
    now = now or datetime.utcnow()

    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL)
    writer.writerow(ROW_FIELDS)

    for record in rows:
        processed = record.processed_at
        if processed is None or (processed.year, processed.month) != (now.year, now.month):
            continue
        writer.writerow([_cell(record, name) for name in ROW_FIELDS])

    return buffer.getvalue()
