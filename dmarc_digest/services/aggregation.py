"""
Rollups over ingested rows

Produces, for a row set and an optional inclusive processed_at range:
- rows per reporting org
- rows per source IP that did not pass both DKIM and SPF
- rows per authenticated domain
- DKIM / SPF pass and fail totals (unknown counts as fail)

All accumulation happens in an explicit RollupAccumulator, so two
aggregations never share state.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time
from typing import Dict, Iterable, List, Optional, Tuple, Union

from dmarc_digest.config import get_settings
from dmarc_digest.schemas import ACTIVE_PARTITION, AuthOutcome, ReportRecord
from dmarc_digest.services.cache import cache_key
from dmarc_digest.services.row_store import RowStore

logger = logging.getLogger(__name__)

DateBound = Union[date, datetime, None]


class ReportingScope(str, enum.Enum):
    CURRENT = "current"  # active partition only
    ALL = "all"          # active plus every archived partition


@dataclass
class Rollups:
    by_org: List[Tuple[str, int]] = field(default_factory=list)
    failing_ips: List[Tuple[str, int]] = field(default_factory=list)
    by_domain: List[Tuple[str, int]] = field(default_factory=list)
    dkim_pass: int = 0
    dkim_fail: int = 0
    spf_pass: int = 0
    spf_fail: int = 0
    total_rows: int = 0

    def to_dict(self) -> dict:
        return {
            "by_org": [list(item) for item in self.by_org],
            "failing_ips": [list(item) for item in self.failing_ips],
            "by_domain": [list(item) for item in self.by_domain],
            "dkim_pass": self.dkim_pass,
            "dkim_fail": self.dkim_fail,
            "spf_pass": self.spf_pass,
            "spf_fail": self.spf_fail,
            "total_rows": self.total_rows,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "Rollups":
        return cls(
            by_org=[tuple(item) for item in data.get("by_org", [])],
            failing_ips=[tuple(item) for item in data.get("failing_ips", [])],
            by_domain=[tuple(item) for item in data.get("by_domain", [])],
            dkim_pass=data.get("dkim_pass", 0),
            dkim_fail=data.get("dkim_fail", 0),
            spf_pass=data.get("spf_pass", 0),
            spf_fail=data.get("spf_fail", 0),
            total_rows=data.get("total_rows", 0),
        )


@dataclass
class RollupAccumulator:
    """Running counts; dicts keep first-encounter order for stable ties"""
    orgs: Dict[str, int] = field(default_factory=dict)
    failing_ips: Dict[str, int] = field(default_factory=dict)
    domains: Dict[str, int] = field(default_factory=dict)
    dkim_pass: int = 0
    dkim_fail: int = 0
    spf_pass: int = 0
    spf_fail: int = 0
    total_rows: int = 0

    def add(self, record: ReportRecord) -> None:
        self.total_rows += 1
        self.orgs[record.reporting_org] = self.orgs.get(record.reporting_org, 0) + 1

        if not record.fully_passed:
            self.failing_ips[record.source_ip] = self.failing_ips.get(record.source_ip, 0) + 1

        if record.domain:
            self.domains[record.domain] = self.domains.get(record.domain, 0) + 1

        if record.dkim_result == AuthOutcome.PASS:
            self.dkim_pass += 1
        else:
            self.dkim_fail += 1

        if record.spf_result == AuthOutcome.PASS:
            self.spf_pass += 1
        else:
            self.spf_fail += 1

    def result(self) -> Rollups:
        return Rollups(
            by_org=_ranked(self.orgs),
            failing_ips=_ranked(self.failing_ips),
            by_domain=_ranked(self.domains),
            dkim_pass=self.dkim_pass,
            dkim_fail=self.dkim_fail,
            spf_pass=self.spf_pass,
            spf_fail=self.spf_fail,
            total_rows=self.total_rows,
        )


def _ranked(counts: Dict[str, int]) -> List[Tuple[str, int]]:
    # sorted() is stable, so equal counts keep encounter order
    return sorted(counts.items(), key=lambda item: item[1], reverse=True)


def _lower_bound(value: DateBound) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.combine(value, time.min)


def _upper_bound(value: DateBound) -> Optional[datetime]:
    # A bare date includes the whole day
    if value is None or isinstance(value, datetime):
        return value
    return datetime.combine(value, time.max)


def in_range(record: ReportRecord, start: DateBound = None, end: DateBound = None) -> bool:
    lower, upper = _lower_bound(start), _upper_bound(end)
    if lower is None and upper is None:
        return True
    if record.processed_at is None:
        return False
    if lower is not None and record.processed_at < lower:
        return False
    if upper is not None and record.processed_at > upper:
        return False
    return True


def aggregate(rows: Iterable[ReportRecord], start: DateBound = None, end: DateBound = None) -> Rollups:
    """
    Compute every rollup over a row set

    Args:
        rows: Records to aggregate
        start: Inclusive lower bound on processed_at
        end: Inclusive upper bound on processed_at

    Returns:
        Rollups for the rows inside the range
    """
    accumulator = RollupAccumulator()
    for record in rows:
        if in_range(record, start, end):
            accumulator.add(record)
    return accumulator.result()


class ReportingService:
    """Aggregate a reporting scope, with optional Redis caching"""

    def __init__(self, row_store: RowStore, cache=None):
        self.row_store = row_store
        self.cache = cache

    def load_rows(self, scope: ReportingScope) -> List[ReportRecord]:
        if scope == ReportingScope.ALL:
            return self.row_store.read_all_rows()
        return self.row_store.read_rows(ACTIVE_PARTITION)

    def rollups(
        self,
        scope: ReportingScope = ReportingScope.CURRENT,
        start: DateBound = None,
        end: DateBound = None
    ) -> Rollups:
        key = cache_key("rollup", scope.value, start=start, end=end)

        if self.cache is not None:
            cached = self.cache.get(key)
            if cached is not None:
                logger.debug(f"Cache hit: {key}")
                return Rollups.from_dict(cached)

        rollups = aggregate(self.load_rows(scope), start, end)

        if self.cache is not None:
            self.cache.set(key, rollups.to_dict(), get_settings().cache_default_ttl)

        logger.info(
            f"Computed rollups for scope={scope.value}: {rollups.total_rows} rows",
            extra={"rows": rollups.total_rows}
        )

        return rollups
