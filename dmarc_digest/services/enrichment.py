"""
Row enrichment: plain-language failure reasons and source-IP countries.

The failure reason is a pure function of disposition/DKIM/SPF. Country
lookups go through a GeolocationProvider with:
- cache first (memory, then database)
- one lookup per unique IP per run, never per row
- bounded worker threads behind a shared rate limiter
- "Unknown" on any failure; "Unknown" is terminal and never re-queried
"""
import logging
from concurrent.futures import ThreadPoolExecutor, as_completed
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from dmarc_digest.config import get_settings
from dmarc_digest.metrics import record_geo_lookup
from dmarc_digest.schemas import (
    UNKNOWN_COUNTRY,
    AuthOutcome,
    Disposition,
    ReportRecord,
)
from dmarc_digest.services.geolocation import EnrichmentError, GeoCache, GeolocationProvider
from dmarc_digest.utils.ip_utils import is_valid_ipv4
from dmarc_digest.utils.rate_limit import RateLimiter

logger = logging.getLogger(__name__)


def failure_reason(disposition: Disposition, dkim: AuthOutcome, spf: AuthOutcome) -> str:
    """
    Explain a record's outcome in plain language

    >>> failure_reason(Disposition.REJECT, AuthOutcome.FAIL, AuthOutcome.PASS)
    'DKIM failed. Message rejected.'
    """
    dkim_failed = dkim == AuthOutcome.FAIL
    spf_failed = spf == AuthOutcome.FAIL

    if disposition == Disposition.REJECT:
        if dkim_failed and spf_failed:
            return "Both DKIM and SPF failed. Message rejected."
        if dkim_failed:
            return "DKIM failed. Message rejected."
        if spf_failed:
            return "SPF failed. Message rejected."
        return "Rejected for other policy reason."

    if disposition == Disposition.NONE:
        if dkim_failed and spf_failed:
            return "Both DKIM and SPF failed. No action taken."
        if dkim_failed:
            return "DKIM failed. No action taken."
        if spf_failed:
            return "SPF failed. No action taken."
        return "Passed authentication, no action taken."

    return f"Disposition: {disposition.value}, DKIM: {dkim.value}, SPF: {spf.value}"


@dataclass
class EnrichmentStats:
    rows_seen: int = 0
    reasons_set: int = 0
    already_enriched: int = 0
    malformed_ips: int = 0
    cache_hits: int = 0
    lookups: int = 0
    resolved: int = 0
    unknown: int = 0
    deferred: int = 0  # over the per-run lookup cap, left empty for next run

    def as_dict(self) -> dict:
        return dict(self.__dict__)


class EnrichmentEngine:
    """Apply failure reasons and countries to rows in place"""

    def __init__(
        self,
        provider: GeolocationProvider,
        cache: Optional[GeoCache] = None,
        rate_limiter: Optional[RateLimiter] = None,
        max_workers: Optional[int] = None,
        max_lookups: Optional[int] = None
    ):
        settings = get_settings()

        self.provider = provider
        self.cache = cache if cache is not None else GeoCache()
        self.rate_limiter = rate_limiter or RateLimiter(settings.geo_requests_per_minute)
        self.max_workers = max_workers or settings.geo_max_workers
        self.max_lookups = settings.geo_max_lookups_per_run if max_lookups is None else max_lookups

    # ==================== Rows ====================

    def enrich(self, rows: List[ReportRecord]) -> Tuple[EnrichmentStats, List[ReportRecord]]:
        """
        Enrich rows in place

        Returns:
            Tuple of (stats, rows that changed)
        """
        stats = EnrichmentStats(rows_seen=len(rows))
        changed: Dict[int, ReportRecord] = {}

        for row in rows:
            if not row.failure_reason:
                row.failure_reason = failure_reason(row.disposition, row.dkim_result, row.spf_result)
                stats.reasons_set += 1
                changed[id(row)] = row

        pending: Dict[str, List[ReportRecord]] = {}
        for row in rows:
            if row.country:
                stats.already_enriched += 1
                continue

            if not is_valid_ipv4(row.source_ip):
                row.country = UNKNOWN_COUNTRY
                stats.malformed_ips += 1
                changed[id(row)] = row
                continue

            cached = self.cache.get(row.source_ip)
            if cached:
                row.country = cached
                stats.cache_hits += 1
                changed[id(row)] = row
                continue

            pending.setdefault(row.source_ip, []).append(row)

        ips = list(pending)
        if self.max_lookups and len(ips) > self.max_lookups:
            for ip in ips[self.max_lookups:]:
                stats.deferred += len(pending[ip])
            logger.info(
                f"Lookup cap reached: {len(ips) - self.max_lookups} IPs deferred to the next run"
            )
            ips = ips[:self.max_lookups]

        for ip, country in self._resolve(ips):
            stats.lookups += 1
            if country:
                self.cache.put(ip, country)
                stats.resolved += 1
            else:
                country = UNKNOWN_COUNTRY
                stats.unknown += 1
            for row in pending[ip]:
                row.country = country
                changed[id(row)] = row

        logger.info("Enrichment completed", extra=stats.as_dict())

        return stats, list(changed.values())

    def enrich_partition(self, row_store, partition_key: Optional[str] = None) -> EnrichmentStats:
        """
        Load rows lacking fields, enrich them and persist the result

        Args:
            row_store: Row sink to read from and write back to
            partition_key: One partition, or None for active plus every archive
        """
        stored = row_store.read_rows(partition_key) if partition_key else row_store.read_all_rows()
        rows = [
            row for row in stored
            if not row.country or not row.failure_reason
        ]
        stats, changed = self.enrich(rows)

        try:
            row_store.update_rows(changed)
            row_store.db.commit()
        except Exception:
            row_store.db.rollback()
            raise

        return stats

    # ==================== Lookups ====================

    def _resolve(self, ips: List[str]):
        """Yield (ip, country or None) as lookups finish"""
        if not ips:
            return

        with ThreadPoolExecutor(max_workers=min(self.max_workers, len(ips))) as executor:
            futures = {executor.submit(self._lookup, ip): ip for ip in ips}
            for future in as_completed(futures):
                yield futures[future], future.result()

    def _lookup(self, ip_address: str) -> Optional[str]:
        self.rate_limiter.acquire()
        try:
            country = self.provider.lookup(ip_address)
        except EnrichmentError as e:
            logger.warning(
                f"Geolocation failed for {ip_address}: {e}",
                extra={"source_ip": ip_address, "error_kind": e.kind.value}
            )
            record_geo_lookup(e.kind.value)
            return None
        except Exception as e:
            # Provider bugs degrade the row like any other lookup failure
            logger.error(
                f"Unexpected geolocation error for {ip_address}: {e}",
                extra={"source_ip": ip_address},
                exc_info=True
            )
            record_geo_lookup("error")
            return None

        record_geo_lookup("resolved")
        return country
