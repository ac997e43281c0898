"""
Prometheus metrics for DMARC Digest batch runs

Business metrics only (messages, records, alerts, enrichment, retention).
Batch runs can push them to a Pushgateway or expose them with
``prometheus_client.start_http_server``.
"""
from prometheus_client import Counter

# =============================================================================
# Ingestion Metrics
# =============================================================================

DMARC_MESSAGES_PROCESSED = Counter(
    "dmarc_messages_processed_total",
    "Total number of source messages handled by the ingestion pipeline",
    ["status"]  # committed, duplicate, failed, empty
)

DMARC_RECORDS_INGESTED = Counter(
    "dmarc_records_ingested_total",
    "Total number of DMARC records committed"
)

DMARC_PAYLOAD_ERRORS = Counter(
    "dmarc_payload_errors_total",
    "Attachments or payloads that failed to decode or parse",
    ["stage", "kind"]
)

ALERTS_TRIGGERED = Counter(
    "dmarc_alerts_triggered_total",
    "Alert lines produced for records over the failure threshold"
)

# =============================================================================
# Enrichment Metrics
# =============================================================================

GEO_LOOKUPS_TOTAL = Counter(
    "dmarc_geo_lookups_total",
    "External geolocation lookups",
    ["outcome"]  # resolved, timeout, http_failure, invalid_response
)

CACHE_HITS = Counter(
    "cache_hits_total",
    "Total number of cache hits",
    ["cache_type"]
)

CACHE_MISSES = Counter(
    "cache_misses_total",
    "Total number of cache misses",
    ["cache_type"]
)

# =============================================================================
# Retention Metrics
# =============================================================================

RETENTION_ROWS_TOTAL = Counter(
    "dmarc_retention_rows_total",
    "Rows moved by rotation or deleted by retention purge",
    ["operation"]  # rotate, purge
)


# =============================================================================
# Helper Functions for Business Metrics
# =============================================================================

def record_message_processed(status: str = "committed"):
    DMARC_MESSAGES_PROCESSED.labels(status=status).inc()


def record_records_ingested(count: int):
    DMARC_RECORDS_INGESTED.inc(count)


def record_payload_error(stage: str, kind: str):
    DMARC_PAYLOAD_ERRORS.labels(stage=stage, kind=kind).inc()


def record_alerts(count: int):
    ALERTS_TRIGGERED.inc(count)


def record_geo_lookup(outcome: str):
    GEO_LOOKUPS_TOTAL.labels(outcome=outcome).inc()


def record_cache_hit(cache_type: str):
    CACHE_HITS.labels(cache_type=cache_type).inc()


def record_cache_miss(cache_type: str):
    CACHE_MISSES.labels(cache_type=cache_type).inc()


def record_retention_rows(operation: str, count: int):
    RETENTION_ROWS_TOTAL.labels(operation=operation).inc(count)
