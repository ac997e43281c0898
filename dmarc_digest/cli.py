"""
dmarc-digest command line

Usage:
    # Create tables
    dmarc-digest init-db

    # Ingest saved report emails (.eml) from a directory
    dmarc-digest ingest /path/to/messages

    # Fill failure reasons and countries on every partition
    dmarc-digest enrich

    # Monthly maintenance
    dmarc-digest rotate
    dmarc-digest purge

    # Full scheduled run: ingest, enrich, rotate, purge
    dmarc-digest cycle /path/to/messages

    # Rollups for the active partition, or everything with --all
    dmarc-digest report --all --start 2025-05-01 --end 2025-05-31

    # Current month as CSV
    dmarc-digest export --output report.csv
"""
import argparse
import json
import logging
import sys
from datetime import date
from pathlib import Path
from typing import List, Optional

from dmarc_digest.config import ConfigError, get_settings
from dmarc_digest.logging_config import setup_logging

logger = logging.getLogger(__name__)


def _parse_date(value: str) -> date:
    try:
        return date.fromisoformat(value)
    except ValueError:
        raise argparse.ArgumentTypeError(f"Invalid date '{value}', expected YYYY-MM-DD")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dmarc-digest",
        description="Ingest, enrich and summarize DMARC aggregate reports"
    )
    parser.add_argument("--log-level", default=None, help="Override LOG_LEVEL")

    subparsers = parser.add_subparsers(dest="command", required=True)

    subparsers.add_parser("init-db", help="Create database tables")

    ingest = subparsers.add_parser("ingest", help="Ingest .eml files from a directory")
    ingest.add_argument("directory", help="Directory containing .eml files")

    subparsers.add_parser("enrich", help="Enrich rows lacking country or failure reason")
    subparsers.add_parser("rotate", help="Archive last month's rows")
    subparsers.add_parser("purge", help="Delete rows past the retention window")

    cycle = subparsers.add_parser("cycle", help="Ingest, enrich, rotate and purge")
    cycle.add_argument("directory", help="Directory containing .eml files")

    report = subparsers.add_parser("report", help="Print rollups as JSON")
    report.add_argument("--all", action="store_true", help="Include archived partitions")
    report.add_argument("--start", type=_parse_date, default=None, help="First day (YYYY-MM-DD)")
    report.add_argument("--end", type=_parse_date, default=None, help="Last day (YYYY-MM-DD)")

    export = subparsers.add_parser("export", help="Export the current month as CSV")
    export.add_argument("--output", "-o", default=None, help="Output file (default: stdout)")

    return parser


def _open_session():
    from dmarc_digest.database import SessionLocal, get_engine

    get_engine()
    return SessionLocal()


def _cache():
    from dmarc_digest.services.cache import CacheService

    return CacheService()


# ==================== Commands ====================

def cmd_init_db(args, db) -> None:
    from dmarc_digest.database import init_db

    init_db()
    print("Database tables created")


def cmd_ingest(args, db) -> None:
    from dmarc_digest.services.inbound import load_messages_from_directory
    from dmarc_digest.services.ingestion import IngestionPipeline
    from dmarc_digest.services.notifications import get_alert_sink
    from dmarc_digest.services.row_store import RowStore

    messages = load_messages_from_directory(args.directory)
    pipeline = IngestionPipeline(RowStore(db), alert_sink=get_alert_sink(), cache=_cache())
    stats = pipeline.ingest(messages)

    print(f"Messages checked:    {stats.messages_checked}")
    print(f"Messages committed:  {stats.messages_committed}")
    print(f"Duplicates skipped:  {stats.duplicates_skipped}")
    print(f"Messages failed:     {stats.messages_failed}")
    print(f"Records committed:   {stats.records_committed}")
    print(f"Alerts:              {len(stats.alerts)}")


def cmd_enrich(args, db) -> None:
    from dmarc_digest.services.enrichment import EnrichmentEngine
    from dmarc_digest.services.geolocation import GeoCache, IpApiProvider
    from dmarc_digest.services.row_store import RowStore

    engine = EnrichmentEngine(IpApiProvider(), cache=GeoCache(db))
    stats = engine.enrich_partition(RowStore(db))

    print(f"Rows enriched:  {stats.rows_seen}")
    print(f"Lookups:        {stats.lookups} ({stats.resolved} resolved, {stats.unknown} unknown)")
    print(f"Cache hits:     {stats.cache_hits}")
    print(f"Deferred:       {stats.deferred}")


def cmd_rotate(args, db) -> None:
    from dmarc_digest.services.partitions import PartitionManager

    result = PartitionManager(db, cache=_cache()).rotate()
    print(f"Rotated {result.rows_moved} rows into {result.partition_key}")


def cmd_purge(args, db) -> None:
    from dmarc_digest.services.partitions import PartitionManager

    result = PartitionManager(db, cache=_cache()).purge()
    print(f"Deleted {result.rows_deleted} rows older than {result.cutoff.date()}")
    if result.archives_purged:
        print(f"Purged archives: {', '.join(result.archives_purged)}")


def cmd_cycle(args, db) -> None:
    cmd_ingest(args, db)
    cmd_enrich(args, db)
    cmd_rotate(args, db)
    cmd_purge(args, db)


def cmd_report(args, db) -> None:
    from dmarc_digest.services.aggregation import ReportingScope, ReportingService
    from dmarc_digest.services.row_store import RowStore

    scope = ReportingScope.ALL if args.all else ReportingScope.CURRENT
    rollups = ReportingService(RowStore(db), cache=_cache()).rollups(scope, args.start, args.end)
    print(json.dumps(rollups.to_dict(), indent=2))


def cmd_export(args, db) -> None:
    from dmarc_digest.schemas import ACTIVE_PARTITION
    from dmarc_digest.services.export_csv import export_month_csv
    from dmarc_digest.services.row_store import RowStore

    content = export_month_csv(RowStore(db).read_rows(ACTIVE_PARTITION))
    if args.output:
        Path(args.output).write_text(content, encoding="utf-8")
        print(f"Exported to {args.output}")
    else:
        sys.stdout.write(content)


COMMANDS = {
    "init-db": cmd_init_db,
    "ingest": cmd_ingest,
    "enrich": cmd_enrich,
    "rotate": cmd_rotate,
    "purge": cmd_purge,
    "cycle": cmd_cycle,
    "report": cmd_report,
    "export": cmd_export,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()

    setup_logging(
        log_level=args.log_level or settings.log_level,
        log_dir=settings.log_dir or None,
        enable_json=settings.log_json
    )

    try:
        db = _open_session()
    except ConfigError as e:
        logger.error(f"Configuration error: {e}", extra={"error_kind": e.kind.value})
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    try:
        COMMANDS[args.command](args, db)
    except ConfigError as e:
        logger.error(f"Configuration error: {e}", extra={"error_kind": e.kind.value})
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except Exception as e:
        logger.error(f"{args.command} failed: {e}", exc_info=True)
        print(f"Error: {args.command} failed: {e}", file=sys.stderr)
        return 1
    finally:
        db.close()

    return 0


if __name__ == "__main__":
    sys.exit(main())
