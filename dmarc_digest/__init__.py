"""DMARC aggregate report ingestion, enrichment, rollups and retention."""

__version__ = "1.0.0"
