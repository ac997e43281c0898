"""
Enrichment cache model.

Resolved countries are cached per source IP without expiry: a country is a
terminal enrichment outcome, so one successful lookup serves every later run.
"""

from sqlalchemy import Column, String, DateTime, Integer
from datetime import datetime
from dmarc_digest.database import Base


class GeoLocationCache(Base):
    """Cache for IP -> country lookups"""
    __tablename__ = "geolocation_cache"

    id = Column(Integer, primary_key=True, index=True)
    ip_address = Column(String(45), unique=True, nullable=False, index=True)
    country = Column(String(100), nullable=False)

    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f"<GeoLocationCache(ip={self.ip_address}, country={self.country})>"
