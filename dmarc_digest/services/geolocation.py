"""
IP geolocation provider and country cache.

Features:
- ip-api.com JSON lookups behind a narrow provider interface
- Short request timeout; every failure surfaces as EnrichmentError
- Two-level cache: in-process dict over the geolocation_cache table
"""

import enum
import logging
from typing import Dict, Optional, Protocol

import requests
from sqlalchemy.orm import Session

from dmarc_digest.config import get_settings
from dmarc_digest.metrics import record_cache_hit, record_cache_miss
from dmarc_digest.models import GeoLocationCache

logger = logging.getLogger(__name__)


class EnrichmentErrorKind(str, enum.Enum):
    TIMEOUT = "timeout"
    HTTP_FAILURE = "http_failure"
    INVALID_RESPONSE = "invalid_response"


class EnrichmentError(Exception):
    """Raised by a provider when a lookup does not produce a country"""

    def __init__(self, message: str, kind: EnrichmentErrorKind):
        self.kind = kind
        super().__init__(message)


class GeolocationProvider(Protocol):
    def lookup(self, ip_address: str) -> str:
        """Return the country name for an IP or raise EnrichmentError"""
        ...


class IpApiProvider:
    """
    Country lookup via the ip-api.com JSON endpoint.

    A quota rejection (HTTP 429) is reported like any other HTTP failure.
    """

    def __init__(self, url_template: Optional[str] = None, timeout: Optional[float] = None):
        settings = get_settings()
        self.url_template = url_template or settings.geo_api_url
        self.timeout = timeout or settings.geo_timeout_seconds

    def lookup(self, ip_address: str) -> str:
        url = self.url_template.format(ip=ip_address)

        try:
            response = requests.get(url, headers={"Accept": "application/json"}, timeout=self.timeout)
            response.raise_for_status()
        except requests.exceptions.Timeout as e:
            raise EnrichmentError(f"Lookup timed out for {ip_address}: {e}", EnrichmentErrorKind.TIMEOUT)
        except requests.exceptions.RequestException as e:
            raise EnrichmentError(f"Lookup failed for {ip_address}: {e}", EnrichmentErrorKind.HTTP_FAILURE)

        try:
            data = response.json()
        except ValueError as e:
            raise EnrichmentError(
                f"Non-JSON response for {ip_address}: {e}",
                EnrichmentErrorKind.INVALID_RESPONSE
            )

        if not isinstance(data, dict):
            raise EnrichmentError(f"Unexpected payload for {ip_address}", EnrichmentErrorKind.INVALID_RESPONSE)

        if data.get("status", "success") != "success":
            raise EnrichmentError(
                f"Provider could not resolve {ip_address}: {data.get('message', 'unknown error')}",
                EnrichmentErrorKind.INVALID_RESPONSE
            )

        country = data.get("country")
        if not country or not isinstance(country, str):
            raise EnrichmentError(f"No country in response for {ip_address}", EnrichmentErrorKind.INVALID_RESPONSE)

        return country


class GeoCache:
    """
    IP -> country cache.

    Reads hit the in-process dict first, then the database table. Writes go
    to both; the table write is flushed and committed by the caller.
    """

    def __init__(self, db: Optional[Session] = None):
        self.db = db
        self._memory: Dict[str, str] = {}

    def get(self, ip_address: str) -> Optional[str]:
        if ip_address in self._memory:
            record_cache_hit("geolocation")
            return self._memory[ip_address]

        if self.db is not None:
            cached = self.db.query(GeoLocationCache).filter(
                GeoLocationCache.ip_address == ip_address
            ).first()
            if cached:
                self._memory[ip_address] = cached.country
                record_cache_hit("geolocation")
                return cached.country

        record_cache_miss("geolocation")
        return None

    def put(self, ip_address: str, country: str) -> None:
        self._memory[ip_address] = country

        if self.db is None:
            return

        existing = self.db.query(GeoLocationCache).filter(
            GeoLocationCache.ip_address == ip_address
        ).first()
        if existing:
            existing.country = country
        else:
            self.db.add(GeoLocationCache(ip_address=ip_address, country=country))
        self.db.flush()

    def __len__(self) -> int:
        return len(self._memory)
