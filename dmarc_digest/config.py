import enum
from functools import lru_cache

from pydantic import field_validator
from pydantic_settings import BaseSettings


class ConfigErrorKind(str, enum.Enum):
    """Fatal configuration problems"""
    MISSING_SINK = "missing_sink"


class ConfigError(Exception):
    """Raised when the run cannot start; nothing has been mutated yet"""

    def __init__(self, message: str, kind: ConfigErrorKind = ConfigErrorKind.MISSING_SINK):
        self.kind = kind
        super().__init__(message)


class Settings(BaseSettings):
    # Database (row sink, dedup index, enrichment cache)
    database_url: str = "sqlite:///dmarc_digest.db"

    # Ingestion
    threshold_failures: int = 3
    report_label: str = "DMARC"  # Passed through from the mailbox side
    processed_label: str = "DMARC/Processed"

    # Retention
    retention_months: int = 12
    purge_archives: bool = False  # Archives are permanent unless enabled

    # Geolocation (ip-api.com free tier allows 45 requests/minute)
    geo_api_url: str = "http://ip-api.com/json/{ip}?fields=status,message,country"
    geo_timeout_seconds: float = 5.0
    geo_requests_per_minute: int = 45
    geo_max_workers: int = 4
    geo_max_lookups_per_run: int = 100

    # Logging
    log_level: str = "INFO"
    log_dir: str = ""  # Empty = console only
    log_json: bool = False

    # Redis Cache (rollups)
    redis_url: str = "redis://localhost:6379/0"
    cache_enabled: bool = True
    cache_default_ttl: int = 300  # 5 minutes

    # Alerting - Email (SMTP)
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_password: str = ""
    smtp_from: str = ""
    smtp_use_tls: bool = True
    alert_email_to: str = ""
    alert_subject: str = "DMARC Alert: DKIM/SPF failures over threshold"

    @field_validator('threshold_failures', 'retention_months', 'geo_requests_per_minute', 'geo_max_workers')
    @classmethod
    def must_be_positive(cls, v):
        if v < 1:
            raise ValueError("must be a positive integer")
        return v

    @field_validator('geo_timeout_seconds')
    @classmethod
    def timeout_must_be_positive(cls, v):
        if v <= 0:
            raise ValueError("timeout must be greater than zero")
        return v

    class Config:
        env_file = ".env"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    return Settings()
