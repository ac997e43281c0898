from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
import logging
from dmarc_digest.config import get_settings, ConfigError, ConfigErrorKind

logger = logging.getLogger(__name__)


def build_engine(database_url: str):
    """Create an engine for the row sink, refusing to start without one"""
    if not database_url:
        raise ConfigError(
            "No row sink configured: DATABASE_URL is empty",
            kind=ConfigErrorKind.MISSING_SINK
        )

    if database_url.startswith("sqlite"):
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False}
        )

    return create_engine(
        database_url,
        pool_pre_ping=True,
        pool_size=5,
        max_overflow=10
    )


settings = get_settings()

# Left unbound when no sink is configured; get_engine() reports it
engine = build_engine(settings.database_url) if settings.database_url else None

SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)

Base = declarative_base()


def get_engine():
    if engine is None:
        raise ConfigError(
            "No row sink configured: DATABASE_URL is empty",
            kind=ConfigErrorKind.MISSING_SINK
        )
    return engine


def init_db():
    """Initialize database tables"""
    import dmarc_digest.models  # noqa: F401  (registers tables on Base)
    Base.metadata.create_all(bind=get_engine())
    logger.info("Database tables ready")
