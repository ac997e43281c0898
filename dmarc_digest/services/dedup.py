import logging
from datetime import datetime
from typing import Optional

from sqlalchemy.orm import Session

from dmarc_digest.models import SeenMessage

logger = logging.getLogger(__name__)


class DedupStore:
    """
    Message-level deduplication index

    A message id, once marked, is excluded from ingestion permanently, even
    after its rows are rotated or purged. Marks are flushed, not committed,
    so they share the caller's transaction with the rows they cover.
    """

    def __init__(self, db: Session):
        self.db = db

    def already_seen(self, message_id: str) -> bool:
        """
        Check if a message has already been committed

        Args:
            message_id: Source message identifier

        Returns:
            True if the message is in the index
        """
        existing = self.db.query(SeenMessage).filter(
            SeenMessage.message_id == message_id
        ).first()

        return existing is not None

    def mark_seen(
        self,
        message_id: str,
        record_count: int = 0,
        committed_at: Optional[datetime] = None
    ) -> SeenMessage:
        """Add a message to the index"""
        seen = SeenMessage(
            message_id=message_id,
            record_count=record_count,
            committed_at=committed_at or datetime.utcnow()
        )
        self.db.add(seen)
        self.db.flush()

        logger.debug(
            f"Marked message as seen ({record_count} records)",
            extra={"message_id": message_id}
        )

        return seen

    def count(self) -> int:
        return self.db.query(SeenMessage).count()
