"""
Load candidate messages from saved .eml files.

Stands in for a mailbox listing: every .eml file in a directory becomes an
InboundMessage carrying its Message-ID and named attachments.
"""
import email
import logging
from email.message import Message
from pathlib import Path
from typing import List, Union

from dmarc_digest.services.ingestion import Attachment, InboundMessage

logger = logging.getLogger(__name__)


def get_attachments(msg: Message) -> List[Attachment]:
    """
    Extract named attachments from an email message

    Args:
        msg: Parsed email message

    Returns:
        Attachments in message order; unsupported types are kept so the
        pipeline can count them as skipped
    """
    attachments = []

    for part in msg.walk():
        if part.get_content_maintype() == 'multipart':
            continue

        filename = part.get_filename()
        if not filename:
            continue

        content = part.get_payload(decode=True)
        if not content:
            continue

        attachments.append(Attachment(filename=filename, content=content))
        logger.debug(
            "Found attachment",
            extra={"attachment": filename}
        )

    return attachments


def message_from_bytes(raw: bytes) -> InboundMessage:
    msg = email.message_from_bytes(raw)
    message_id = (msg.get("Message-ID") or "").strip()

    return InboundMessage(
        message_id=message_id,
        attachments=get_attachments(msg),
        subject=msg.get("Subject", "") or "",
    )


def load_messages_from_directory(directory: Union[str, Path]) -> List[InboundMessage]:
    """
    Read every .eml file in a directory, sorted by filename

    Raises:
        FileNotFoundError: If the directory does not exist
    """
    path = Path(directory)
    if not path.is_dir():
        raise FileNotFoundError(f"Directory not found: {path}")

    messages = []
    for eml_file in sorted(path.glob("*.eml")):
        messages.append(message_from_bytes(eml_file.read_bytes()))

    logger.info(f"Loaded {len(messages)} messages from {path}")
    return messages
