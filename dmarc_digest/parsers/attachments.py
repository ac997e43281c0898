"""
Attachment decoder for DMARC report payloads.

Turns one attachment (zip archive, gzip stream or plain XML) into the list of
XML payloads to hand to the report parser. Pure, no side effects.
"""
import enum
import gzip
import io
import lzma
import zipfile
import zlib
from pathlib import PurePath
from typing import List


class AttachmentKind(str, enum.Enum):
    """Declared kind of an attachment, derived from its filename"""
    ARCHIVE = "archive"
    COMPRESSED = "compressed"
    XML = "xml"
    OTHER = "other"


class DecodeErrorKind(str, enum.Enum):
    INVALID_ARCHIVE = "invalid_archive"
    INVALID_COMPRESSION = "invalid_compression"
    UNSUPPORTED_TYPE = "unsupported_type"


class DecodeError(Exception):
    """Raised when an attachment cannot be turned into XML payloads"""

    def __init__(self, message: str, kind: DecodeErrorKind):
        self.kind = kind
        super().__init__(message)


_SUFFIX_KINDS = {
    ".zip": AttachmentKind.ARCHIVE,
    ".gz": AttachmentKind.COMPRESSED,
    ".gzip": AttachmentKind.COMPRESSED,
    ".xml": AttachmentKind.XML,
}


def classify_attachment(filename: str) -> AttachmentKind:
    """
    Classify an attachment by its filename suffix

    "report.xml.gz" is compressed and "report.zip" is an archive; the check
    is case-insensitive.
    """
    suffix = PurePath(filename or "").suffix.lower()
    return _SUFFIX_KINDS.get(suffix, AttachmentKind.OTHER)


# Encrypted members raise RuntimeError, corrupt bz2 members OSError
_ARCHIVE_ERRORS = (
    zipfile.BadZipFile,
    zlib.error,
    lzma.LZMAError,
    EOFError,
    OSError,
    RuntimeError,
)


def _decode_archive(payload: bytes) -> List[bytes]:
    try:
        with zipfile.ZipFile(io.BytesIO(payload)) as zf:
            return [
                zf.read(info)
                for info in zf.infolist()
                if not info.is_dir()
            ]
    except _ARCHIVE_ERRORS as e:
        raise DecodeError(f"Invalid zip archive: {e}", DecodeErrorKind.INVALID_ARCHIVE)


def _decode_compressed(payload: bytes) -> List[bytes]:
    try:
        return [gzip.decompress(payload)]
    except (OSError, EOFError, zlib.error) as e:
        raise DecodeError(f"Invalid gzip stream: {e}", DecodeErrorKind.INVALID_COMPRESSION)


def decode_attachment(payload: bytes, kind: AttachmentKind) -> List[bytes]:
    """
    Decode an attachment payload into raw XML payloads

    Args:
        payload: Attachment content as bytes
        kind: Declared attachment kind

    Returns:
        Ordered list of XML payloads; archives may yield zero or more,
        compressed streams exactly one, plain XML itself

    Raises:
        DecodeError: If the payload does not match its kind or the kind is unsupported
    """
    if kind == AttachmentKind.ARCHIVE:
        return _decode_archive(payload)
    if kind == AttachmentKind.COMPRESSED:
        return _decode_compressed(payload)
    if kind == AttachmentKind.XML:
        return [payload]

    raise DecodeError(f"Unsupported attachment type: {kind}", DecodeErrorKind.UNSUPPORTED_TYPE)
