import re
import unicodedata
from collections.abc import Iterable
from pathlib import PurePosixPath
from typing import BinaryIO

from fileuploader.core.errors import FileTooLargeError, InvalidFileTypeError, InvalidRequestError

SNIFF_BYTES = 512
DEFAULT_CONTENT_TYPE = "application/octet-stream"

EXTENSION_CONTENT_TYPES: dict[str, str] = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".pdf": "application/pdf",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".txt": "text/plain",
}

COMPATIBLE_CONTENT_TYPES: dict[str, frozenset[str]] = {
    "image/jpeg": frozenset({"image/jpg"}),
    "image/jpg": frozenset({"image/jpeg"}),
}

_SIGNATURES: tuple[tuple[bytes, str], ...] = (
    (b"%PDF-", "application/pdf"),
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
    (b"PK\x03\x04", "application/zip"),
    (b"PK\x05\x06", "application/zip"),
    (b"\x1f\x8b\x08", "application/gzip"),
)

_PATH_SEPARATORS = re.compile(r"[\\/]")


def normalize_content_type(content_type: str | None) -> str:
    if not content_type:
        return ""
    return content_type.split(";", 1)[0].strip().lower()


def content_type_from_filename(filename: str) -> str:
    suffix = PurePosixPath(filename.lower()).suffix
    return EXTENSION_CONTENT_TYPES.get(suffix, DEFAULT_CONTENT_TYPE)


def sniff_content_type(sample: bytes) -> str:
    """Infer a MIME type from the leading bytes of a file."""
    for signature, content_type in _SIGNATURES:
        if sample.startswith(signature):
            return content_type
    if len(sample) >= 12 and sample[:4] == b"RIFF" and sample[8:12] == b"WEBP":
        return "image/webp"
    if sample and _looks_textual(sample):
        return "text/plain"
    return DEFAULT_CONTENT_TYPE


def _looks_textual(sample: bytes) -> bool:
    if b"\x00" in sample:
        return False
    try:
        sample.decode("utf-8")
    except UnicodeDecodeError as exc:
        # A multi-byte character cut off by the sample boundary is still text.
        return exc.start >= len(sample) - 3 and exc.reason == "unexpected end of data"
    return True


def is_compatible_content_type(declared: str, detected: str) -> bool:
    if declared == detected:
        return True
    return detected in COMPATIBLE_CONTENT_TYPES.get(declared, frozenset())


def sanitize_filename(filename: str | None) -> str:
    """Reduce a client-supplied name to a display-only final path segment."""
    normalized = unicodedata.normalize("NFC", filename or "")
    name = _PATH_SEPARATORS.split(normalized)[-1]
    name = name.replace("..", "").replace("/", "").replace("\\", "")
    name = "".join(ch for ch in name if unicodedata.category(ch)[0] != "C")
    name = name.strip()
    return name or "file"


class FileValidator:
    def __init__(self, max_file_size: int, allowed_types: Iterable[str]) -> None:
        self.max_file_size = max_file_size
        self.allowed_types = frozenset(normalize_content_type(t) for t in allowed_types)

    def validate_declaration(
        self,
        filename: str | None,
        declared_size: int,
        declared_content_type: str | None,
    ) -> str:
        """Check the upload's declared attributes and return the content type to enforce."""
        if declared_size > self.max_file_size:
            raise FileTooLargeError()

        content_type = normalize_content_type(declared_content_type)
        if not content_type:
            content_type = content_type_from_filename(sanitize_filename(filename))

        if content_type not in self.allowed_types:
            raise InvalidFileTypeError()
        return content_type

    def validate_content(self, stream: BinaryIO, content_type: str) -> str:
        """Sniff the first bytes of ``stream`` and compare with ``content_type``.

        The stream is rewound to the start before returning, on success or failure.
        """
        try:
            sample = stream.read(SNIFF_BYTES)
        finally:
            stream.seek(0)

        if not sample:
            raise InvalidRequestError("Cannot read file")

        detected = sniff_content_type(sample)
        if not is_compatible_content_type(normalize_content_type(content_type), detected):
            raise InvalidFileTypeError()
        return detected
