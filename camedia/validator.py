"""Pre-flight checks on a file before any network activity starts."""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass
from pathlib import Path

import magic

from camedia.errors import InvalidFile

logger = logging.getLogger(__name__)

MIN_FILE_SIZE = 1
MAX_VIDEO_SIZE = 10 * 1024 * 1024 * 1024  # 10 GB, Google Photos limit for videos
MAX_IMAGE_SIZE = 200 * 1024 * 1024  # 200 MB, Google Photos limit for photos

SNIFF_LENGTH = 2048
OCTET_STREAM = "application/octet-stream"


@dataclass(frozen=True)
class MediaFile:
    """A file that passed validation."""

    path: Path
    size: int
    mime_type: str

    @property
    def category(self) -> str:
        return self.mime_type.split("/", 1)[0]


def sniff_mime_type(header: bytes) -> str:
    """Return the MIME type libmagic reports for the leading bytes of a file."""
    if not header:
        return OCTET_STREAM
    return magic.from_buffer(header, mime=True) or OCTET_STREAM


def _max_size_for(mime_type: str) -> int:
    return MAX_IMAGE_SIZE if mime_type.startswith("image/") else MAX_VIDEO_SIZE


def validate_media_file(path: str | os.PathLike, media_kind: str = "video") -> MediaFile:
    """Check that *path* is readable, within size bounds and of the expected media kind.

    *media_kind* is ``"video"``, ``"image"`` or ``"any"`` (either of the two).
    Reads at most :data:`SNIFF_LENGTH` bytes. Raises :class:`InvalidFile`.
    """
    file_path = Path(path)
    try:
        with open(file_path, "rb") as fh:
            size = os.fstat(fh.fileno()).st_size
            header = fh.read(SNIFF_LENGTH)
    except OSError as exc:
        raise InvalidFile(f"{file_path}: {exc}") from exc

    if size < MIN_FILE_SIZE:
        raise InvalidFile(f"{file_path}: size {size} is below the minimum of {MIN_FILE_SIZE} byte(s)")

    mime_type = sniff_mime_type(header)
    category = mime_type.split("/", 1)[0]
    wanted = ("video", "image") if media_kind == "any" else (media_kind,)
    if category not in wanted:
        raise InvalidFile(f"{file_path}: invalid MIME type {mime_type} (expected {media_kind})")

    max_size = _max_size_for(mime_type)
    if size > max_size:
        raise InvalidFile(
            f"{file_path}: size {size} is outside allowed range {MIN_FILE_SIZE}-{max_size}"
        )

    logger.debug("Validated %s (%s, %d bytes)", file_path.name, mime_type, size)
    return MediaFile(path=file_path, size=size, mime_type=mime_type)
