"""Error kinds raised by the resumable upload client.

Every failure of an upload attempt is an :class:`UploadError`. Cancellation is
deliberately outside that hierarchy so callers can tell "the user stopped this"
apart from "the transfer broke".
"""

from __future__ import annotations


class UploadError(Exception):
    """Base class for terminal upload failures."""


class InvalidFile(UploadError):
    """The file failed validation, or changed on disk while it was being read."""


class SessionStartFailed(UploadError):
    """A new resumable session could not be opened."""


class SessionExpired(UploadError):
    """The server no longer recognises the session's upload URL."""

    def __init__(self, upload_url: str):
        super().__init__(f"upload URL not found (session expired): {upload_url}")
        self.upload_url = upload_url


class ChunkMismatch(UploadError):
    """The server's acknowledged range regressed, stalled or was unreadable."""


class ChunkUploadFailed(UploadError):
    """A chunk request failed with a non-success status or transport error."""

    def __init__(self, message: str, status_code: int | None = None, offset: int | None = None):
        super().__init__(message)
        self.status_code = status_code
        self.offset = offset


class UploadIncomplete(UploadError):
    """All bytes were sent but the server did not confirm a final upload."""


class MediaItemCreationFailed(UploadError):
    """batchCreate did not turn the upload token into a media item."""


class UploadCancelled(Exception):
    """The caller cancelled the upload; persisted progress is left untouched."""


class UploadDeadlineExceeded(UploadCancelled):
    """The whole-upload deadline passed before the transfer finished."""
