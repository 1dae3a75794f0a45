"""camedia – resumable uploads of local media files to Google Photos."""

from .config import UploadConfig, load_config
from .errors import (
    ChunkMismatch,
    ChunkUploadFailed,
    InvalidFile,
    MediaItemCreationFailed,
    SessionExpired,
    SessionStartFailed,
    UploadCancelled,
    UploadDeadlineExceeded,
    UploadError,
    UploadIncomplete,
)
from .photos_client import ChunkResult, MediaItem, PhotosClient
from .session_store import FileIdentity, SessionStore, UploadSession
from .uploader import ResumableUploader, UploadProgress, UploadState
from .validator import MediaFile, validate_media_file

__all__ = [
    "UploadConfig",
    "load_config",
    "UploadError",
    "InvalidFile",
    "SessionStartFailed",
    "SessionExpired",
    "ChunkMismatch",
    "ChunkUploadFailed",
    "UploadIncomplete",
    "MediaItemCreationFailed",
    "UploadCancelled",
    "UploadDeadlineExceeded",
    "ChunkResult",
    "MediaItem",
    "PhotosClient",
    "FileIdentity",
    "SessionStore",
    "UploadSession",
    "ResumableUploader",
    "UploadProgress",
    "UploadState",
    "MediaFile",
    "validate_media_file",
]
