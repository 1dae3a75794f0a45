"""Persisted per-file upload progress, so an interrupted upload can resume after a restart.

One JSON record per in-flight upload lives under the state directory. The record
name is derived from the file's base name plus a digest of its identity (absolute
path, size and modification time), which keeps same-named files from different
folders apart and makes a rewritten file miss its old record.
"""

from __future__ import annotations

import hashlib
import json
import logging
import os
import threading
from dataclasses import asdict, dataclass
from pathlib import Path

logger = logging.getLogger(__name__)

RECORD_SUFFIX = ".upload"


@dataclass(frozen=True)
class FileIdentity:
    """Lookup key for a file's upload session."""

    path: str
    size: int
    mtime_ns: int

    @classmethod
    def of(cls, path: str | os.PathLike) -> "FileIdentity":
        """Stat *path* and build its identity. Raises ``OSError`` if it cannot be stat'ed."""
        resolved = os.path.abspath(os.fspath(path))
        st = os.stat(resolved)
        return cls(path=resolved, size=st.st_size, mtime_ns=st.st_mtime_ns)

    @property
    def digest(self) -> str:
        key = f"{self.path}\0{self.size}\0{self.mtime_ns}".encode("utf-8")
        return hashlib.sha256(key).hexdigest()[:16]

    @property
    def record_name(self) -> str:
        return f"{os.path.basename(self.path)}.{self.digest}{RECORD_SUFFIX}"


@dataclass
class UploadSession:
    """Progress of one resumable upload as last acknowledged by the server."""

    file_path: str
    upload_url: str
    total_bytes: int
    confirmed_bytes: int = 0
    mtime_ns: int = 0
    mime_type: str = ""

    def __post_init__(self) -> None:
        if not 0 <= self.confirmed_bytes <= self.total_bytes:
            raise ValueError(
                f"confirmed_bytes {self.confirmed_bytes} outside 0-{self.total_bytes}"
            )

    @property
    def identity(self) -> FileIdentity:
        return FileIdentity(path=self.file_path, size=self.total_bytes, mtime_ns=self.mtime_ns)

    @property
    def remaining_bytes(self) -> int:
        return self.total_bytes - self.confirmed_bytes

    @property
    def is_fully_confirmed(self) -> bool:
        return self.confirmed_bytes >= self.total_bytes

    def confirm(self, confirmed_bytes: int) -> None:
        """Advance the confirmed offset. Never moves backwards or past the total."""
        if confirmed_bytes < self.confirmed_bytes or confirmed_bytes > self.total_bytes:
            raise ValueError(
                f"cannot move confirmed offset from {self.confirmed_bytes} to "
                f"{confirmed_bytes} (total {self.total_bytes})"
            )
        self.confirmed_bytes = confirmed_bytes

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "UploadSession":
        return cls(
            file_path=str(data["file_path"]),
            upload_url=str(data["upload_url"]),
            total_bytes=int(data["total_bytes"]),
            confirmed_bytes=int(data["confirmed_bytes"]),
            mtime_ns=int(data.get("mtime_ns", 0)),
            mime_type=str(data.get("mime_type", "")),
        )


class SessionStore:
    """Directory of upload-session records, one JSON file per in-flight upload.

    Writes are atomic (temp file + rename) and fsync'ed before returning, so a
    crash right after a server acknowledgment leaves the acknowledged offset on
    disk. A lock serialises access from threads sharing the store.
    """

    def __init__(self, state_dir: str | os.PathLike):
        self._dir = Path(state_dir)
        self._lock = threading.Lock()

    @property
    def state_dir(self) -> Path:
        return self._dir

    def path_for(self, identity: FileIdentity) -> Path:
        return self._dir / identity.record_name

    # ── read ────────────────────────────────────────────────────────

    def load(self, identity: FileIdentity) -> UploadSession | None:
        """Return the persisted session for *identity*, or ``None``.

        Missing, unreadable, malformed and stale records (the file's path, size or
        mtime no longer match) all count as "not found": starting fresh is always safe.
        """
        path = self.path_for(identity)
        with self._lock:
            if not path.exists():
                return None
            try:
                with open(path, "r", encoding="utf-8") as fh:
                    session = UploadSession.from_dict(json.load(fh))
            except (OSError, ValueError, KeyError, TypeError) as exc:
                logger.warning("Ignoring unreadable upload state %s: %s", path, exc)
                return None

        if session.identity != identity:
            logger.warning(
                "Discarding stale upload state for %s (recorded %d bytes, file now %d bytes)",
                identity.path, session.total_bytes, identity.size,
            )
            return None
        return session

    def list_sessions(self) -> list[UploadSession]:
        """Return every readable record in the state directory."""
        sessions = []
        with self._lock:
            if not self._dir.is_dir():
                return sessions
            for path in sorted(self._dir.glob(f"*{RECORD_SUFFIX}")):
                try:
                    with open(path, "r", encoding="utf-8") as fh:
                        sessions.append(UploadSession.from_dict(json.load(fh)))
                except (OSError, ValueError, KeyError, TypeError) as exc:
                    logger.warning("Skipping unreadable upload state %s: %s", path, exc)
        return sessions

    # ── write ───────────────────────────────────────────────────────

    def save(self, session: UploadSession) -> None:
        """Durably overwrite the record for *session*. Raises ``OSError`` on failure."""
        path = self.path_for(session.identity)
        with self._lock:
            self._dir.mkdir(parents=True, exist_ok=True)
            tmp = path.with_name(path.name + ".tmp")
            with open(tmp, "w", encoding="utf-8") as fh:
                json.dump(session.to_dict(), fh)
                fh.flush()
                os.fsync(fh.fileno())
            os.replace(tmp, path)
        logger.debug(
            "Saved upload state %s (%d/%d bytes)",
            path.name, session.confirmed_bytes, session.total_bytes,
        )

    def delete(self, identity: FileIdentity) -> bool:
        """Remove the record for *identity*. Failures are logged, never raised.

        Returns ``True`` when no record remains afterwards.
        """
        path = self.path_for(identity)
        with self._lock:
            try:
                path.unlink()
            except FileNotFoundError:
                return True
            except OSError as exc:
                logger.warning("Failed to delete upload state %s: %s", path, exc)
                return False
        logger.debug("Deleted upload state %s", path.name)
        return True

    def discard_stale(self, identity: FileIdentity) -> int:
        """Delete records left for the same path under an older identity.

        Returns the number of records removed.
        """
        removed = 0
        for session in self.list_sessions():
            if session.file_path == identity.path and session.identity != identity:
                logger.info("Discarding stale upload state for %s", identity.path)
                if self.delete(session.identity):
                    removed += 1
        return removed
