"""Upload orchestrator – validate, resolve a session, push chunks, hand back the upload token.

Resumption is the retry strategy: nothing is retried in place. Every failure ends
the current call, and calling :meth:`ResumableUploader.upload` again on the same
file continues from the last offset the server confirmed.
"""

from __future__ import annotations

import enum
import logging
import os
import threading
import time
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

from camedia.config import DEFAULT_CHUNK_SIZE
from camedia.errors import (
    ChunkMismatch,
    InvalidFile,
    SessionExpired,
    SessionStartFailed,
    UploadCancelled,
    UploadDeadlineExceeded,
)
from camedia.photos_client import REQUEST_TIMEOUT, ChunkResult, MediaItem, PhotosClient
from camedia.session_store import FileIdentity, SessionStore, UploadSession
from camedia.validator import MediaFile, validate_media_file

logger = logging.getLogger(__name__)

CANCEL_POLL_INTERVAL = 0.05  # seconds between cancel checks while a chunk is in flight


class UploadState(enum.Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    SESSION_RESOLVING = "session-resolving"
    TRANSFERRING = "transferring"
    FINALIZING = "finalizing"
    DONE = "done"
    FAILED = "failed"


@dataclass(frozen=True)
class UploadProgress:
    file_name: str
    bytes_uploaded: int
    total_bytes: int

    @property
    def fraction(self) -> float:
        return self.bytes_uploaded / self.total_bytes if self.total_bytes else 1.0


ProgressCallback = Callable[[UploadProgress], None]


def _read_exact(fh: BinaryIO, size: int) -> bytes:
    """Read *size* bytes, tolerating short reads until EOF."""
    parts = []
    remaining = size
    while remaining > 0:
        block = fh.read(remaining)
        if not block:
            break
        parts.append(block)
        remaining -= len(block)
    return b"".join(parts)


class _ChunkCall:
    """One chunk request running on a daemon thread, so the uploader can stop waiting for it.

    An abandoned call keeps running until the request ends; *on_final* is then
    invoked if the server still answered with the upload token.
    """

    def __init__(self, send: Callable[[], ChunkResult]):
        self.done = threading.Event()
        self._lock = threading.Lock()
        self._result: ChunkResult | None = None
        self._error: BaseException | None = None
        self._on_final: Callable[[], None] | None = None
        self._thread = threading.Thread(target=self._run, args=(send,), daemon=True)
        self._thread.start()

    def _run(self, send: Callable[[], ChunkResult]) -> None:
        try:
            result = send()
        except BaseException as exc:  # re-raised in the waiting thread by outcome()
            with self._lock:
                self._error = exc
                self.done.set()
            return
        with self._lock:
            self._result = result
            self.done.set()
            on_final = self._on_final if result.is_final else None
        if on_final is not None:
            on_final()

    def abandon(self, on_final: Callable[[], None]) -> bool:
        """Stop waiting for the call. Returns False if it already finished."""
        with self._lock:
            if self.done.is_set():
                return False
            self._on_final = on_final
            return True

    def outcome(self) -> ChunkResult:
        if self._error is not None:
            raise self._error
        return self._result


class ResumableUploader:
    """Drives one file at a time through the resumable upload state machine.

    Instances hold per-call state, so concurrent uploads each need their own
    uploader; they may share a :class:`SessionStore`.
    """

    def __init__(
        self,
        client: PhotosClient,
        store: SessionStore,
        chunk_size: int = DEFAULT_CHUNK_SIZE,
        media_kind: str = "video",
        chunk_timeout: float | None = None,
    ):
        if chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {chunk_size}")
        self._client = client
        self._store = store
        self._chunk_size = chunk_size
        self._media_kind = media_kind
        self._chunk_timeout = chunk_timeout
        self._state = UploadState.IDLE
        self._file_name = ""
        self._media: MediaFile | None = None

    @property
    def state(self) -> UploadState:
        return self._state

    @property
    def media(self) -> MediaFile | None:
        """The file as validated by the most recent :meth:`upload` call."""
        return self._media

    def _transition(self, new_state: UploadState) -> None:
        logger.debug("%s: %s -> %s", self._file_name, self._state.value, new_state.value)
        self._state = new_state

    # ── public API ───────────────────────────────────────────────────

    def upload(
        self,
        path: str | os.PathLike,
        progress_callback: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> str:
        """Upload *path* and return the upload token.

        *cancel_event* aborts the upload with :class:`UploadCancelled` as soon as it
        is set, without waiting for an in-flight chunk request to finish; *deadline*
        (seconds) bounds the whole call with :class:`UploadDeadlineExceeded` and
        clips every request timeout. Per-request ``requests`` timeouts propagate
        unchanged. Only a server acknowledgment advances persisted progress.
        """
        self._file_name = Path(path).name
        self._state = UploadState.IDLE
        self._media = None
        ends_at = time.monotonic() + deadline if deadline is not None else None

        try:
            self._transition(UploadState.VALIDATING)
            media = validate_media_file(path, self._media_kind)
            self._media = media
            identity = self._identify(media)

            self._transition(UploadState.SESSION_RESOLVING)
            session = self._store.load(identity)
            if session is None:
                session = self._start_session(media, identity, cancel_event, ends_at)
            else:
                logger.info(
                    "Resuming upload of %s at %d/%d bytes",
                    self._file_name, session.confirmed_bytes, session.total_bytes,
                )
            self._report(progress_callback, session)

            self._transition(UploadState.TRANSFERRING)
            try:
                token = self._transfer(session, progress_callback, cancel_event, ends_at)
            except (SessionExpired, ChunkMismatch) as exc:
                logger.warning("Discarding upload session for %s: %s", self._file_name, exc)
                self._store.delete(identity)
                raise

            self._transition(UploadState.FINALIZING)
            self._store.delete(identity)
            self._report(progress_callback, session)
            self._transition(UploadState.DONE)
            logger.info("Uploaded %s (%d bytes)", self._file_name, session.total_bytes)
            return token
        except BaseException:
            self._transition(UploadState.FAILED)
            raise

    def upload_media_item(
        self,
        path: str | os.PathLike,
        description: str | None = None,
        progress_callback: ProgressCallback | None = None,
        cancel_event: threading.Event | None = None,
        deadline: float | None = None,
    ) -> MediaItem:
        """Upload *path*, then register the token as a media item exactly once."""
        token = self.upload(
            path,
            progress_callback=progress_callback,
            cancel_event=cancel_event,
            deadline=deadline,
        )
        return self._client.create_media_item(token, Path(path).name, description)

    # ── session resolution ───────────────────────────────────────────

    def _identify(self, media: MediaFile) -> FileIdentity:
        try:
            identity = FileIdentity.of(media.path)
        except OSError as exc:
            raise InvalidFile(f"{media.path}: {exc}") from exc
        if identity.size != media.size:
            raise InvalidFile(f"{media.path}: file changed size during validation")
        return identity

    def _start_session(
        self,
        media: MediaFile,
        identity: FileIdentity,
        cancel_event: threading.Event | None,
        ends_at: float | None,
    ) -> UploadSession:
        self._check_cancelled(cancel_event, None)
        upload_url = self._client.start_upload(
            media.path.name,
            media.size,
            media.mime_type,
            timeout=self._timeout_for(ends_at, REQUEST_TIMEOUT),
        )
        session = UploadSession(
            file_path=identity.path,
            upload_url=upload_url,
            total_bytes=identity.size,
            confirmed_bytes=0,
            mtime_ns=identity.mtime_ns,
            mime_type=media.mime_type,
        )
        self._store.discard_stale(identity)
        try:
            self._store.save(session)
        except OSError as exc:
            raise SessionStartFailed(f"failed to save upload state: {exc}") from exc
        logger.info("Started upload session for %s (%d bytes)", self._file_name, media.size)
        return session

    # ── transfer ─────────────────────────────────────────────────────

    def _check_cancelled(self, cancel_event: threading.Event | None, ends_at: float | None) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise UploadCancelled(f"upload of {self._file_name} cancelled")
        if ends_at is not None and time.monotonic() >= ends_at:
            raise UploadDeadlineExceeded(f"upload of {self._file_name} ran past its deadline")

    @staticmethod
    def _timeout_for(ends_at: float | None, timeout: float | None) -> float | None:
        """Clip a request *timeout* to the time left before *ends_at*."""
        if ends_at is None:
            return timeout
        left = max(ends_at - time.monotonic(), 0.001)
        return left if timeout is None else min(timeout, left)

    def _send_chunk(
        self,
        session: UploadSession,
        data: bytes,
        offset: int,
        cancel_event: threading.Event | None,
        ends_at: float | None,
    ) -> ChunkResult:
        timeout = self._timeout_for(ends_at, self._chunk_timeout)

        def send() -> ChunkResult:
            return self._client.upload_chunk(
                session.upload_url, data, offset, session.total_bytes, timeout=timeout
            )

        if cancel_event is None:
            return send()

        call = _ChunkCall(send)
        while not call.done.wait(CANCEL_POLL_INTERVAL):
            if cancel_event.is_set() and call.abandon(lambda: self._record_late_final(session)):
                logger.info(
                    "%s: cancelled with chunk at offset %d in flight", self._file_name, offset
                )
                self._client.close()
                raise UploadCancelled(f"upload of {self._file_name} cancelled")
        return call.outcome()

    def _record_late_final(self, session: UploadSession) -> None:
        """Persist a final acknowledgment that arrived after the upload was cancelled."""
        current = self._store.load(session.identity)
        if current is None or current.upload_url != session.upload_url:
            return
        current.confirm(current.total_bytes)
        try:
            self._store.save(current)
        except OSError as exc:
            logger.warning("Could not record completed upload of %s: %s", session.file_path, exc)
            return
        logger.info(
            "Server completed %s after cancellation; the next upload queries for its token",
            session.file_path,
        )

    def _transfer(
        self,
        session: UploadSession,
        progress_callback: ProgressCallback | None,
        cancel_event: threading.Event | None,
        ends_at: float | None,
    ) -> str:
        try:
            fh = open(session.file_path, "rb")
        except OSError as exc:
            raise InvalidFile(f"{session.file_path}: {exc}") from exc

        with fh:
            while session.confirmed_bytes < session.total_bytes:
                self._check_cancelled(cancel_event, ends_at)

                offset = session.confirmed_bytes
                length = min(self._chunk_size, session.remaining_bytes)
                try:
                    fh.seek(offset)
                    data = _read_exact(fh, length)
                except OSError as exc:
                    raise InvalidFile(f"failed to read chunk at offset {offset}: {exc}") from exc
                if len(data) != length:
                    raise InvalidFile(
                        f"{session.file_path} ended at {offset + len(data)} bytes, "
                        f"expected {session.total_bytes}"
                    )

                result = self._send_chunk(session, data, offset, cancel_event, ends_at)

                if result.is_final:
                    session.confirm(session.total_bytes)
                    if cancel_event is not None and cancel_event.is_set():
                        # The server holds the whole file; the next call only queries.
                        self._store.save(session)
                        raise UploadCancelled(f"upload of {self._file_name} cancelled")
                    return result.upload_token

                # A continuation that lands after cancellation is not recorded.
                self._check_cancelled(cancel_event, None)
                session.confirm(result.confirmed_bytes)
                self._store.save(session)
                logger.debug(
                    "%s: confirmed %d/%d bytes",
                    self._file_name, session.confirmed_bytes, session.total_bytes,
                )
                self._report(progress_callback, session)

        # Every byte is acknowledged but no token arrived with it.
        self._check_cancelled(cancel_event, ends_at)
        logger.info("All bytes of %s confirmed, querying upload status", self._file_name)
        return self._client.query_status(
            session.upload_url, timeout=self._timeout_for(ends_at, self._chunk_timeout)
        )

    def _report(self, progress_callback: ProgressCallback | None, session: UploadSession) -> None:
        if progress_callback is not None:
            progress_callback(
                UploadProgress(
                    file_name=self._file_name,
                    bytes_uploaded=session.confirmed_bytes,
                    total_bytes=session.total_bytes,
                )
            )
