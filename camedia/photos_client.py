"""Google Photos client – the resumable upload wire protocol and media-item registration.

Every call goes through a caller-supplied ``requests.Session`` (in production a
``google.auth.transport.requests.AuthorizedSession``) against an explicit base URL.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass

import requests
from google.auth.transport.requests import AuthorizedSession, Request
from google.oauth2.credentials import Credentials

from camedia.config import DEFAULT_BASE_URL, DEFAULT_CHUNK_TIMEOUT
from camedia.errors import (
    ChunkMismatch,
    ChunkUploadFailed,
    MediaItemCreationFailed,
    SessionExpired,
    SessionStartFailed,
    UploadIncomplete,
)

logger = logging.getLogger(__name__)

SCOPES = [
    "https://www.googleapis.com/auth/photoslibrary.appendonly",
    "https://www.googleapis.com/auth/photoslibrary.readonly.appcreateddata",
    "https://www.googleapis.com/auth/photoslibrary.edit.appcreateddata",
]

STATUS_RESUME_INCOMPLETE = 308
FINAL_STATUSES = (200, 201)
REQUEST_TIMEOUT = 30  # seconds, for the non-chunk calls


# ── authentication ──────────────────────────────────────────────────


def load_credentials(token_file: str) -> Credentials:
    """Load an already-authorized user token, refreshing it when expired.

    The refreshed token is written back to *token_file*.
    """
    if not os.path.exists(token_file):
        raise FileNotFoundError(
            f"{token_file} not found – authorize this app with Google Photos first."
        )
    creds = Credentials.from_authorized_user_file(token_file, SCOPES)
    if not creds.valid:
        if not (creds.expired and creds.refresh_token):
            raise RuntimeError(f"{token_file} holds no usable or refreshable token.")
        creds.refresh(Request())
        with open(token_file, "w") as token:
            token.write(creds.to_json())
    return creds


def authorized_session(token_file: str) -> AuthorizedSession:
    """Return a ``requests.Session`` that signs every request with the user's token."""
    return AuthorizedSession(load_credentials(token_file))


# ── response types ──────────────────────────────────────────────────


@dataclass(frozen=True)
class ChunkResult:
    """Outcome of one chunk request: either a new confirmed offset or the upload token."""

    confirmed_bytes: int
    upload_token: str | None = None

    @property
    def is_final(self) -> bool:
        return self.upload_token is not None


@dataclass(frozen=True)
class MediaItem:
    id: str
    description: str = ""
    product_url: str = ""
    filename: str = ""


def parse_range_header(value: str | None) -> int:
    """Return the number of bytes a ``Range: bytes=0-<end>`` header acknowledges (``end + 1``)."""
    if not value:
        raise ChunkMismatch("308 response is missing the Range header")
    unit, _, span = value.strip().partition("=")
    if unit.strip() != "bytes" or "-" not in span:
        raise ChunkMismatch(f"invalid Range header format: {value!r}")
    _, _, end = span.partition("-")
    try:
        end_byte = int(end)
    except ValueError:
        raise ChunkMismatch(f"invalid Range end value: {value!r}") from None
    if end_byte < 0:
        raise ChunkMismatch(f"invalid Range end value: {value!r}")
    return end_byte + 1


# ── client ──────────────────────────────────────────────────────────


class PhotosClient:
    """Speaks the Google Photos resumable upload protocol over *session*."""

    def __init__(
        self,
        session: requests.Session,
        base_url: str = DEFAULT_BASE_URL,
        chunk_timeout: float = DEFAULT_CHUNK_TIMEOUT,
    ):
        self._session = session
        self._base_url = base_url.rstrip("/")
        self._chunk_timeout = chunk_timeout

    @property
    def base_url(self) -> str:
        return self._base_url

    # ── session start ───────────────────────────────────────────────

    def close(self) -> None:
        """Close the underlying session, dropping its pooled connections."""
        self._session.close()

    def start_upload(
        self,
        file_name: str,
        total_bytes: int,
        mime_type: str,
        timeout: float | None = None,
    ) -> str:
        """Open a resumable upload session and return its upload URL."""
        try:
            resp = self._session.post(
                f"{self._base_url}/uploads",
                headers={
                    "X-Goog-Upload-Protocol": "resumable",
                    "X-Goog-Upload-Command": "start",
                    "X-Goog-Upload-Content-Type": mime_type,
                    "X-Goog-Upload-Raw-Size": str(total_bytes),
                    "X-Goog-Upload-File-Name": file_name,
                },
                timeout=timeout if timeout is not None else REQUEST_TIMEOUT,
            )
        except requests.exceptions.Timeout:
            raise
        except requests.exceptions.RequestException as exc:
            raise SessionStartFailed(f"failed to start upload for {file_name}: {exc}") from exc

        if resp.status_code != 200:
            raise SessionStartFailed(
                f"failed to start upload for {file_name}, status {resp.status_code}: {resp.text[:200]}"
            )
        upload_url = resp.headers.get("X-Goog-Upload-URL", "")
        if not upload_url:
            raise SessionStartFailed(f"no upload URL in response for {file_name}")
        return upload_url

    # ── chunk upload ────────────────────────────────────────────────

    def upload_chunk(
        self,
        upload_url: str,
        data: bytes,
        offset: int,
        total_bytes: int,
        timeout: float | None = None,
    ) -> ChunkResult:
        """Send ``data`` as bytes ``[offset, offset + len(data) - 1]`` of ``total_bytes``.

        Returns the server-confirmed offset for a 308 response, or the upload token
        for a final 200/201 response. A 308 must acknowledge more than *offset*
        bytes. ``requests`` timeouts propagate unchanged.
        """
        range_end = offset + len(data) - 1
        content_range = f"bytes {offset}-{range_end}/{total_bytes}"
        try:
            resp = self._session.post(
                upload_url,
                headers={
                    "X-Goog-Upload-Command": "upload",
                    "X-Goog-Upload-Offset": str(offset),
                    "Content-Range": content_range,
                },
                data=data,
                timeout=timeout if timeout is not None else self._chunk_timeout,
            )
        except requests.exceptions.Timeout:
            raise
        except requests.exceptions.RequestException as exc:
            raise ChunkUploadFailed(
                f"failed to upload chunk at offset {offset}: {exc}", offset=offset
            ) from exc

        status = resp.status_code
        logger.debug("Chunk %s -> HTTP %d", content_range, status)

        if status == STATUS_RESUME_INCOMPLETE:
            confirmed = parse_range_header(resp.headers.get("Range"))
            if confirmed <= offset or confirmed > total_bytes:
                raise ChunkMismatch(
                    f"server acknowledged {confirmed} bytes, expected more than {offset} "
                    f"and at most {total_bytes}"
                )
            return ChunkResult(confirmed_bytes=confirmed)

        if status in FINAL_STATUSES:
            token = resp.text
            if not token:
                raise ChunkUploadFailed(
                    f"received empty upload token in final response (status {status})",
                    status_code=status, offset=offset,
                )
            if range_end + 1 != total_bytes:
                logger.warning(
                    "Final response after %d of %d bytes – trusting server.",
                    range_end + 1, total_bytes,
                )
            return ChunkResult(confirmed_bytes=total_bytes, upload_token=token)

        if status == 404:
            raise SessionExpired(upload_url)

        raise ChunkUploadFailed(
            f"chunk upload failed with status {status} (offset {offset}): {resp.text[:200]}",
            status_code=status, offset=offset,
        )

    # ── status query ────────────────────────────────────────────────

    def query_status(self, upload_url: str, timeout: float | None = None) -> str:
        """Ask the server whether the session is final and return its upload token.

        Anything other than ``X-Goog-Upload-Status: final`` with a non-empty body is
        :class:`UploadIncomplete`.
        """
        try:
            resp = self._session.post(
                upload_url,
                headers={"X-Goog-Upload-Command": "query"},
                timeout=timeout if timeout is not None else self._chunk_timeout,
            )
        except requests.exceptions.Timeout:
            raise
        except requests.exceptions.RequestException as exc:
            raise UploadIncomplete(f"failed to query upload status: {exc}") from exc

        if resp.status_code not in (200, STATUS_RESUME_INCOMPLETE):
            raise UploadIncomplete(
                f"query upload status failed with status {resp.status_code}: {resp.text[:200]}"
            )

        status = resp.headers.get("X-Goog-Upload-Status", "")
        token = resp.text if status == "final" else ""
        logger.debug("Query %s -> status=%r, token=%s", upload_url, status, bool(token))
        if status != "final":
            raise UploadIncomplete(
                f"all bytes sent but the server reports upload status {status or 'unknown'!r}"
            )
        if not token:
            raise UploadIncomplete("upload status is 'final' but no upload token was returned")
        return token

    # ── media items ─────────────────────────────────────────────────

    def create_media_item(
        self,
        upload_token: str,
        file_name: str,
        description: str | None = None,
    ) -> MediaItem:
        """Turn *upload_token* into a library media item (one ``batchCreate`` call)."""
        item: dict = {"simpleMediaItem": {"uploadToken": upload_token, "fileName": file_name}}
        if description:
            # The Photos API truncates descriptions to 1000 characters anyway.
            item["description"] = description[:1000]

        try:
            resp = self._session.post(
                f"{self._base_url}/mediaItems:batchCreate",
                headers={"Content-type": "application/json"},
                json={"newMediaItems": [item]},
                timeout=REQUEST_TIMEOUT,
            )
        except requests.exceptions.Timeout:
            raise
        except requests.exceptions.RequestException as exc:
            raise MediaItemCreationFailed(f"failed to create media item: {exc}") from exc

        if resp.status_code != 200:
            raise MediaItemCreationFailed(
                f"failed to create media item, status {resp.status_code}: {resp.text[:200]}"
            )

        try:
            results = resp.json().get("newMediaItemResults", [])
        except ValueError as exc:
            raise MediaItemCreationFailed(f"failed to decode batchCreate response: {exc}") from exc
        if not results:
            raise MediaItemCreationFailed("no media items created")

        status = results[0].get("status", {})
        message = status.get("message", "")
        # gRPC status: code 0 = OK. The message may say "OK" or "Success".
        if not (status.get("code", -1) == 0 or message == "OK" or "success" in message.lower()):
            raise MediaItemCreationFailed(
                f"failed to create media item: {status.get('message', 'unknown error')}"
            )

        media = results[0].get("mediaItem", {})
        return MediaItem(
            id=media.get("id", ""),
            description=media.get("description", ""),
            product_url=media.get("productUrl", ""),
            filename=media.get("filename", file_name),
        )
