"""Shared fixtures: an in-memory Google Photos upload server and media file helpers."""

import json
from pathlib import Path

import pytest
import requests
from requests.structures import CaseInsensitiveDict

from camedia.photos_client import PhotosClient
from camedia.session_store import SessionStore

BASE_URL = "https://photos.test/v1"

# 24-byte ISO-BMFF ftyp box with an mp42 major brand.
MP4_HEADER = b"\x00\x00\x00\x18ftypmp42\x00\x00\x00\x00mp42isom"
JPEG_HEADER = b"\xff\xd8\xff\xe0\x00\x10JFIF\x00"


def make_response(status, body=b"", headers=None):
    resp = requests.Response()
    resp.status_code = status
    resp._content = body if isinstance(body, bytes) else body.encode("utf-8")
    resp.headers = CaseInsensitiveDict(headers or {})
    resp.encoding = "utf-8"
    return resp


def write_media(path, size, header=MP4_HEADER):
    """Write a *size*-byte file starting with *header*, padded with a byte pattern."""
    path = Path(path)
    pattern = bytes(range(256)) * 4096  # 1 MB
    with open(path, "wb") as fh:
        head = header[:size]
        fh.write(head)
        remaining = size - len(head)
        while remaining > 0:
            block = pattern[: min(len(pattern), remaining)]
            fh.write(block)
            remaining -= len(block)
    return path


class FakePhotosServer:
    """Stands in for a ``requests.Session`` talking to the Photos upload API.

    Knobs:
      ack_limit      callable(chunk_index, offset, data) -> int | None; caps the
                     number of bytes the server keeps and acknowledges
      final_on_last  when False the last chunk gets a 308 with the full range and
                     the token is only available through a status query
      chunk_hook     callable(chunk_index, offset, data) run before answering,
                     may raise or return a response to send instead
      start_status   status code for session start requests
    """

    def __init__(self, base_url=BASE_URL):
        self.base_url = base_url
        self.sessions = {}
        self.expired = set()
        self.chunks = []  # (upload_url, offset, length)
        self.queries = []
        self.created_items = []
        self.start_requests = []
        self.timeouts = []
        self.closed = 0
        self.ack_limit = None
        self.final_on_last = True
        self.chunk_hook = None
        self.start_status = 200
        self.query_body_on_final = True
        self._counter = 0

    # -- helpers -----------------------------------------------------

    def token_for(self, upload_url):
        return f"token-{upload_url.rsplit('/', 1)[-1]}"

    def received(self, upload_url):
        return bytes(self.sessions[upload_url]["received"])

    @property
    def last_session_url(self):
        return list(self.sessions)[-1]

    # -- requests.Session surface -----------------------------------

    def close(self):
        self.closed += 1

    def post(self, url, headers=None, data=None, json=None, timeout=None):
        headers = CaseInsensitiveDict(headers or {})
        self.timeouts.append(timeout)
        if url == f"{self.base_url}/uploads":
            return self._start(headers)
        if url == f"{self.base_url}/mediaItems:batchCreate":
            return self._batch_create(json)
        if url in self.sessions:
            if url in self.expired:
                return make_response(404, "Not Found")
            command = headers.get("X-Goog-Upload-Command")
            if command == "query":
                return self._query(url)
            if command == "upload":
                return self._chunk(url, headers, data or b"")
        return make_response(400, f"unexpected request to {url}")

    def _start(self, headers):
        self.start_requests.append(dict(headers))
        if self.start_status != 200:
            return make_response(self.start_status, "start refused")
        assert headers["X-Goog-Upload-Protocol"] == "resumable"
        assert headers["X-Goog-Upload-Command"] == "start"
        self._counter += 1
        upload_url = f"{self.base_url}/upload-session/{self._counter}"
        self.sessions[upload_url] = {
            "total": int(headers["X-Goog-Upload-Raw-Size"]),
            "content_type": headers["X-Goog-Upload-Content-Type"],
            "received": bytearray(),
            "complete": False,
        }
        return make_response(200, headers={"X-Goog-Upload-URL": upload_url})

    def _chunk(self, url, headers, data):
        state = self.sessions[url]
        offset = int(headers["X-Goog-Upload-Offset"])
        expected_range = f"bytes {offset}-{offset + len(data) - 1}/{state['total']}"
        assert headers["Content-Range"] == expected_range
        index = len(self.chunks)
        self.chunks.append((url, offset, len(data)))

        if self.chunk_hook is not None:
            override = self.chunk_hook(index, offset, data)
            if override is not None:
                return override

        if offset > len(state["received"]):
            return make_response(400, "offset beyond received data")
        received = state["received"][:offset] + bytearray(data)
        if self.ack_limit is not None:
            limit = self.ack_limit(index, offset, data)
            if limit is not None:
                received = received[:limit]
        state["received"] = received

        acked = len(received)
        if acked >= state["total"]:
            state["complete"] = True
            if self.final_on_last:
                return make_response(200, self.token_for(url))
        return make_response(308, headers={"Range": f"bytes=0-{acked - 1}"})

    def _query(self, url):
        self.queries.append(url)
        state = self.sessions[url]
        if state["complete"]:
            body = self.token_for(url) if self.query_body_on_final else b""
            return make_response(200, body, headers={"X-Goog-Upload-Status": "final"})
        return make_response(200, headers={"X-Goog-Upload-Status": "active"})

    def _batch_create(self, payload):
        item = payload["newMediaItems"][0]
        self.created_items.append(item)
        token = item["simpleMediaItem"]["uploadToken"]
        body = {
            "newMediaItemResults": [
                {
                    "uploadToken": token,
                    "status": {"message": "OK"},
                    "mediaItem": {
                        "id": f"media-{token}",
                        "description": item.get("description", ""),
                        "productUrl": "https://photos.google.com/mock-url",
                        "filename": item["simpleMediaItem"]["fileName"],
                    },
                }
            ]
        }
        return make_response(
            200, json.dumps(body), headers={"Content-Type": "application/json"}
        )


@pytest.fixture
def server():
    return FakePhotosServer()


@pytest.fixture
def client(server):
    return PhotosClient(server, base_url=BASE_URL, chunk_timeout=5)


@pytest.fixture
def store(tmp_path):
    return SessionStore(tmp_path / "state")


@pytest.fixture
def media_dir(tmp_path):
    path = tmp_path / "media"
    path.mkdir()
    return path
