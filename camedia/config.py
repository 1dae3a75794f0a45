"""Runtime configuration read from the environment (and ``.env`` via the CLI)."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path

DEFAULT_BASE_URL = "https://photoslibrary.googleapis.com/v1"
DEFAULT_CHUNK_SIZE = 10 * 1024 * 1024  # 10 MB
DEFAULT_CHUNK_TIMEOUT = 30.0  # seconds, per chunk request
DEFAULT_TOKEN_FILE = "token.json"

MEDIA_KINDS = ("video", "image", "any")


def default_state_dir() -> Path:
    """Return ``$XDG_CONFIG_HOME/camedia/uploads`` (``~/.config`` when unset)."""
    config_home = os.getenv("XDG_CONFIG_HOME") or os.path.join(Path.home(), ".config")
    return Path(config_home) / "camedia" / "uploads"


@dataclass(frozen=True)
class UploadConfig:
    base_url: str = DEFAULT_BASE_URL
    state_dir: Path = field(default_factory=default_state_dir)
    chunk_size: int = DEFAULT_CHUNK_SIZE
    chunk_timeout: float = DEFAULT_CHUNK_TIMEOUT
    media_kind: str = "video"
    token_file: str = DEFAULT_TOKEN_FILE

    def __post_init__(self) -> None:
        if self.chunk_size <= 0:
            raise ValueError(f"chunk_size must be positive, got {self.chunk_size}")
        if self.chunk_timeout <= 0:
            raise ValueError(f"chunk_timeout must be positive, got {self.chunk_timeout}")
        if self.media_kind not in MEDIA_KINDS:
            raise ValueError(f"media_kind must be one of {MEDIA_KINDS}, got {self.media_kind!r}")


def _env_number(name: str, default, cast):
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        return cast(raw)
    except ValueError:
        raise ValueError(f"{name} must be a number, got {raw!r}") from None


def load_config() -> UploadConfig:
    """Build an :class:`UploadConfig` from ``CAMEDIA_*`` / ``GOOGLE_TOKEN_FILE`` env vars."""
    state_dir = os.getenv("CAMEDIA_STATE_DIR")
    media_kind = os.getenv("CAMEDIA_MEDIA_KIND", "video").strip().lower()
    if media_kind not in MEDIA_KINDS:
        raise ValueError(f"CAMEDIA_MEDIA_KIND must be one of {MEDIA_KINDS}, got {media_kind!r}")

    return UploadConfig(
        base_url=os.getenv("CAMEDIA_PHOTOS_BASE_URL", DEFAULT_BASE_URL).rstrip("/"),
        state_dir=Path(state_dir).expanduser() if state_dir else default_state_dir(),
        chunk_size=_env_number("CAMEDIA_CHUNK_SIZE", DEFAULT_CHUNK_SIZE, int),
        chunk_timeout=_env_number("CAMEDIA_CHUNK_TIMEOUT", DEFAULT_CHUNK_TIMEOUT, float),
        media_kind=media_kind,
        token_file=os.getenv("GOOGLE_TOKEN_FILE", DEFAULT_TOKEN_FILE),
    )
