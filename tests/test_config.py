"""Tests for environment-driven configuration."""

from pathlib import Path

import pytest

from camedia.config import (
    DEFAULT_BASE_URL,
    DEFAULT_CHUNK_SIZE,
    UploadConfig,
    default_state_dir,
    load_config,
)

ENV_VARS = (
    "CAMEDIA_PHOTOS_BASE_URL",
    "CAMEDIA_STATE_DIR",
    "CAMEDIA_CHUNK_SIZE",
    "CAMEDIA_CHUNK_TIMEOUT",
    "CAMEDIA_MEDIA_KIND",
    "GOOGLE_TOKEN_FILE",
)


@pytest.fixture(autouse=True)
def clean_env(monkeypatch, tmp_path):
    for name in ENV_VARS:
        monkeypatch.delenv(name, raising=False)
    monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "xdg"))


class TestLoadConfig:
    def test_defaults(self, tmp_path):
        config = load_config()
        assert config.base_url == DEFAULT_BASE_URL
        assert config.chunk_size == DEFAULT_CHUNK_SIZE
        assert config.chunk_timeout == 30.0
        assert config.media_kind == "video"
        assert config.token_file == "token.json"
        assert config.state_dir == tmp_path / "xdg" / "camedia" / "uploads"

    def test_overrides(self, monkeypatch, tmp_path):
        monkeypatch.setenv("CAMEDIA_PHOTOS_BASE_URL", "http://localhost:9000/v1/")
        monkeypatch.setenv("CAMEDIA_STATE_DIR", str(tmp_path / "state"))
        monkeypatch.setenv("CAMEDIA_CHUNK_SIZE", "4096")
        monkeypatch.setenv("CAMEDIA_CHUNK_TIMEOUT", "2.5")
        monkeypatch.setenv("CAMEDIA_MEDIA_KIND", "Image")
        monkeypatch.setenv("GOOGLE_TOKEN_FILE", "/secrets/token.json")

        config = load_config()
        assert config.base_url == "http://localhost:9000/v1"
        assert config.state_dir == tmp_path / "state"
        assert config.chunk_size == 4096
        assert config.chunk_timeout == 2.5
        assert config.media_kind == "image"
        assert config.token_file == "/secrets/token.json"

    def test_bad_number(self, monkeypatch):
        monkeypatch.setenv("CAMEDIA_CHUNK_SIZE", "ten megs")
        with pytest.raises(ValueError, match="CAMEDIA_CHUNK_SIZE"):
            load_config()

    def test_non_positive_chunk_size(self, monkeypatch):
        monkeypatch.setenv("CAMEDIA_CHUNK_SIZE", "0")
        with pytest.raises(ValueError, match="chunk_size"):
            load_config()

    def test_unknown_media_kind(self, monkeypatch):
        monkeypatch.setenv("CAMEDIA_MEDIA_KIND", "audio")
        with pytest.raises(ValueError, match="CAMEDIA_MEDIA_KIND"):
            load_config()


class TestUploadConfig:
    def test_state_dir_defaults(self, tmp_path):
        assert UploadConfig().state_dir == default_state_dir()

    def test_explicit_state_dir(self, tmp_path):
        assert UploadConfig(state_dir=tmp_path).state_dir == tmp_path

    def test_home_fallback(self, monkeypatch, tmp_path):
        monkeypatch.delenv("XDG_CONFIG_HOME")
        monkeypatch.setenv("HOME", str(tmp_path))
        assert default_state_dir() == Path(tmp_path) / ".config" / "camedia" / "uploads"

    def test_default_state_dir_read_at_construction(self, monkeypatch, tmp_path):
        first = UploadConfig()
        monkeypatch.setenv("XDG_CONFIG_HOME", str(tmp_path / "other"))
        second = UploadConfig()
        assert first.state_dir == tmp_path / "xdg" / "camedia" / "uploads"
        assert second.state_dir == tmp_path / "other" / "camedia" / "uploads"
