"""
Tests for pipeline and server configuration.

Verifies:
- Configuration loading from environment
- Default values
- Inline comment stripping in numeric env vars
"""
import os
from pathlib import Path

import pytest

from proposal_api.config import DEFAULT_MODEL_ID, ServerConfig
from voice_pipeline.config import (
    PipelineConfig,
    load_env_files,
    parse_bool_env,
    parse_float_env,
    parse_int_env,
)


PIPELINE_VARS = (
    "API_BASE_URL",
    "TRANSCRIPTION_TIMEOUT_MS",
    "CAPTURE_MAX_DURATION_MS",
    "CAPTURE_TIMESLICE_MS",
    "CAPTURE_MIN_BYTES",
    "PLAYBACK_VOLUME",
    "PLAYBACK_GESTURE_WAIT_MS",
    "TRANSCRIPTION_LANGUAGE",
    "DEFAULT_VOICE_ID",
    "DEFAULT_MODEL_ID",
    "SCORING_STRATEGY",
    "EVALUATION_MODE",
)


@pytest.fixture
def clean_env(monkeypatch):
    for key in PIPELINE_VARS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


def test_pipeline_config_defaults(clean_env):
    config = PipelineConfig.from_env()

    assert config.api_base_url == "http://localhost:3000"
    assert config.transcription_timeout_ms == 30000
    assert config.capture_max_duration_ms == 15000
    assert config.capture_timeslice_ms == 1000
    assert config.capture_min_bytes == 1000
    assert config.playback_volume == 0.8
    assert config.playback_gesture_wait_ms == 10000
    assert config.transcription_language is None
    assert config.scoring_strategy == "heuristic"
    assert config.evaluation_mode == "local"


def test_pipeline_config_from_env(clean_env):
    clean_env.setenv("API_BASE_URL", "https://aikira.example/")
    clean_env.setenv("TRANSCRIPTION_TIMEOUT_MS", "5000")
    clean_env.setenv("CAPTURE_MAX_DURATION_MS", "20000")
    clean_env.setenv("PLAYBACK_VOLUME", "0.5")
    clean_env.setenv("TRANSCRIPTION_LANGUAGE", "nl")
    clean_env.setenv("SCORING_STRATEGY", "Deterministic")
    clean_env.setenv("EVALUATION_MODE", "REMOTE")

    config = PipelineConfig.from_env()

    assert config.api_base_url == "https://aikira.example"
    assert config.transcription_timeout_ms == 5000
    assert config.capture_max_duration_ms == 20000
    assert config.playback_volume == 0.5
    assert config.transcription_language == "nl"
    assert config.scoring_strategy == "deterministic"
    assert config.evaluation_mode == "remote"


def test_parse_int_env_strips_comments(monkeypatch):
    monkeypatch.setenv("TEST_INT", "15000  # fifteen seconds")
    assert parse_int_env("TEST_INT", default=1) == 15000


def test_parse_int_env_invalid_falls_back(monkeypatch):
    monkeypatch.setenv("TEST_INT", "soon")
    assert parse_int_env("TEST_INT", default=7) == 7


def test_parse_int_env_missing(monkeypatch):
    monkeypatch.delenv("TEST_INT", raising=False)
    assert parse_int_env("TEST_INT", default=7) == 7


def test_parse_float_env(monkeypatch):
    monkeypatch.setenv("TEST_FLOAT", " 0.25 # quiet")
    assert parse_float_env("TEST_FLOAT", default=1.0) == 0.25


@pytest.mark.parametrize("raw,expected", [("1", True), ("true", True), ("On", True), ("0", False), ("no", False)])
def test_parse_bool_env(monkeypatch, raw, expected):
    monkeypatch.setenv("TEST_BOOL", raw)
    assert parse_bool_env("TEST_BOOL", default=not expected) is expected


def test_env_file_does_not_override(tmp_path, monkeypatch):
    (tmp_path / ".env").write_text("AIKIRA_TEST_A=from_file\nAIKIRA_TEST_B=from_file\n")
    monkeypatch.setenv("AIKIRA_TEST_A", "from_env")
    monkeypatch.delenv("AIKIRA_TEST_B", raising=False)

    load_env_files(Path(tmp_path))

    assert os.environ["AIKIRA_TEST_A"] == "from_env"
    assert os.environ["AIKIRA_TEST_B"] == "from_file"
    os.environ.pop("AIKIRA_TEST_B", None)


def test_server_config_defaults(monkeypatch):
    for key in ("OPENAI_API_KEY", "ELEVEN_LABS_API_KEY", "PORT", "DEFAULT_MODEL_ID", "DOWNLOAD_MAX_AGE_S"):
        monkeypatch.delenv(key, raising=False)

    config = ServerConfig.from_env()

    assert config.port == 3000
    assert config.default_model_id == DEFAULT_MODEL_ID
    assert config.download_max_age_s == 3600
    assert config.voice_services_available is False
    assert config.transcription_services_available is False


def test_server_config_from_env(monkeypatch):
    monkeypatch.setenv("OPENAI_API_KEY", "sk-test")
    monkeypatch.setenv("ELEVEN_LABS_API_KEY", "el-test")
    monkeypatch.setenv("PORT", "8080  # local")
    monkeypatch.setenv("VOICE_STABILITY", "0.4")
    monkeypatch.setenv("VOICE_USE_SPEAKER_BOOST", "false")
    monkeypatch.setenv("LOG_LEVEL", "debug")

    config = ServerConfig.from_env()

    assert config.port == 8080
    assert config.voice_settings["stability"] == 0.4
    assert config.voice_settings["use_speaker_boost"] is False
    assert config.log_level == "DEBUG"
    assert config.voice_services_available is True
    assert config.transcription_services_available is True
