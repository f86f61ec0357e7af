"""Tests for settings validation."""

import pytest

from pdfdeck.config import Settings
from pdfdeck.errors import ConfigError


def make(**values) -> Settings:
    return Settings(_env_file=None, **values)


def test_defaults():
    settings = make()
    assert settings.pdf_max_bytes == 31457280
    assert settings.pdf_max_pages == 150
    assert settings.signed_url_ttl_seconds == 7200
    assert settings.auth_max_skew_seconds == 300
    assert settings.anti_replay_enabled is True
    assert settings.anti_replay_fail_open is True
    assert settings.render_dpi == 180
    assert settings.api_prefix == ""


def test_api_reports_every_missing_value():
    with pytest.raises(ConfigError) as exc:
        make().require_api()
    assert exc.value.missing == [
        "HMAC_SECRET_CURRENT",
        "UPLOADS_BUCKET",
        "JOBS_BUCKET",
        "JOBS_TABLE",
        "JOBS_QUEUE_URL",
        "NONCES_TABLE",
    ]
    assert exc.value.code == "CONFIG"


def test_api_does_not_need_generation_credentials():
    make(
        hmac_secret_current="s",
        uploads_bucket="u",
        jobs_bucket="j",
        state_backend="memory",
        queue_backend="memory",
    ).require_api()


def test_in_process_worker_needs_generation_credentials():
    settings = make(
        hmac_secret_current="s",
        uploads_bucket="u",
        jobs_bucket="j",
        state_backend="memory",
        queue_backend="memory",
        run_worker_in_process=True,
    )
    with pytest.raises(ConfigError) as exc:
        settings.require_api()
    assert exc.value.missing == ["OPENAI_API_KEY"]


def test_worker_does_not_need_hmac_secret():
    make(
        uploads_bucket="u",
        jobs_bucket="j",
        jobs_table="jobs",
        jobs_queue_url="https://sqs.test/q",
        generation_enabled=False,
    ).require_worker()


def test_settings_are_frozen():
    settings = make()
    with pytest.raises(Exception):
        settings.pdf_max_pages = 5


def test_environment_overrides(monkeypatch):
    monkeypatch.setenv("PDF_MAX_PAGES", "20")
    monkeypatch.setenv("S3_ACCESS_KEY_ID", "minio")
    settings = make()
    assert settings.pdf_max_pages == 20
    assert settings.s3_access_key_id == "minio"
