"""Tests for Pydantic models and validation."""

from datetime import datetime, timezone

import pytest
from pydantic import ValidationError

from quote_reel.models import QuoteReelConfig, RetentionConfig, WorkerConfig
from quote_reel.queue import Job, JobState, JobStatusView, RenderRequest, TextSettings

NOW = datetime(2026, 1, 1, tzinfo=timezone.utc)


def make_job(**overrides):
    data = {"id": "job-1", "payload": {"text": "hi"}, "created_at": NOW, "updated_at": NOW}
    data.update(overrides)
    return Job(**data)


def test_render_request_minimal():
    """Test that only text is required."""
    request = RenderRequest(text="Be here now.")
    assert request.quality == "1080p"
    assert request.text_settings is None


def test_render_request_keeps_unknown_keys():
    request = RenderRequest(text="hi", background="ocean.mp4")
    assert request.model_extra == {"background": "ocean.mp4"}


def test_render_request_blank_text():
    """Test that whitespace-only text raises ValidationError."""
    with pytest.raises(ValidationError) as exc_info:
        RenderRequest(text="  \n ")
    assert "text" in str(exc_info.value)


def test_text_settings_bounds():
    assert TextSettings(font_size=400, offset_x=-50).font_size == 400
    with pytest.raises(ValidationError):
        TextSettings(font_size=5)
    with pytest.raises(ValidationError):
        TextSettings(offset_x=51)
    with pytest.raises(ValidationError):
        TextSettings(alignment="justify")


def test_text_settings_color():
    assert TextSettings(color="#FFF").color == "#FFF"
    with pytest.raises(ValidationError):
        TextSettings(color="white")


def test_job_terminal_property():
    assert make_job(state=JobState.COMPLETED).is_terminal
    assert make_job(state=JobState.FAILED).is_terminal
    assert not make_job(state=JobState.PROCESSING).is_terminal


def test_job_progress_range():
    with pytest.raises(ValidationError):
        make_job(progress=101)


def test_status_view_hides_stale_fields():
    """Test that result only shows when completed and error only when failed."""
    pending = JobStatusView.from_job(make_job(state=JobState.PENDING, last_error="boom"))
    assert pending.error is None and pending.result is None

    completed = JobStatusView.from_job(make_job(state=JobState.COMPLETED, result="asset-1"))
    assert completed.result == "asset-1"
    assert completed.error is None

    failed = JobStatusView.from_job(make_job(state=JobState.FAILED, error="boom"))
    assert failed.error == "boom"
    assert failed.result is None


def test_worker_config_invalid_concurrency():
    with pytest.raises(ValidationError):
        WorkerConfig(concurrency=64)


def test_retention_config_positive():
    with pytest.raises(ValidationError):
        RetentionConfig(completed_days=0)


def test_quote_reel_config_from_dict():
    """Test creating QuoteReelConfig from nested dict."""
    config = QuoteReelConfig.from_dict(
        {"store": {"path": "x.db"}, "worker": {"concurrency": 2}, "logging": {"level": "DEBUG"}}
    )
    assert config.store.path == "x.db"
    assert config.worker.concurrency == 2
    assert config.logging.level == "DEBUG"
    assert config.queue.max_attempts == 3


def test_merge_cli_overrides_returns_new_instance():
    config = QuoteReelConfig()
    updated = config.merge_cli_overrides({"max_attempts": 7, "log_level": "WARNING"})
    assert updated.queue.max_attempts == 7
    assert updated.logging.level == "WARNING"
    assert config.queue.max_attempts == 3
