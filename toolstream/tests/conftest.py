"""Pytest fixtures for toolstream tests."""

import pytest

from toolstream.config import StreamingConfig


@pytest.fixture(autouse=True)
def trace_to_tmp(tmp_path, monkeypatch):
    """Keep trace output inside the test's temp directory."""
    path = tmp_path / "trace.log"
    monkeypatch.setenv("TOOLSTREAM_TRACE_LOG", str(path))
    return path


@pytest.fixture
def fast_config():
    """Config with short termination bounds so cancellation tests stay quick."""
    return StreamingConfig(
        throttle_interval_ms=100,
        throttle_max_bytes=4096,
        stream_buffer_cap=50 * 1024,
        max_buffer_bytes=1024 * 1024,
        grace_period_ms=300,
        kill_delay_ms=1000,
        default_timeout_ms=30_000,
        binary_threshold=0.3,
        extra_paths=[],
    )
