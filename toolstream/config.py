"""Configuration for streaming tool execution.

All settings have environment-variable defaults so a deployment can tune
them from a .env file without code changes.

Usage:
    from toolstream.config import StreamingConfig

    # Defaults (reads from environment)
    config = StreamingConfig()

    # Load a .env file first, then read environment
    config = StreamingConfig.from_env(".env")

    # Explicit overrides
    config = StreamingConfig(throttle_interval_ms=50, grace_period_ms=1000)

Environment Variables:
    TOOLSTREAM_THROTTLE_INTERVAL_MS: Progress emission window (default: 100)
    TOOLSTREAM_THROTTLE_MAX_BYTES: Unflushed size that forces emission (default: 4096)
    TOOLSTREAM_STREAM_BUFFER_CAP: Live tail kept for progress views (default: 51200)
    TOOLSTREAM_MAX_BUFFER_BYTES: Per-channel cap on the final result (default: 1048576)
    TOOLSTREAM_GRACE_PERIOD_MS: Wait after graceful termination before kill (default: 5000)
    TOOLSTREAM_KILL_DELAY_MS: Wait after forced termination (default: 2000)
    TOOLSTREAM_DEFAULT_TIMEOUT_MS: Timeout when the caller gives none (default: 300000)
    TOOLSTREAM_BINARY_THRESHOLD: Non-printable ratio that marks output binary (default: 0.3)
    TOOLSTREAM_EXTRA_PATHS: Extra PATH entries, os.pathsep separated
"""

import os
from dataclasses import dataclass, field, fields
from typing import Any, Dict, List, Optional

from dotenv import load_dotenv


DEFAULT_THROTTLE_INTERVAL_MS = 100
DEFAULT_THROTTLE_MAX_BYTES = 4 * 1024
DEFAULT_STREAM_BUFFER_CAP = 50 * 1024
# Default maximum result buffer size per stream (1MB)
DEFAULT_MAX_BUFFER_BYTES = 1024 * 1024
DEFAULT_GRACE_PERIOD_MS = 5000
DEFAULT_KILL_DELAY_MS = 2000
DEFAULT_TIMEOUT_MS = 300_000
DEFAULT_BINARY_THRESHOLD = 0.3


def _env_int(name: str, default: int) -> int:
    return int(os.environ.get(name, str(default)))


def _env_float(name: str, default: float) -> float:
    return float(os.environ.get(name, str(default)))


def _env_paths(name: str) -> List[str]:
    value = os.environ.get(name, "")
    return [p for p in value.split(os.pathsep) if p]


@dataclass
class StreamingConfig:
    """Tunables for the executor, throttler, registry and cancellation."""
    throttle_interval_ms: int = field(default_factory=lambda: _env_int("TOOLSTREAM_THROTTLE_INTERVAL_MS", DEFAULT_THROTTLE_INTERVAL_MS))
    throttle_max_bytes: int = field(default_factory=lambda: _env_int("TOOLSTREAM_THROTTLE_MAX_BYTES", DEFAULT_THROTTLE_MAX_BYTES))
    stream_buffer_cap: int = field(default_factory=lambda: _env_int("TOOLSTREAM_STREAM_BUFFER_CAP", DEFAULT_STREAM_BUFFER_CAP))
    max_buffer_bytes: int = field(default_factory=lambda: _env_int("TOOLSTREAM_MAX_BUFFER_BYTES", DEFAULT_MAX_BUFFER_BYTES))
    grace_period_ms: int = field(default_factory=lambda: _env_int("TOOLSTREAM_GRACE_PERIOD_MS", DEFAULT_GRACE_PERIOD_MS))
    kill_delay_ms: int = field(default_factory=lambda: _env_int("TOOLSTREAM_KILL_DELAY_MS", DEFAULT_KILL_DELAY_MS))
    default_timeout_ms: int = field(default_factory=lambda: _env_int("TOOLSTREAM_DEFAULT_TIMEOUT_MS", DEFAULT_TIMEOUT_MS))
    binary_threshold: float = field(default_factory=lambda: _env_float("TOOLSTREAM_BINARY_THRESHOLD", DEFAULT_BINARY_THRESHOLD))
    extra_paths: List[str] = field(default_factory=lambda: _env_paths("TOOLSTREAM_EXTRA_PATHS"))

    def __post_init__(self) -> None:
        self.validate()

    def validate(self) -> None:
        """Check value ranges.

        Raises:
            ValueError: If any setting is out of range.
        """
        for name in ("throttle_interval_ms", "grace_period_ms", "kill_delay_ms"):
            if getattr(self, name) < 0:
                raise ValueError(f"{name} must be >= 0, got {getattr(self, name)}")
        for name in ("throttle_max_bytes", "stream_buffer_cap", "max_buffer_bytes", "default_timeout_ms"):
            if getattr(self, name) <= 0:
                raise ValueError(f"{name} must be > 0, got {getattr(self, name)}")
        if not 0.0 < self.binary_threshold <= 1.0:
            raise ValueError(f"binary_threshold must be in (0, 1], got {self.binary_threshold}")

    # Seconds-based views used by the asyncio code paths

    @property
    def throttle_interval(self) -> float:
        return self.throttle_interval_ms / 1000.0

    @property
    def grace_period(self) -> float:
        return self.grace_period_ms / 1000.0

    @property
    def kill_delay(self) -> float:
        return self.kill_delay_ms / 1000.0

    @property
    def default_timeout(self) -> float:
        return self.default_timeout_ms / 1000.0

    @classmethod
    def from_env(cls, env_file: Optional[str] = ".env") -> "StreamingConfig":
        """Load an optional .env file, then build a config from the environment.

        Variables already set in the environment take precedence over the file.

        Args:
            env_file: Path to a .env file, or None to skip loading one.
        """
        if env_file and os.path.exists(env_file):
            load_dotenv(env_file)
        return cls()

    @classmethod
    def from_dict(cls, config: Optional[Dict[str, Any]] = None) -> "StreamingConfig":
        """Build a config from a plain dict, ignoring unknown keys.

        Args:
            config: Optional dict of field overrides, e.g.
                {"throttle_interval_ms": 50, "extra_paths": "/opt/bin"}.
        """
        known = {f.name for f in fields(cls)}
        overrides = {k: v for k, v in (config or {}).items() if k in known}
        paths = overrides.get("extra_paths")
        if paths is not None and not isinstance(paths, list):
            overrides["extra_paths"] = [paths]
        return cls(**overrides)


__all__ = ['StreamingConfig']
