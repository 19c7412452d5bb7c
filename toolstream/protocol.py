"""Protocol definitions for streaming tool execution.

This module defines the data structures shared by the executor, throttler,
registry and multiplexer: progress kinds, outcomes, lifecycle phases, the
immutable ProgressUpdate record and the final ExecutionResult.
"""

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, Optional


class ProgressKind(str, Enum):
    """Channel a progress update belongs to."""
    STDOUT = "stdout"
    STDERR = "stderr"
    STATUS = "status"


class Outcome(str, Enum):
    """Protocol-level outcome of a tool call.

    Exit codes do not determine the outcome: a process that exited with a
    non-zero code is still SUCCESS at this level.
    """
    SUCCESS = "success"       # Process exited (any exit code)
    ERROR = "error"           # Process could not be spawned
    CANCELLED = "cancelled"   # Terminated on external request
    TIMEOUT = "timeout"       # Terminated after exceeding its timeout


class ToolCallStatus(Enum):
    """Lifecycle phase of a tool call."""
    PENDING = "pending"       # Registered, process not producing yet
    RUNNING = "running"       # Process started / producing output
    COMPLETED = "completed"   # Finished with outcome SUCCESS
    FAILED = "failed"         # Finished with outcome ERROR
    CANCELLED = "cancelled"   # Finished with outcome CANCELLED or TIMEOUT

    @property
    def is_terminal(self) -> bool:
        return self in (ToolCallStatus.COMPLETED, ToolCallStatus.FAILED, ToolCallStatus.CANCELLED)

    @classmethod
    def for_outcome(cls, outcome: Outcome) -> "ToolCallStatus":
        """Map a terminal outcome to its lifecycle phase."""
        if outcome == Outcome.SUCCESS:
            return cls.COMPLETED
        if outcome == Outcome.ERROR:
            return cls.FAILED
        return cls.CANCELLED


@dataclass(frozen=True)
class ProgressUpdate:
    """One unit of incremental output attributed to a tool call.

    Attributes:
        tool_call_id: The tool call this output belongs to.
        kind: Output channel (stdout, stderr or status).
        content: Decoded text content of this update.
        timestamp: Wall-clock time (seconds since epoch) the update was produced.
    """
    tool_call_id: str
    kind: ProgressKind
    content: str
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "kind": self.kind.value,
            "content": self.content,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, tool_call_id: str, d: Dict[str, Any]) -> "ProgressUpdate":
        return cls(
            tool_call_id=tool_call_id,
            kind=ProgressKind(d["kind"]),
            content=d.get("content", ""),
            timestamp=d.get("timestamp", 0.0),
        )


@dataclass
class ExecutionResult:
    """Final result of one command execution.

    Attributes:
        exit_code: Process exit code, or None if it never started.
        stdout: Captured stdout, capped at the executor's max buffer.
        stderr: Captured stderr, capped at the executor's max buffer.
        duration_ms: Wall time from spawn to confirmed exit.
        outcome: Protocol-level outcome.
        truncated: True if either channel hit the max buffer cap.
        error: Spawn failure message when outcome is ERROR.
    """
    exit_code: Optional[int]
    stdout: str
    stderr: str
    duration_ms: float
    outcome: Outcome
    truncated: bool = False
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d: Dict[str, Any] = {
            "exit_code": self.exit_code,
            "stdout": self.stdout,
            "stderr": self.stderr,
            "duration_ms": round(self.duration_ms, 3),
            "outcome": self.outcome.value,
        }
        if self.truncated:
            d["truncated"] = True
        if self.error:
            d["error"] = self.error
        return d


# Raw progress callback: receives each update as it is produced
ProgressCallback = Callable[[ProgressUpdate], None]


class ToolStreamError(Exception):
    """Base class for protocol errors."""


class SpawnFailure(ToolStreamError):
    """The process could not be started."""


class UnknownToolCallReference(ToolStreamError):
    """An update referenced a tool call that is not registered."""

    def __init__(self, tool_call_id: str, operation: str):
        self.tool_call_id = tool_call_id
        self.operation = operation
        super().__init__(f"{operation}: unknown tool call '{tool_call_id}'")


class ProtocolOrderingViolation(ToolStreamError):
    """An event arrived in a state that forbids it (e.g. after the result)."""

    def __init__(self, tool_call_id: str, message: str):
        self.tool_call_id = tool_call_id
        super().__init__(f"tool call '{tool_call_id}': {message}")


__all__ = [
    'ProgressKind',
    'Outcome',
    'ToolCallStatus',
    'ProgressUpdate',
    'ExecutionResult',
    'ProgressCallback',
    'ToolStreamError',
    'SpawnFailure',
    'UnknownToolCallReference',
    'ProtocolOrderingViolation',
]
