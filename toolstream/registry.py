"""Per-tool-call state store.

The registry is the single place renderers query "what has happened for this
call so far". All mutation goes through its methods, which are serialized by
one lock; callers get immutable snapshots.
"""

import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .config import DEFAULT_STREAM_BUFFER_CAP
from .protocol import (
    Outcome,
    ProgressKind,
    ProgressUpdate,
    ProtocolOrderingViolation,
    ToolCallStatus,
    UnknownToolCallReference,
)

logger = logging.getLogger(__name__)


@dataclass
class ToolCallState:
    """Mutable record for one tool call. Only the registry touches it.

    Attributes:
        tool_call_id: Identity of the call.
        name: Tool name, if known.
        accumulated_stdout: Trailing window of delivered stdout content.
        accumulated_stderr: Trailing window of delivered stderr content.
        status: Most recent status text delivered via a status update.
        phase: Lifecycle phase.
        started_at: When the call was registered (epoch seconds).
        completed_at: When the call reached a terminal phase.
        outcome: Terminal outcome.
        result: Terminal result payload, if any.
        stdout_dropped: Characters dropped from the front of the stdout window.
        stderr_dropped: Characters dropped from the front of the stderr window.
        updates: Number of progress updates applied.
    """
    tool_call_id: str
    name: Optional[str] = None
    accumulated_stdout: str = ""
    accumulated_stderr: str = ""
    status: str = ""
    phase: ToolCallStatus = ToolCallStatus.PENDING
    started_at: float = field(default_factory=time.time)
    completed_at: Optional[float] = None
    outcome: Optional[Outcome] = None
    result: Optional[Any] = None
    stdout_dropped: int = 0
    stderr_dropped: int = 0
    updates: int = 0


@dataclass(frozen=True)
class ToolCallSnapshot:
    """Immutable copy of a ToolCallState, safe to hand to renderers."""
    tool_call_id: str
    name: Optional[str]
    accumulated_stdout: str
    accumulated_stderr: str
    status: str
    phase: ToolCallStatus
    started_at: float
    completed_at: Optional[float]
    outcome: Optional[Outcome]
    result: Optional[Any]
    stdout_dropped: int
    stderr_dropped: int
    updates: int

    @property
    def is_terminal(self) -> bool:
        return self.phase.is_terminal

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.completed_at is None:
            return None
        return self.completed_at - self.started_at

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "tool_call_id": self.tool_call_id,
            "name": self.name,
            "stdout": self.accumulated_stdout,
            "stderr": self.accumulated_stderr,
            "status": self.status,
            "phase": self.phase.value,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "outcome": self.outcome.value if self.outcome else None,
            "stdout_dropped": self.stdout_dropped,
            "stderr_dropped": self.stderr_dropped,
        }

    @classmethod
    def of(cls, state: ToolCallState) -> "ToolCallSnapshot":
        return cls(
            tool_call_id=state.tool_call_id,
            name=state.name,
            accumulated_stdout=state.accumulated_stdout,
            accumulated_stderr=state.accumulated_stderr,
            status=state.status,
            phase=state.phase,
            started_at=state.started_at,
            completed_at=state.completed_at,
            outcome=state.outcome,
            result=state.result,
            stdout_dropped=state.stdout_dropped,
            stderr_dropped=state.stderr_dropped,
            updates=state.updates,
        )


class ToolCallRegistry:
    """Holds accumulated state for active and recently completed tool calls.

    Lifecycle per call:
        PENDING -> RUNNING -> {COMPLETED | FAILED | CANCELLED}
    No transition leaves a terminal phase.

    Unknown ids are reported as warnings and ignored; progress for a call that
    already finished is logged as an ordering violation and dropped. Neither
    raises, so an upstream delivery bug cannot crash the stream.

    Thread safety:
        All operations hold a single lock. Calls touch disjoint state, so
        contention is brief.
    """

    def __init__(self, stream_cap: int = DEFAULT_STREAM_BUFFER_CAP):
        """Initialize the registry.

        Args:
            stream_cap: Characters of stdout/stderr kept per call (trailing window).
        """
        self._stream_cap = stream_cap
        self._calls: Dict[str, ToolCallState] = {}
        self._lock = threading.Lock()

    def __contains__(self, tool_call_id: str) -> bool:
        with self._lock:
            return tool_call_id in self._calls

    def __len__(self) -> int:
        with self._lock:
            return len(self._calls)

    def begin(self, tool_call_id: str, name: Optional[str] = None) -> ToolCallSnapshot:
        """Create state for a new tool call.

        Beginning an id that is already registered is a protocol warning; the
        existing state is left untouched.
        """
        with self._lock:
            existing = self._calls.get(tool_call_id)
            if existing is not None:
                logger.warning(f"begin: tool call '{tool_call_id}' already registered; ignoring")
                return ToolCallSnapshot.of(existing)
            state = ToolCallState(tool_call_id=tool_call_id, name=name)
            self._calls[tool_call_id] = state
            return ToolCallSnapshot.of(state)

    def mark_running(self, tool_call_id: str) -> bool:
        """Move a pending call to RUNNING.

        Returns:
            True if the call is now running.
        """
        with self._lock:
            state = self._lookup(tool_call_id, "mark_running")
            if state is None or state.phase.is_terminal:
                return False
            state.phase = ToolCallStatus.RUNNING
            return True

    def append_progress(self, tool_call_id: str, update: ProgressUpdate) -> bool:
        """Apply one progress update to a call's accumulated state.

        Returns:
            True if the update was applied, False if it was dropped.
        """
        with self._lock:
            state = self._lookup(tool_call_id, "append_progress")
            if state is None:
                return False
            if state.phase.is_terminal:
                self._violation(tool_call_id, f"{update.kind.value} progress after {state.phase.value}")
                return False

            if update.kind == ProgressKind.STATUS:
                state.status = update.content
            elif update.kind == ProgressKind.STDOUT:
                state.accumulated_stdout, dropped = self._append_window(state.accumulated_stdout, update.content)
                state.stdout_dropped += dropped
            else:
                state.accumulated_stderr, dropped = self._append_window(state.accumulated_stderr, update.content)
                state.stderr_dropped += dropped

            state.phase = ToolCallStatus.RUNNING
            state.updates += 1
            return True

    def complete(
        self,
        tool_call_id: str,
        outcome: Outcome,
        result: Optional[Any] = None,
    ) -> bool:
        """Mark a call terminal.

        Idempotent: a second call is ignored and changes neither
        completed_at nor outcome.

        Returns:
            True if this call moved the state to terminal.
        """
        with self._lock:
            state = self._lookup(tool_call_id, "complete")
            if state is None:
                return False
            if state.phase.is_terminal:
                logger.debug(f"complete: tool call '{tool_call_id}' already {state.phase.value}; ignoring")
                return False
            state.outcome = outcome
            state.result = result
            state.phase = ToolCallStatus.for_outcome(outcome)
            state.completed_at = time.time()
            return True

    def snapshot(self, tool_call_id: str) -> Optional[ToolCallSnapshot]:
        """Return an immutable copy of a call's state, or None if absent."""
        with self._lock:
            state = self._calls.get(tool_call_id)
            return ToolCallSnapshot.of(state) if state is not None else None

    get_snapshot = snapshot

    def evict(self, tool_call_id: str) -> bool:
        """Remove a call's state.

        Returns:
            True if the call was registered.
        """
        with self._lock:
            return self._calls.pop(tool_call_id, None) is not None

    def active_ids(self) -> List[str]:
        """Ids of calls that have not reached a terminal phase."""
        with self._lock:
            return [cid for cid, s in self._calls.items() if not s.phase.is_terminal]

    def snapshots(self) -> List[ToolCallSnapshot]:
        """Snapshots of every registered call, in registration order."""
        with self._lock:
            return [ToolCallSnapshot.of(s) for s in self._calls.values()]

    def log_lines(self, tool_call_id: str) -> List[str]:
        """Line view of a call's output for log panels.

        Stdout lines are listed first, then stderr lines prefixed with
        "[stderr] ". Interleaving between channels is not tracked.
        """
        snap = self.snapshot(tool_call_id)
        if snap is None:
            return []
        lines = snap.accumulated_stdout.splitlines()
        lines.extend(f"[stderr] {line}" for line in snap.accumulated_stderr.splitlines())
        return lines

    def _append_window(self, current: str, content: str) -> Tuple[str, int]:
        combined = current + content
        excess = len(combined) - self._stream_cap
        if excess > 0:
            return combined[excess:], excess
        return combined, 0

    def _lookup(self, tool_call_id: str, operation: str) -> Optional[ToolCallState]:
        state = self._calls.get(tool_call_id)
        if state is None:
            logger.warning(str(UnknownToolCallReference(tool_call_id, operation)))
        return state

    @staticmethod
    def _violation(tool_call_id: str, message: str) -> None:
        logger.error(f"Protocol ordering violation: {ProtocolOrderingViolation(tool_call_id, message)}")


__all__ = ['ToolCallState', 'ToolCallSnapshot', 'ToolCallRegistry']
