"""Streaming tool-execution progress protocol.

Runs external commands on behalf of tool calls and multiplexes their live
output with the conversation stream into one ordered event sequence.

Key components:
- CommandExecutor: Spawns a process and reports output chunks as they arrive
- ProgressThrottler: Coalesces raw chunks into rate-limited updates
- ToolCallRegistry: Per-call accumulated state, queried via snapshots
- CancelToken / TerminationController: Cancellation with timed escalation
- StreamMultiplexer: Single emission point assigning sequence numbers
- ToolExecutionSession: Wires the above together for concurrent tool calls
"""

from .protocol import (
    ProgressKind,
    Outcome,
    ToolCallStatus,
    ProgressUpdate,
    ExecutionResult,
    ProgressCallback,
    ToolStreamError,
    SpawnFailure,
    UnknownToolCallReference,
    ProtocolOrderingViolation,
)
from .config import StreamingConfig
from .cancellation import (
    CancelToken,
    TerminationState,
    TerminationController,
)
from .executor import CommandExecutor
from .throttle import ProgressThrottler
from .registry import ToolCallState, ToolCallSnapshot, ToolCallRegistry
from .events import (
    StreamEventType,
    StreamEvent,
    TextDeltaEvent,
    ToolCallStartEvent,
    ToolCallArgDeltaEvent,
    ToolCallArgFinishEvent,
    ToolProgressEvent,
    ToolResultEvent,
    serialize_event,
    deserialize_event,
)
from .multiplexer import StreamMultiplexer, EventConsumer
from .session import ToolExecutionSession

__version__ = "0.1.0"

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
    'StreamingConfig',
    'CancelToken',
    'TerminationState',
    'TerminationController',
    'CommandExecutor',
    'ProgressThrottler',
    'ToolCallState',
    'ToolCallSnapshot',
    'ToolCallRegistry',
    'StreamEventType',
    'StreamEvent',
    'TextDeltaEvent',
    'ToolCallStartEvent',
    'ToolCallArgDeltaEvent',
    'ToolCallArgFinishEvent',
    'ToolProgressEvent',
    'ToolResultEvent',
    'serialize_event',
    'deserialize_event',
    'StreamMultiplexer',
    'EventConsumer',
    'ToolExecutionSession',
]
