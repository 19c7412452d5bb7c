"""Event protocol for the multiplexed conversation stream.

This module defines the events a consumer receives. Events are
JSON-serializable dataclasses forming a tagged union on `type`; every event
carries the `sequence` number the multiplexer assigned when it emitted it.

Event Flow:
    Conversation -> Consumer: text deltas
    Tool call argument streaming -> Consumer: start, arg deltas, arg finish
    Executor -> Consumer: progress, then exactly one result per call
"""

import json
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import Any, Dict, Optional, Type

from .protocol import Outcome, ProgressKind, ProgressUpdate


# =============================================================================
# Event Types
# =============================================================================

class StreamEventType(str, Enum):
    """All event types in the stream."""

    TEXT_DELTA = "text-delta"
    TOOL_CALL_START = "tool-call-start"
    TOOL_CALL_ARG_DELTA = "tool-call-arg-delta"
    TOOL_CALL_ARG_FINISH = "tool-call-arg-finish"
    TOOL_PROGRESS = "tool-progress"
    TOOL_RESULT = "tool-result"


# =============================================================================
# Base Event
# =============================================================================

@dataclass
class StreamEvent:
    """Base class for all stream events."""
    type: StreamEventType
    sequence: int = 0

    @property
    def tool_call_id(self) -> Optional[str]:
        """Tool call this event belongs to, None for conversation text."""
        return None

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        d = asdict(self)
        d['type'] = self.type.value
        return d

    def to_json(self) -> str:
        """Serialize to JSON string."""
        return json.dumps(self.to_dict())


# =============================================================================
# Variants
# =============================================================================

@dataclass
class TextDeltaEvent(StreamEvent):
    """Incremental text of the primary conversation stream."""
    type: StreamEventType = field(default=StreamEventType.TEXT_DELTA)
    delta: str = ""


@dataclass
class ToolCallStartEvent(StreamEvent):
    """A tool call began; precedes every other event for the call."""
    type: StreamEventType = field(default=StreamEventType.TOOL_CALL_START)
    tool_call_id: str = ""
    name: str = ""


@dataclass
class ToolCallArgDeltaEvent(StreamEvent):
    """A fragment of the tool call's arguments as the model streams them."""
    type: StreamEventType = field(default=StreamEventType.TOOL_CALL_ARG_DELTA)
    tool_call_id: str = ""
    delta: str = ""


@dataclass
class ToolCallArgFinishEvent(StreamEvent):
    """The tool call's arguments are complete."""
    type: StreamEventType = field(default=StreamEventType.TOOL_CALL_ARG_FINISH)
    tool_call_id: str = ""
    args: Dict[str, Any] = field(default_factory=dict)


@dataclass
class ToolProgressEvent(StreamEvent):
    """Incremental output of a running tool call."""
    type: StreamEventType = field(default=StreamEventType.TOOL_PROGRESS)
    tool_call_id: str = ""
    progress: Dict[str, Any] = field(default_factory=dict)
    # ^ {kind: "stdout"|"stderr"|"status", content: str, timestamp: float}

    @classmethod
    def from_update(cls, update: ProgressUpdate) -> "ToolProgressEvent":
        return cls(tool_call_id=update.tool_call_id, progress=update.to_dict())

    @property
    def kind(self) -> ProgressKind:
        return ProgressKind(self.progress.get("kind", "status"))

    @property
    def content(self) -> str:
        return self.progress.get("content", "")

    def to_update(self) -> ProgressUpdate:
        return ProgressUpdate.from_dict(self.tool_call_id, self.progress)


@dataclass
class ToolResultEvent(StreamEvent):
    """Terminal event of a tool call, emitted exactly once."""
    type: StreamEventType = field(default=StreamEventType.TOOL_RESULT)
    tool_call_id: str = ""
    result: Any = None
    outcome: str = Outcome.SUCCESS.value

    def __post_init__(self) -> None:
        if isinstance(self.outcome, Outcome):
            self.outcome = self.outcome.value


# =============================================================================
# Serialization Helpers
# =============================================================================

# Map of event type -> event class
_EVENT_CLASSES: Dict[str, Type[StreamEvent]] = {
    StreamEventType.TEXT_DELTA.value: TextDeltaEvent,
    StreamEventType.TOOL_CALL_START.value: ToolCallStartEvent,
    StreamEventType.TOOL_CALL_ARG_DELTA.value: ToolCallArgDeltaEvent,
    StreamEventType.TOOL_CALL_ARG_FINISH.value: ToolCallArgFinishEvent,
    StreamEventType.TOOL_PROGRESS.value: ToolProgressEvent,
    StreamEventType.TOOL_RESULT.value: ToolResultEvent,
}


def serialize_event(event: StreamEvent) -> str:
    """Serialize an event to JSON string."""
    return event.to_json()


def event_from_dict(data: Dict[str, Any]) -> StreamEvent:
    """Build an event object from its dictionary form.

    Raises:
        ValueError: If the event type is unknown.
    """
    event_type = data.get("type")
    if event_type not in _EVENT_CLASSES:
        raise ValueError(f"Unknown event type: {event_type}")

    event_class = _EVENT_CLASSES[event_type]
    data = dict(data)
    data["type"] = StreamEventType(event_type)

    # Remove unknown fields (forward compatibility)
    known_fields = {f.name for f in event_class.__dataclass_fields__.values()}
    filtered_data = {k: v for k, v in data.items() if k in known_fields}

    return event_class(**filtered_data)


def deserialize_event(json_str: str) -> StreamEvent:
    """Deserialize a JSON string to an event object.

    Raises:
        ValueError: If the event type is unknown.
        json.JSONDecodeError: If the JSON is invalid.
    """
    return event_from_dict(json.loads(json_str))


def create_event(event_type: StreamEventType, **kwargs) -> StreamEvent:
    """Factory function to create an event by type."""
    event_class = _EVENT_CLASSES.get(event_type.value)
    if not event_class:
        raise ValueError(f"Unknown event type: {event_type}")
    return event_class(**kwargs)


__all__ = [
    'StreamEventType',
    'StreamEvent',
    'TextDeltaEvent',
    'ToolCallStartEvent',
    'ToolCallArgDeltaEvent',
    'ToolCallArgFinishEvent',
    'ToolProgressEvent',
    'ToolResultEvent',
    'serialize_event',
    'event_from_dict',
    'deserialize_event',
    'create_event',
]
