"""Tests for stream event serialization."""

import json

import pytest

from toolstream.events import (
    StreamEventType,
    TextDeltaEvent,
    ToolCallArgFinishEvent,
    ToolCallStartEvent,
    ToolProgressEvent,
    ToolResultEvent,
    create_event,
    deserialize_event,
    event_from_dict,
    serialize_event,
)
from toolstream.protocol import ExecutionResult, Outcome, ProgressKind, ProgressUpdate


class TestEventShapes:
    """Tests for the wire form of each event."""

    def test_type_strings(self):
        assert [t.value for t in StreamEventType] == [
            "text-delta",
            "tool-call-start",
            "tool-call-arg-delta",
            "tool-call-arg-finish",
            "tool-progress",
            "tool-result",
        ]

    def test_text_delta_has_no_tool_call(self):
        event = TextDeltaEvent(delta="Hello")
        assert event.tool_call_id is None
        assert event.to_dict() == {"type": "text-delta", "sequence": 0, "delta": "Hello"}

    def test_progress_event_from_update(self):
        update = ProgressUpdate("call_1", ProgressKind.STDERR, "warn", timestamp=12.5)
        event = ToolProgressEvent.from_update(update)

        assert event.to_dict() == {
            "type": "tool-progress",
            "sequence": 0,
            "tool_call_id": "call_1",
            "progress": {"kind": "stderr", "content": "warn", "timestamp": 12.5},
        }
        assert event.kind == ProgressKind.STDERR
        assert event.content == "warn"
        assert event.to_update() == update

    def test_result_event_normalizes_outcome(self):
        result = ExecutionResult(0, "ok", "", 12.3456, Outcome.SUCCESS)
        event = ToolResultEvent(tool_call_id="call_1", result=result.to_dict(), outcome=Outcome.SUCCESS)

        d = json.loads(event.to_json())
        assert d["outcome"] == "success"
        assert d["result"]["stdout"] == "ok"
        assert d["result"]["duration_ms"] == 12.346
        assert "truncated" not in d["result"]


class TestSerialization:
    """Tests for JSON round trips and helpers."""

    def test_deserialize_restores_class_and_sequence(self):
        event = ToolCallArgFinishEvent(tool_call_id="call_1", args={"command": "ls"}, sequence=7)

        restored = deserialize_event(serialize_event(event))

        assert isinstance(restored, ToolCallArgFinishEvent)
        assert restored == event

    def test_unknown_fields_ignored(self):
        event = event_from_dict({"type": "tool-call-start", "tool_call_id": "c", "name": "cli", "extra": 1})
        assert event == ToolCallStartEvent(tool_call_id="c", name="cli")

    def test_unknown_type_rejected(self):
        with pytest.raises(ValueError, match="Unknown event type"):
            event_from_dict({"type": "tool-explode"})

    def test_create_event(self):
        event = create_event(StreamEventType.TOOL_CALL_START, tool_call_id="c", name="cli")
        assert isinstance(event, ToolCallStartEvent)
        assert event.type == StreamEventType.TOOL_CALL_START
