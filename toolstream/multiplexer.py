"""Stream multiplexer: one ordered event sequence from many producers.

Producers (the conversation text stream, each tool call's argument stream and
each tool call's progress stream) write independently; every write goes
through a single emission point that validates the per-call lifecycle,
updates the registry, assigns the next sequence number and delivers the
event to the consumer.
"""

import asyncio
import logging
import threading
from collections import deque
from contextlib import suppress
from enum import Enum
from typing import Any, AsyncIterator, Callable, Deque, Dict, List, Optional, Set

from .events import (
    StreamEvent,
    TextDeltaEvent,
    ToolCallArgDeltaEvent,
    ToolCallArgFinishEvent,
    ToolCallStartEvent,
    ToolProgressEvent,
    ToolResultEvent,
)
from .protocol import Outcome, ProgressUpdate, ProtocolOrderingViolation
from .registry import ToolCallRegistry

logger = logging.getLogger(__name__)


# Consumer callback: receives each event in sequence order
EventConsumer = Callable[[StreamEvent], None]

DEFAULT_REPLAY_LIMIT = 10_000

_CLOSED = object()


class _CallPhase(Enum):
    """Multiplexer-side view of a tool call's argument/result lifecycle."""
    STARTED = "started"           # tool-call-start emitted, args streaming
    ARGS_FINISHED = "args_finished"
    RESULT = "result"             # terminal


class StreamMultiplexer:
    """Serializes events from concurrent producers into one sequence.

    Ordering:
        Sequence numbers are assigned at emission, under the emission lock,
        so the sequence is totally ordered even when producers run on
        different threads or tasks.

    Lifecycle enforcement (per tool call):
        tool-call-start must come first and only once per id for the whole
        turn; argument events stop at arg-finish; progress is accepted until
        the result; exactly one tool-result. Violations are logged and the
        offending event is discarded.

    Disconnects:
        After disconnect() (or a consumer raising), events are still
        processed and retained for replay, but not delivered. reconnect()
        resumes delivery after the consumer's last seen sequence number.
    """

    def __init__(
        self,
        registry: ToolCallRegistry,
        consumer: Optional[EventConsumer] = None,
        replay_limit: int = DEFAULT_REPLAY_LIMIT,
        evict_on_ack: bool = True,
    ):
        """Initialize the multiplexer.

        Args:
            registry: State store updated as events are emitted.
            consumer: Callback receiving every emitted event.
            replay_limit: Number of recent events retained for reconnects.
            evict_on_ack: Evict a call from the registry once the consumer
                acknowledges its tool-result.
        """
        self._registry = registry
        self._consumer = consumer
        self._evict_on_ack = evict_on_ack
        self._lock = threading.RLock()
        self._sequence = 0
        self._acked = 0
        self._calls: Dict[str, _CallPhase] = {}
        self._seen_ids: Set[str] = set()
        self._result_seq: Dict[str, int] = {}
        self._replay: Deque[StreamEvent] = deque(maxlen=replay_limit)
        self._discarded = 0
        self._closer: Optional[Callable[[], None]] = None

    # ==================== Properties ====================

    @property
    def registry(self) -> ToolCallRegistry:
        return self._registry

    @property
    def last_sequence(self) -> int:
        """Sequence number of the most recently emitted event (0 if none)."""
        return self._sequence

    @property
    def acknowledged(self) -> int:
        return self._acked

    @property
    def connected(self) -> bool:
        return self._consumer is not None

    @property
    def discarded_count(self) -> int:
        """Events dropped because they violated the call lifecycle."""
        return self._discarded

    # ==================== Producer Interface ====================

    def text_delta(self, delta: str) -> Optional[StreamEvent]:
        """Emit a fragment of the primary conversation text."""
        with self._lock:
            return self._emit(TextDeltaEvent(delta=delta))

    def tool_call_start(self, tool_call_id: str, name: str) -> Optional[StreamEvent]:
        """Emit the start of a tool call and register its state."""
        with self._lock:
            if tool_call_id in self._seen_ids:
                return self._discard(tool_call_id, "tool-call-start for an id already used in this turn")
            self._seen_ids.add(tool_call_id)
            self._calls[tool_call_id] = _CallPhase.STARTED
            self._registry.begin(tool_call_id, name)
            return self._emit(ToolCallStartEvent(tool_call_id=tool_call_id, name=name))

    def tool_call_arg_delta(self, tool_call_id: str, delta: str) -> Optional[StreamEvent]:
        """Emit a fragment of a tool call's streamed arguments."""
        with self._lock:
            phase = self._calls.get(tool_call_id)
            if phase != _CallPhase.STARTED:
                return self._discard(tool_call_id, f"arg delta in phase {self._phase_name(phase)}")
            return self._emit(ToolCallArgDeltaEvent(tool_call_id=tool_call_id, delta=delta))

    def tool_call_arg_finish(self, tool_call_id: str, args: Dict[str, Any]) -> Optional[StreamEvent]:
        """Emit the completed arguments of a tool call."""
        with self._lock:
            phase = self._calls.get(tool_call_id)
            if phase != _CallPhase.STARTED:
                return self._discard(tool_call_id, f"arg finish in phase {self._phase_name(phase)}")
            self._calls[tool_call_id] = _CallPhase.ARGS_FINISHED
            return self._emit(ToolCallArgFinishEvent(tool_call_id=tool_call_id, args=dict(args)))

    def tool_progress(self, tool_call_id: str, update: ProgressUpdate) -> Optional[StreamEvent]:
        """Emit one progress update of a running tool call."""
        with self._lock:
            phase = self._calls.get(tool_call_id)
            if phase is None or phase == _CallPhase.RESULT:
                return self._discard(tool_call_id, f"progress in phase {self._phase_name(phase)}")
            if not self._registry.append_progress(tool_call_id, update):
                # Registry already logged why
                self._discarded += 1
                return None
            return self._emit(ToolProgressEvent.from_update(update))

    def progress_sink(self, tool_call_id: str) -> Callable[[ProgressUpdate], None]:
        """Callback that routes updates for one call into tool_progress()."""
        def sink(update: ProgressUpdate) -> None:
            self.tool_progress(tool_call_id, update)
        return sink

    def tool_result(
        self,
        tool_call_id: str,
        result: Any,
        outcome: Outcome,
    ) -> Optional[StreamEvent]:
        """Emit the terminal result of a tool call (once per call)."""
        with self._lock:
            phase = self._calls.get(tool_call_id)
            if phase is None or phase == _CallPhase.RESULT:
                return self._discard(tool_call_id, f"result in phase {self._phase_name(phase)}")
            self._calls[tool_call_id] = _CallPhase.RESULT
            self._registry.complete(tool_call_id, outcome, result)
            # Recorded before delivery so an ack from inside the consumer evicts
            self._result_seq[tool_call_id] = self._sequence + 1
            return self._emit(ToolResultEvent(tool_call_id=tool_call_id, result=result, outcome=outcome))

    def has_result(self, tool_call_id: str) -> bool:
        with self._lock:
            return self._calls.get(tool_call_id) == _CallPhase.RESULT

    def pending_calls(self) -> List[str]:
        """Ids started but still waiting for their tool-result."""
        with self._lock:
            return [cid for cid, phase in self._calls.items() if phase != _CallPhase.RESULT]

    # ==================== Consumer Interface ====================

    def acknowledge(self, sequence: int) -> None:
        """Record that the consumer processed every event up to `sequence`.

        With evict_on_ack, calls whose tool-result is covered are evicted
        from the registry.
        """
        with self._lock:
            if sequence <= self._acked:
                return
            self._acked = min(sequence, self._sequence)
            if not self._evict_on_ack:
                return
            done = [cid for cid, seq in self._result_seq.items() if seq <= self._acked]
            for cid in done:
                del self._result_seq[cid]
                del self._calls[cid]
                self._registry.evict(cid)

    def disconnect(self) -> None:
        """Stop delivery; producers keep draining."""
        with self._lock:
            if self._consumer is not None:
                logger.info(f"Consumer disconnected at sequence {self._sequence}")
            self._consumer = None

    def reconnect(self, consumer: EventConsumer, last_sequence: Optional[int] = None) -> bool:
        """Attach a consumer and replay the events it missed.

        Args:
            consumer: The new consumer.
            last_sequence: Last sequence the consumer saw. Defaults to the
                last acknowledged sequence.

        Returns:
            True if every missed event was replayed. False if some were no
            longer retained; the consumer is attached anyway and should
            rebuild tool call state from registry snapshots.
        """
        with self._lock:
            if last_sequence is None:
                last_sequence = self._acked
            oldest = self._replay[0].sequence if self._replay else self._sequence + 1
            complete = last_sequence + 1 >= oldest
            if not complete:
                logger.warning(
                    f"Reconnect from sequence {last_sequence}: events before {oldest} no longer retained"
                )
            self._consumer = consumer
            for event in list(self._replay):
                if event.sequence > last_sequence:
                    if not self._deliver(event):
                        return False
            return complete

    def events_since(self, sequence: int) -> List[StreamEvent]:
        """Retained events with a sequence number greater than `sequence`."""
        with self._lock:
            return [e for e in self._replay if e.sequence > sequence]

    async def events(self) -> AsyncIterator[StreamEvent]:
        """Consume the stream as an async iterator on the running loop.

        Attaches a queue-backed consumer; iteration ends after close().
        Events emitted from other threads are handed over thread-safely.
        """
        loop = asyncio.get_running_loop()
        queue: asyncio.Queue = asyncio.Queue()

        def enqueue(event: Any) -> None:
            try:
                running = asyncio.get_running_loop()
            except RuntimeError:
                running = None
            if running is loop:
                queue.put_nowait(event)
            else:
                loop.call_soon_threadsafe(queue.put_nowait, event)

        with self._lock:
            self._consumer = enqueue
            self._closer = lambda: enqueue(_CLOSED)
        try:
            while True:
                event = await queue.get()
                if event is _CLOSED:
                    break
                yield event
        finally:
            with self._lock:
                if self._consumer is enqueue:
                    self._consumer = None
                self._closer = None

    def close(self) -> None:
        """End an active events() iteration."""
        with self._lock:
            closer = self._closer
        if closer is not None:
            with suppress(RuntimeError):
                closer()

    # ==================== Internals ====================

    def _emit(self, event: StreamEvent) -> StreamEvent:
        """Single emission point. Caller holds the lock."""
        self._sequence += 1
        event.sequence = self._sequence
        self._replay.append(event)
        self._deliver(event)
        return event

    def _deliver(self, event: StreamEvent) -> bool:
        consumer = self._consumer
        if consumer is None:
            return False
        try:
            consumer(event)
            return True
        except Exception:
            logger.exception(f"Consumer failed on event {event.sequence}; treating as disconnect")
            self._consumer = None
            return False

    def _discard(self, tool_call_id: str, message: str) -> Optional[StreamEvent]:
        self._discarded += 1
        logger.error(f"Protocol ordering violation: {ProtocolOrderingViolation(tool_call_id, message)}")
        return None

    @staticmethod
    def _phase_name(phase: Optional[_CallPhase]) -> str:
        return phase.value if phase is not None else "not-started"


__all__ = ['StreamMultiplexer', 'EventConsumer', 'DEFAULT_REPLAY_LIMIT']
