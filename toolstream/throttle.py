"""Rate-limited delivery of progress updates.

The executor reports every chunk it reads. The throttler coalesces those raw
chunks per channel and forwards one update when either the time window has
elapsed since the channel's last emission or enough content is pending,
whichever comes first. Throttling changes timing and batching only: every
character pushed reaches the sink, at the latest on flush().
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from .config import (
    DEFAULT_STREAM_BUFFER_CAP,
    DEFAULT_THROTTLE_INTERVAL_MS,
    DEFAULT_THROTTLE_MAX_BYTES,
)
from .protocol import ProgressCallback, ProgressKind, ProgressUpdate

logger = logging.getLogger(__name__)


@dataclass
class _ChannelBuffer:
    """Unflushed content for one output channel."""
    last_emit: float
    parts: List[str] = field(default_factory=list)
    size: int = 0
    tool_call_id: str = ""
    first_timestamp: Optional[float] = None
    timer: Optional[asyncio.TimerHandle] = None


class ProgressThrottler:
    """Coalesces raw progress chunks into rate-limited updates.

    The time window for each channel starts when the throttler is created,
    so a command that finishes inside the first window produces no
    intermediate updates, only the final flush.

    Usage:
        throttler = ProgressThrottler(sink=multiplexer_progress)
        result = await executor.execute(cmd, on_progress=throttler)
        throttler.close()  # flush before emitting the terminal result
    """

    def __init__(
        self,
        sink: ProgressCallback,
        interval: float = DEFAULT_THROTTLE_INTERVAL_MS / 1000.0,
        max_bytes: int = DEFAULT_THROTTLE_MAX_BYTES,
        stream_cap: int = DEFAULT_STREAM_BUFFER_CAP,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize the throttler.

        Args:
            sink: Receives coalesced updates.
            interval: Seconds between emissions per channel.
            max_bytes: Pending UTF-8 size that forces an emission.
            stream_cap: Maximum characters in one emission; larger batches
                keep only their trailing window.
            clock: Monotonic clock, injectable for tests.
        """
        self._sink = sink
        self._interval = interval
        self._max_bytes = max_bytes
        self._stream_cap = stream_cap
        self._clock = clock
        self._closed = False
        self._emitted = 0
        start = clock()
        self._channels: Dict[ProgressKind, _ChannelBuffer] = {
            ProgressKind.STDOUT: _ChannelBuffer(last_emit=start),
            ProgressKind.STDERR: _ChannelBuffer(last_emit=start),
        }

    def __call__(self, update: ProgressUpdate) -> None:
        self.push(update)

    @property
    def emitted_count(self) -> int:
        """Number of updates forwarded to the sink so far."""
        return self._emitted

    @property
    def has_pending(self) -> bool:
        return any(buf.parts for buf in self._channels.values())

    def push(self, update: ProgressUpdate) -> None:
        """Accept one raw update."""
        if self._closed:
            logger.warning(f"Progress for {update.tool_call_id} pushed after throttler close; forwarding unthrottled")
            self._forward(update)
            return

        if update.kind == ProgressKind.STATUS:
            # Status lines are not coalesced, but must not overtake output
            # that was produced before them
            self.flush()
            self._forward(update)
            return

        if not update.content:
            return

        buf = self._channels[update.kind]
        buf.parts.append(update.content)
        buf.size += len(update.content.encode("utf-8"))
        buf.tool_call_id = update.tool_call_id
        if buf.first_timestamp is None:
            buf.first_timestamp = update.timestamp

        now = self._clock()
        elapsed = now - buf.last_emit
        if buf.size >= self._max_bytes or elapsed >= self._interval:
            self._flush_channel(update.kind)
        else:
            self._schedule(update.kind, self._interval - elapsed)

    def flush(self) -> None:
        """Emit all pending content, oldest channel first."""
        pending = [
            (buf.first_timestamp or 0.0, kind)
            for kind, buf in self._channels.items()
            if buf.parts
        ]
        for _, kind in sorted(pending, key=lambda p: p[0]):
            self._flush_channel(kind)

    def close(self) -> None:
        """Flush remaining content and stop all timers."""
        self.flush()
        for buf in self._channels.values():
            self._cancel_timer(buf)
        self._closed = True

    def _schedule(self, kind: ProgressKind, delay: float) -> None:
        buf = self._channels[kind]
        if buf.timer is not None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: pending content waits for the next push or flush()
            return
        buf.timer = loop.call_later(delay, self._on_timer, kind)

    def _on_timer(self, kind: ProgressKind) -> None:
        self._channels[kind].timer = None
        if not self._closed:
            self._flush_channel(kind)

    def _cancel_timer(self, buf: _ChannelBuffer) -> None:
        if buf.timer is not None:
            buf.timer.cancel()
            buf.timer = None

    def _flush_channel(self, kind: ProgressKind) -> None:
        buf = self._channels[kind]
        self._cancel_timer(buf)
        if not buf.parts:
            return
        content = "".join(buf.parts)
        timestamp = buf.first_timestamp if buf.first_timestamp is not None else time.time()
        buf.parts = []
        buf.size = 0
        buf.first_timestamp = None
        buf.last_emit = self._clock()

        if len(content) > self._stream_cap:
            logger.debug(f"{kind.value} batch of {len(content)} chars exceeds stream cap; keeping tail")
            content = content[-self._stream_cap:]

        self._forward(ProgressUpdate(
            tool_call_id=buf.tool_call_id,
            kind=kind,
            content=content,
            timestamp=timestamp,
        ))

    def _forward(self, update: ProgressUpdate) -> None:
        self._emitted += 1
        self._sink(update)


__all__ = ['ProgressThrottler']
