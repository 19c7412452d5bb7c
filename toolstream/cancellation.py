"""Cooperative cancellation with timed escalation.

Two pieces work together:

- CancelToken: a thread-safe signal a caller triggers to request that a
  running tool call stop. It records *why* (external cancel or timeout).
- TerminationController: the two-phase protocol applied to a child process
  once the token fires: graceful signal, grace period, forced signal.

    RUNNING --terminate()--> TERMINATING --grace expired--> KILLING --> EXITED
       |                          |                                      ^
       +---- process exits -------+--------------------------------------+

Re-triggering after the process exited is a no-op.
"""

import asyncio
import logging
import os
import signal
import sys
import threading
from enum import Enum
from typing import Callable, List, Optional

from .protocol import Outcome
from .trace import trace

logger = logging.getLogger(__name__)


class CancelToken:
    """Thread-safe cancellation token for stopping a tool call.

    Supports:
    - Cancellation via cancel(), optionally marked as a timeout
    - Polling via is_cancelled
    - Callback registration via on_cancel()

    Thread Safety:
        All methods are thread-safe and can be called from any thread.
        Callbacks run on the thread that calls cancel().
    """

    def __init__(self):
        self._cancelled = False
        self._reason: Optional[Outcome] = None
        self._lock = threading.Lock()
        self._callbacks: List[Callable[[], None]] = []

    def cancel(self, reason: Outcome = Outcome.CANCELLED) -> None:
        """Request cancellation.

        Idempotent: only the first call has an effect and fixes the reason.

        Args:
            reason: Outcome.CANCELLED for external requests, Outcome.TIMEOUT
                when the cancellation is timeout-driven.
        """
        with self._lock:
            if self._cancelled:
                return
            self._cancelled = True
            self._reason = reason
            callbacks = list(self._callbacks)
            self._callbacks.clear()

        # Invoke callbacks outside lock to avoid deadlock
        for callback in callbacks:
            self._invoke(callback)

    @property
    def is_cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[Outcome]:
        """Why the token was cancelled, or None while not cancelled."""
        return self._reason

    def on_cancel(self, callback: Callable[[], None]) -> None:
        """Register a callback to be invoked when cancelled.

        If already cancelled, the callback is invoked immediately.
        """
        with self._lock:
            if not self._cancelled:
                self._callbacks.append(callback)
                return
        self._invoke(callback)

    def remove_callback(self, callback: Callable[[], None]) -> None:
        """Unregister a callback that has not fired yet."""
        with self._lock:
            if callback in self._callbacks:
                self._callbacks.remove(callback)

    @staticmethod
    def _invoke(callback: Callable[[], None]) -> None:
        try:
            callback()
        except Exception:
            logger.exception("Cancel callback failed")


class TerminationState(Enum):
    """State of the two-phase termination protocol."""
    RUNNING = "running"
    TERMINATING = "terminating"   # Graceful signal sent, grace timer running
    KILLING = "killing"           # Forced signal sent
    EXITED = "exited"


class TerminationController:
    """Applies graceful-then-forced termination to one asyncio child process.

    The process is expected to have been started in its own session on POSIX
    (start_new_session=True) so signals reach the whole process group.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        grace_period: float = 5.0,
        kill_delay: float = 2.0,
    ):
        """Initialize the controller.

        Args:
            process: The child process to control.
            grace_period: Seconds to wait after the graceful signal.
            kill_delay: Seconds to wait for exit after the forced signal.
        """
        self._process = process
        self._grace_period = grace_period
        self._kill_delay = kill_delay
        self._state = TerminationState.RUNNING
        self._lock = asyncio.Lock()

    @property
    def state(self) -> TerminationState:
        if self._state != TerminationState.EXITED and self._process.returncode is not None:
            self._state = TerminationState.EXITED
        return self._state

    async def terminate(self) -> TerminationState:
        """Run the termination protocol and return once exit is confirmed.

        Bounded by grace_period + kill_delay. Concurrent callers share the
        same run; calls after exit return immediately.

        Returns:
            The final state (EXITED, or KILLING if the process outlived the
            kill delay).
        """
        async with self._lock:
            if self.state == TerminationState.EXITED:
                return self._state
            if self._state != TerminationState.RUNNING:
                # A previous run gave up waiting; one more bounded wait
                await self._wait_exit(self._kill_delay)
                return self.state

            pid = self._process.pid
            self._state = TerminationState.TERMINATING
            trace("cancel", f"pid={pid}: sending graceful termination")
            self._send(force=False)
            if await self._wait_exit(self._grace_period):
                return self.state

            self._state = TerminationState.KILLING
            logger.warning(f"Process {pid} ignored graceful termination for {self._grace_period}s; killing")
            trace("cancel", f"pid={pid}: grace period expired, sending forced termination")
            self._send(force=True)
            if not await self._wait_exit(self._kill_delay):
                logger.error(f"Process {pid} still alive {self._kill_delay}s after kill")
            return self.state

    async def _wait_exit(self, timeout: float) -> bool:
        try:
            await asyncio.wait_for(self._process.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return False
        self._state = TerminationState.EXITED
        return True

    def _send(self, force: bool) -> None:
        """Signal the process group (POSIX) or the process (Windows)."""
        if self._process.returncode is not None:
            return
        try:
            if sys.platform != "win32":
                sig = signal.SIGKILL if force else signal.SIGTERM
                pid = self._process.pid
                if os.getpgid(pid) == pid:
                    os.killpg(pid, sig)
                else:
                    self._process.send_signal(sig)
            elif force:
                self._process.kill()
            else:
                self._process.terminate()
        except ProcessLookupError:
            # Exited between the returncode check and the signal
            pass


__all__ = [
    'CancelToken',
    'TerminationState',
    'TerminationController',
]
