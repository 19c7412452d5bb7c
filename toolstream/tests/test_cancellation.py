"""Tests for CancelToken and TerminationController."""

import asyncio
import signal
import sys
import time
import unittest
from unittest.mock import MagicMock

import pytest

from toolstream.cancellation import (
    CancelToken,
    TerminationController,
    TerminationState,
)
from toolstream.protocol import Outcome

from .helpers import posix_only


IGNORE_SIGTERM = (
    "import signal, sys, time\n"
    "signal.signal(signal.SIGTERM, signal.SIG_IGN)\n"
    "sys.stdout.write('ready\\n'); sys.stdout.flush()\n"
    "time.sleep(30)\n"
)

EXIT_ON_SIGTERM = (
    "import sys, time\n"
    "sys.stdout.write('ready\\n'); sys.stdout.flush()\n"
    "time.sleep(30)\n"
)


class TestCancelToken(unittest.TestCase):
    """Tests for CancelToken class."""

    def test_initial_state_not_cancelled(self):
        """New token is not cancelled."""
        token = CancelToken()
        self.assertFalse(token.is_cancelled)
        self.assertIsNone(token.reason)

    def test_cancel_sets_reason(self):
        """cancel() records CANCELLED by default."""
        token = CancelToken()
        token.cancel()
        self.assertTrue(token.is_cancelled)
        self.assertEqual(token.reason, Outcome.CANCELLED)

    def test_timeout_reason(self):
        """A timeout-driven cancel records TIMEOUT."""
        token = CancelToken()
        token.cancel(Outcome.TIMEOUT)
        self.assertEqual(token.reason, Outcome.TIMEOUT)

    def test_first_reason_wins(self):
        """Only the first cancel() fixes the reason."""
        token = CancelToken()
        token.cancel(Outcome.TIMEOUT)
        token.cancel(Outcome.CANCELLED)
        self.assertEqual(token.reason, Outcome.TIMEOUT)

    def test_on_cancel_callback_called_once(self):
        """Callbacks fire once even if cancel() is repeated."""
        token = CancelToken()
        callback = MagicMock()
        token.on_cancel(callback)
        callback.assert_not_called()

        token.cancel()
        token.cancel()
        callback.assert_called_once()

    def test_on_cancel_immediate_when_already_cancelled(self):
        token = CancelToken()
        token.cancel()
        callback = MagicMock()
        token.on_cancel(callback)
        callback.assert_called_once()

    def test_removed_callback_not_called(self):
        token = CancelToken()
        callback = MagicMock()
        token.on_cancel(callback)
        token.remove_callback(callback)
        token.cancel()
        callback.assert_not_called()

    def test_failing_callback_does_not_block_others(self):
        """A raising callback is logged; later callbacks still run."""
        token = CancelToken()
        bad = MagicMock(side_effect=RuntimeError("boom"))
        good = MagicMock()
        token.on_cancel(bad)
        token.on_cancel(good)

        with self.assertLogs("toolstream.cancellation", level="ERROR"):
            token.cancel()

        good.assert_called_once()

    def test_public_names_resolve(self):
        """Every exported name exists, and only the token and controller are exported."""
        import toolstream
        from toolstream import cancellation

        self.assertEqual(
            set(cancellation.__all__),
            {"CancelToken", "TerminationState", "TerminationController"},
        )
        for name in toolstream.__all__:
            self.assertTrue(hasattr(toolstream, name), name)


async def _spawn_ready(code: str) -> asyncio.subprocess.Process:
    """Start a Python child in its own session and wait for it to be ready."""
    proc = await asyncio.create_subprocess_exec(
        sys.executable, "-c", code,
        stdout=asyncio.subprocess.PIPE,
        start_new_session=True,
    )
    line = await asyncio.wait_for(proc.stdout.readline(), timeout=10.0)
    assert line.strip() == b"ready"
    return proc


@posix_only
class TestTerminationController:
    """Tests for the two-phase termination protocol."""

    @pytest.mark.asyncio
    async def test_graceful_signal_is_enough(self):
        """A process that honours SIGTERM exits during the grace period."""
        proc = await _spawn_ready(EXIT_ON_SIGTERM)
        controller = TerminationController(proc, grace_period=5.0, kill_delay=1.0)
        assert controller.state == TerminationState.RUNNING

        start = time.monotonic()
        state = await controller.terminate()

        assert state == TerminationState.EXITED
        assert proc.returncode == -signal.SIGTERM
        assert time.monotonic() - start < 5.0

    @pytest.mark.asyncio
    async def test_escalates_to_kill_after_grace_period(self):
        """A process ignoring SIGTERM is killed once the grace period expires."""
        proc = await _spawn_ready(IGNORE_SIGTERM)
        controller = TerminationController(proc, grace_period=0.3, kill_delay=2.0)

        start = time.monotonic()
        state = await controller.terminate()
        elapsed = time.monotonic() - start

        assert state == TerminationState.EXITED
        assert proc.returncode == -signal.SIGKILL
        assert elapsed >= 0.3
        assert elapsed < 0.3 + 2.0 + 0.5

    @pytest.mark.asyncio
    async def test_terminate_after_exit_is_noop(self):
        """Re-triggering after exit returns immediately without signalling."""
        proc = await asyncio.create_subprocess_exec(sys.executable, "-c", "pass", start_new_session=True)
        await proc.wait()
        controller = TerminationController(proc, grace_period=5.0, kill_delay=5.0)

        start = time.monotonic()
        assert await controller.terminate() == TerminationState.EXITED
        assert await controller.terminate() == TerminationState.EXITED
        assert time.monotonic() - start < 1.0

    @pytest.mark.asyncio
    async def test_concurrent_terminate_calls_share_one_run(self):
        proc = await _spawn_ready(EXIT_ON_SIGTERM)
        controller = TerminationController(proc, grace_period=5.0, kill_delay=1.0)

        states = await asyncio.gather(controller.terminate(), controller.terminate())

        assert states == [TerminationState.EXITED, TerminationState.EXITED]
