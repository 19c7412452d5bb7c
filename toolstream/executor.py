"""Command executor with live progress capture.

Spawns one external process per tool invocation, reads stdout/stderr with
non-blocking asyncio pipes, reports each chunk to a progress callback as it
arrives, and resolves with an ExecutionResult once the process exits, times
out or is cancelled.
"""

import asyncio
import codecs
import logging
import os
import re
import shlex
import shutil
import sys
import time
from contextlib import suppress
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional, Tuple, Union

from .cancellation import CancelToken, TerminationController
from .config import StreamingConfig
from .protocol import (
    ExecutionResult,
    Outcome,
    ProgressCallback,
    ProgressKind,
    ProgressUpdate,
    SpawnFailure,
)
from .trace import trace

logger = logging.getLogger(__name__)


# Bytes requested per pipe read; reads return as soon as any data is available
READ_CHUNK_SIZE = 64 * 1024

# Bound on waiting for pipes to reach EOF after the process exited. A
# backgrounded grandchild can hold a pipe open indefinitely.
PIPE_DRAIN_TIMEOUT = 1.0

# Leading bytes inspected by the binary heuristic
BINARY_SAMPLE_SIZE = 8 * 1024

# Control bytes that still count as text (tab, LF, FF, CR, BS, ESC)
_TEXT_CONTROL_BYTES = frozenset(b"\t\n\f\r\b\x1b")

# Shell metacharacters that require shell interpretation
SHELL_METACHAR_PATTERN = re.compile(
    r'[|<>]'           # Pipes and redirections
    r'|&&|\|\|'        # Command chaining (AND/OR)
    r'|;'              # Command separator
    r'|\$\('           # Command substitution $(...)
    r'|`'              # Backtick command substitution
    r'|&\s*$'          # Background execution (& at end)
)


def requires_shell(command: str) -> bool:
    """Check if a command contains shell metacharacters."""
    return bool(SHELL_METACHAR_PATTERN.search(command))


def incomplete_utf8_tail(data: Union[bytes, bytearray]) -> int:
    """Number of trailing bytes that form an unfinished UTF-8 character."""
    for back in range(1, min(4, len(data)) + 1):
        byte = data[-back]
        if byte & 0xC0 == 0x80:
            continue  # continuation byte
        if byte >= 0xF0:
            needed = 4
        elif byte >= 0xE0:
            needed = 3
        elif byte >= 0xC0:
            needed = 2
        else:
            needed = 1
        return back if back < needed else 0
    return 0


def is_binary_chunk(data: bytes, threshold: float) -> bool:
    """Heuristically decide whether a chunk is binary rather than text.

    A NUL byte is always binary. Otherwise the chunk is binary when the ratio
    of non-printable control bytes exceeds the threshold. Bytes >= 0x80 are
    treated as text so UTF-8 output is not misclassified.
    """
    sample = data[:BINARY_SAMPLE_SIZE]
    if not sample:
        return False
    if b"\x00" in sample:
        return True
    nonprintable = sum(
        1 for b in sample
        if (b < 0x20 and b not in _TEXT_CONTROL_BYTES) or b == 0x7f
    )
    return nonprintable / len(sample) > threshold


@dataclass
class _ChannelCapture:
    """Per-channel accumulation state for one execution."""
    kind: ProgressKind
    data: bytearray = field(default_factory=bytearray)
    truncated: bool = False
    binary: bool = False
    decoder: codecs.IncrementalDecoder = field(
        default_factory=lambda: codecs.getincrementaldecoder("utf-8")(errors="replace")
    )

    def text(self) -> str:
        return bytes(self.data).decode("utf-8", errors="replace")


_DONE = object()


class CommandExecutor:
    """Runs external commands and streams their output.

    Each call to execute() owns its process handle and buffers; concurrent
    executions on the same executor never share state.

    Configuration (via StreamingConfig):
        max_buffer_bytes: Per-channel cap on the final result.
        default_timeout_ms: Timeout used when the caller passes none.
        grace_period_ms / kill_delay_ms: Termination escalation bounds.
        binary_threshold: Non-printable ratio that marks a channel binary.
        extra_paths: Additional PATH entries for executable resolution.
    """

    def __init__(self, config: Optional[StreamingConfig] = None):
        self._config = config or StreamingConfig()

    @property
    def config(self) -> StreamingConfig:
        return self._config

    def _prepare(
        self,
        command: str,
        args: Optional[List[str]],
        env: Optional[Dict[str, str]],
    ) -> Tuple[Union[str, List[str]], bool, Dict[str, str]]:
        """Resolve the command line and environment.

        Returns:
            (command string or argv, use_shell, environment)

        Raises:
            SpawnFailure: If the command is empty or the executable is not on PATH.
        """
        if not command or not command.strip():
            raise SpawnFailure("command must be provided")

        proc_env = dict(os.environ)
        if env:
            proc_env.update(env)
        if self._config.extra_paths:
            proc_env['PATH'] = os.pathsep.join(
                [proc_env.get('PATH', '')] + list(self._config.extra_paths)
            )

        if not args and requires_shell(command):
            return command, True, proc_env

        argv = [command] + list(args) if args else shlex.split(command)
        # Normalize a single string with spaces passed as the executable
        if len(argv) == 1 and ' ' in argv[0]:
            argv = shlex.split(argv[0])

        exe = argv[0]
        resolved = shutil.which(exe, path=proc_env.get('PATH'))
        if not resolved:
            raise SpawnFailure(f"executable '{exe}' not found in PATH")
        argv[0] = resolved
        return argv, False, proc_env

    async def _spawn(
        self,
        cmd: Union[str, List[str]],
        use_shell: bool,
        cwd: Optional[str],
        env: Dict[str, str],
    ) -> asyncio.subprocess.Process:
        kwargs = dict(
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
            cwd=cwd,
            env=env,
        )
        if sys.platform != "win32":
            # Own process group, so termination reaches shell children too
            kwargs["start_new_session"] = True
        if use_shell:
            return await asyncio.create_subprocess_shell(cmd, **kwargs)
        return await asyncio.create_subprocess_exec(*cmd, **kwargs)

    async def execute(
        self,
        command: str,
        *,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        max_buffer: Optional[int] = None,
        on_progress: Optional[ProgressCallback] = None,
        cancel_token: Optional[CancelToken] = None,
        env: Optional[Dict[str, str]] = None,
        tool_call_id: str = "",
    ) -> ExecutionResult:
        """Execute one command and capture its output.

        Args:
            command: Full command string, or the executable when args is given.
            args: Optional argument list (disables shell detection).
            cwd: Working directory for the process.
            timeout: Seconds before the process is terminated with outcome
                TIMEOUT. Defaults to the configured default timeout.
            max_buffer: Per-channel byte cap on the final result.
            on_progress: Called once per raw chunk as it arrives.
            cancel_token: Token whose cancellation terminates the process.
            env: Extra environment variables.
            tool_call_id: Id stamped on every progress update.

        Returns:
            ExecutionResult. Spawn failures, timeouts and cancellation are
            reported through the outcome, never raised.
        """
        if timeout is None:
            timeout = self._config.default_timeout
        if max_buffer is None:
            max_buffer = self._config.max_buffer_bytes
        started = time.monotonic()

        def elapsed_ms() -> float:
            return (time.monotonic() - started) * 1000.0

        if cancel_token is not None and cancel_token.is_cancelled:
            return ExecutionResult(None, "", "", elapsed_ms(), cancel_token.reason or Outcome.CANCELLED)

        try:
            cmd, use_shell, proc_env = self._prepare(command, args, env)
            proc = await self._spawn(cmd, use_shell, cwd, proc_env)
        except (SpawnFailure, OSError, ValueError) as exc:
            logger.warning(f"Failed to spawn command for {tool_call_id or 'tool call'}: {exc}")
            trace("executor", f"{tool_call_id}: spawn failed: {exc}")
            return ExecutionResult(None, "", "", elapsed_ms(), Outcome.ERROR, error=str(exc))

        cmd_preview = command[:100] + "..." if len(command) > 100 else command
        trace("executor", f"{tool_call_id}: spawned pid={proc.pid} shell={use_shell}: {cmd_preview}")

        stdout = _ChannelCapture(ProgressKind.STDOUT)
        stderr = _ChannelCapture(ProgressKind.STDERR)
        readers = [
            asyncio.create_task(self._read_channel(proc.stdout, stdout, max_buffer, on_progress, tool_call_id)),
            asyncio.create_task(self._read_channel(proc.stderr, stderr, max_buffer, on_progress, tool_call_id)),
        ]

        loop = asyncio.get_running_loop()
        cancel_event = asyncio.Event()

        def on_cancel() -> None:
            # CancelToken callbacks may run on any thread
            with suppress(RuntimeError):
                loop.call_soon_threadsafe(cancel_event.set)

        if cancel_token is not None:
            cancel_token.on_cancel(on_cancel)

        wait_task = asyncio.create_task(proc.wait())
        cancel_task = asyncio.create_task(cancel_event.wait())
        outcome = Outcome.SUCCESS
        try:
            done, _ = await asyncio.wait(
                {wait_task, cancel_task},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
            if wait_task not in done:
                if cancel_task in done:
                    outcome = (cancel_token.reason if cancel_token else None) or Outcome.CANCELLED
                else:
                    outcome = Outcome.TIMEOUT
                    logger.info(f"{tool_call_id or 'Command'} exceeded timeout of {timeout}s")
                trace("executor", f"{tool_call_id}: terminating pid={proc.pid} ({outcome.value})")
                await self._terminate(proc)
        finally:
            if cancel_token is not None:
                cancel_token.remove_callback(on_cancel)
            cancel_task.cancel()
            if proc.returncode is None:
                # Caller cancelled us mid-wait: the process must not outlive the call
                await self._terminate(proc)
            if not wait_task.done():
                wait_task.cancel()
            await self._drain(readers, tool_call_id)

        for capture in (stdout, stderr):
            if capture.truncated:
                logger.debug(f"{tool_call_id}: {capture.kind.value} truncated at {max_buffer} bytes")

        result = ExecutionResult(
            exit_code=proc.returncode,
            stdout=stdout.text(),
            stderr=stderr.text(),
            duration_ms=elapsed_ms(),
            outcome=outcome,
            truncated=stdout.truncated or stderr.truncated,
        )
        trace("executor", f"{tool_call_id}: finished outcome={outcome.value} exit={proc.returncode} in {result.duration_ms:.0f}ms")
        return result

    async def stream(
        self,
        command: str,
        **kwargs,
    ) -> AsyncIterator[Union[ProgressUpdate, ExecutionResult]]:
        """Execute a command as a lazy sequence of updates.

        Yields each raw ProgressUpdate as it is produced, then exactly one
        ExecutionResult. Accepts the same keyword arguments as execute(),
        except on_progress. Closing the iterator early terminates the process.
        """
        if 'on_progress' in kwargs:
            raise TypeError("stream() delivers progress itself; on_progress is not accepted")

        queue: asyncio.Queue = asyncio.Queue()
        task = asyncio.create_task(self.execute(command, on_progress=queue.put_nowait, **kwargs))
        task.add_done_callback(lambda _t: queue.put_nowait(_DONE))
        try:
            while True:
                item = await queue.get()
                if item is _DONE:
                    break
                yield item
            yield task.result()
        finally:
            if not task.done():
                task.cancel()
                with suppress(asyncio.CancelledError):
                    await task

    async def _terminate(self, proc: asyncio.subprocess.Process) -> None:
        controller = TerminationController(
            proc,
            grace_period=self._config.grace_period,
            kill_delay=self._config.kill_delay,
        )
        await controller.terminate()

    async def _drain(self, readers: List[asyncio.Task], tool_call_id: str) -> None:
        """Wait (bounded) for reader tasks to reach EOF."""
        try:
            await asyncio.wait_for(asyncio.gather(*readers), timeout=PIPE_DRAIN_TIMEOUT)
        except asyncio.TimeoutError:
            logger.debug(f"{tool_call_id}: output pipes still open after exit; abandoning readers")

    async def _read_channel(
        self,
        stream: Optional[asyncio.StreamReader],
        capture: _ChannelCapture,
        max_buffer: int,
        on_progress: Optional[ProgressCallback],
        tool_call_id: str,
    ) -> None:
        if stream is None:
            return
        try:
            while True:
                data = await stream.read(READ_CHUNK_SIZE)
                if not data:
                    break
                self._accept(capture, data, max_buffer, on_progress, tool_call_id)
        except (OSError, ValueError) as exc:
            logger.warning(f"{tool_call_id}: error reading {capture.kind.value}: {exc}")
            trace("executor", f"{tool_call_id}: reader failed", include_traceback=True)
        finally:
            tail = capture.decoder.decode(b"", final=True)
            if tail and not capture.binary:
                self._notify(on_progress, ProgressUpdate(tool_call_id, capture.kind, tail))

    def _accept(
        self,
        capture: _ChannelCapture,
        data: bytes,
        max_buffer: int,
        on_progress: Optional[ProgressCallback],
        tool_call_id: str,
    ) -> None:
        """Record one chunk in the result buffer and report it."""
        if not capture.truncated:
            room = max_buffer - len(capture.data)
            if len(data) > room:
                # Later chunks are dropped too, so the result stays a prefix
                capture.truncated = True
                capture.data.extend(data[:max(room, 0)])
                cut = incomplete_utf8_tail(capture.data)
                if cut:
                    del capture.data[-cut:]
            else:
                capture.data.extend(data)

        if capture.binary:
            return
        if is_binary_chunk(data, self._config.binary_threshold):
            capture.binary = True
            self._notify(on_progress, ProgressUpdate(
                tool_call_id,
                ProgressKind.STATUS,
                f"{capture.kind.value}: binary output, live view suppressed",
            ))
            return

        text = capture.decoder.decode(data)
        if text:
            self._notify(on_progress, ProgressUpdate(tool_call_id, capture.kind, text))

    @staticmethod
    def _notify(on_progress: Optional[ProgressCallback], update: ProgressUpdate) -> None:
        if on_progress is None:
            return
        try:
            on_progress(update)
        except Exception:
            logger.exception(f"Progress callback failed for {update.tool_call_id}")


__all__ = [
    'CommandExecutor',
    'SHELL_METACHAR_PATTERN',
    'requires_shell',
    'is_binary_chunk',
    'incomplete_utf8_tail',
]
