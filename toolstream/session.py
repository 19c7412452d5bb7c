"""Execution session: runs tool calls concurrently on one event stream.

The session owns one registry, one multiplexer and one executor. Each started
tool call runs as its own asyncio task with its own throttler and cancel
token; everything it produces flows through the shared multiplexer, which
guarantees exactly one tool-result per started call.
"""

import asyncio
import logging
import threading
from typing import Any, Dict, List, Optional

from .cancellation import CancelToken
from .config import StreamingConfig
from .executor import CommandExecutor
from .multiplexer import EventConsumer, StreamMultiplexer
from .protocol import ExecutionResult, Outcome
from .registry import ToolCallRegistry, ToolCallSnapshot
from .throttle import ProgressThrottler

logger = logging.getLogger(__name__)


DEFAULT_TOOL_NAME = "cli"


class ToolExecutionSession:
    """Coordinates command executions for one conversation turn.

    Usage:
        session = ToolExecutionSession(consumer=print_event)
        session.start("call_1", "pytest -q")
        session.start("call_2", "npm test")
        results = await session.wait_all()

    Argument streaming:
        begin() emits tool-call-start as soon as the model names the tool,
        arg_delta() forwards argument fragments, and start() emits
        tool-call-arg-finish and launches the process.
    """

    def __init__(
        self,
        config: Optional[StreamingConfig] = None,
        consumer: Optional[EventConsumer] = None,
        evict_on_ack: bool = True,
        executor: Optional[CommandExecutor] = None,
    ):
        """Initialize the session.

        Args:
            config: Streaming configuration (defaults read from environment).
            consumer: Callback receiving every emitted event.
            evict_on_ack: Evict registry state once a result is acknowledged.
            executor: Executor to use; built from config when omitted.
        """
        self._config = config or StreamingConfig()
        self._registry = ToolCallRegistry(stream_cap=self._config.stream_buffer_cap)
        self._multiplexer = StreamMultiplexer(self._registry, consumer, evict_on_ack=evict_on_ack)
        self._executor = executor or CommandExecutor(self._config)
        self._tasks: Dict[str, asyncio.Task] = {}
        self._tokens: Dict[str, CancelToken] = {}
        self._begun: Dict[str, str] = {}
        self._results: Dict[str, ExecutionResult] = {}
        self._lock = threading.Lock()

    @property
    def config(self) -> StreamingConfig:
        return self._config

    @property
    def registry(self) -> ToolCallRegistry:
        return self._registry

    @property
    def multiplexer(self) -> StreamMultiplexer:
        return self._multiplexer

    def begin(self, tool_call_id: str, name: str = DEFAULT_TOOL_NAME) -> None:
        """Announce a tool call before its arguments are complete.

        Raises:
            ValueError: If the id was already used in this session.
        """
        with self._lock:
            if tool_call_id in self._begun:
                raise ValueError(f"Tool call id '{tool_call_id}' already used")
            self._begun[tool_call_id] = name
        if self._multiplexer.tool_call_start(tool_call_id, name) is None:
            raise ValueError(f"Tool call id '{tool_call_id}' already used")

    def arg_delta(self, tool_call_id: str, delta: str) -> None:
        """Forward a fragment of a tool call's streamed arguments."""
        self._multiplexer.tool_call_arg_delta(tool_call_id, delta)

    def start(
        self,
        tool_call_id: str,
        command: str,
        name: Optional[str] = None,
        args: Optional[List[str]] = None,
        cwd: Optional[str] = None,
        timeout: Optional[float] = None,
        env: Optional[Dict[str, str]] = None,
    ) -> asyncio.Task:
        """Launch a command for a tool call.

        Must be called from a running event loop. Calls begin() first if the
        tool call was not announced yet.

        Args:
            tool_call_id: Unique id for this call within the session.
            command: Command line to execute.
            name: Tool name reported in tool-call-start.
            args: Optional argument list.
            cwd: Working directory.
            timeout: Seconds before the process is terminated.
            env: Extra environment variables.

        Returns:
            The asyncio task resolving to the call's ExecutionResult.
        """
        with self._lock:
            announced = tool_call_id in self._begun
            if tool_call_id in self._tasks:
                raise ValueError(f"Tool call '{tool_call_id}' already started")
        if not announced:
            self.begin(tool_call_id, name or DEFAULT_TOOL_NAME)

        arguments: Dict[str, Any] = {"command": command}
        if args:
            arguments["args"] = list(args)
        if cwd:
            arguments["cwd"] = cwd
        if timeout is not None:
            arguments["timeout"] = timeout
        self._multiplexer.tool_call_arg_finish(tool_call_id, arguments)

        token = CancelToken()
        task = asyncio.create_task(
            self._run(tool_call_id, command, args, cwd, timeout, env, token),
            name=f"tool-call-{tool_call_id}",
        )
        with self._lock:
            self._tokens[tool_call_id] = token
            self._tasks[tool_call_id] = task
        return task

    async def _run(
        self,
        tool_call_id: str,
        command: str,
        args: Optional[List[str]],
        cwd: Optional[str],
        timeout: Optional[float],
        env: Optional[Dict[str, str]],
        token: CancelToken,
    ) -> ExecutionResult:
        self._registry.mark_running(tool_call_id)
        throttler = ProgressThrottler(
            self._multiplexer.progress_sink(tool_call_id),
            interval=self._config.throttle_interval,
            max_bytes=self._config.throttle_max_bytes,
            stream_cap=self._config.stream_buffer_cap,
        )
        execution = asyncio.ensure_future(self._executor.execute(
            command,
            args=args,
            cwd=cwd,
            timeout=timeout,
            on_progress=throttler,
            cancel_token=token,
            env=env,
            tool_call_id=tool_call_id,
        ))
        try:
            result = await asyncio.shield(execution)
        except asyncio.CancelledError:
            # Task cancelled directly: stop the process through the token so
            # the output captured so far still reaches the result
            token.cancel(Outcome.CANCELLED)
            result = await self._settle(tool_call_id, execution)
            throttler.close()
            self._finish(tool_call_id, result)
            raise
        except Exception as exc:
            result = self._failure(tool_call_id, exc)

        # All progress must precede the terminal event
        throttler.close()
        self._finish(tool_call_id, result)
        return result

    async def _settle(self, tool_call_id: str, execution: asyncio.Future) -> ExecutionResult:
        """Wait for a cancelled execution to return its result.

        Termination is bounded by the grace period and kill delay, so repeated
        task cancellation is absorbed until the executor returns.
        """
        while True:
            try:
                return await asyncio.shield(execution)
            except asyncio.CancelledError:
                if execution.cancelled():
                    return ExecutionResult(None, "", "", 0.0, Outcome.CANCELLED)
            except Exception as exc:
                return self._failure(tool_call_id, exc)

    @staticmethod
    def _failure(tool_call_id: str, exc: Exception) -> ExecutionResult:
        logger.exception(f"Unexpected failure executing {tool_call_id}")
        return ExecutionResult(None, "", "", 0.0, Outcome.ERROR, error=str(exc))

    def _finish(self, tool_call_id: str, result: ExecutionResult) -> None:
        self._multiplexer.tool_result(tool_call_id, result.to_dict(), result.outcome)
        with self._lock:
            self._tokens.pop(tool_call_id, None)
            self._results[tool_call_id] = result

    def cancel(self, tool_call_id: str) -> bool:
        """Request cancellation of a running call.

        Returns:
            True if the call was running. Cancelling a finished call is a no-op.
        """
        with self._lock:
            token = self._tokens.get(tool_call_id)
        if token is None:
            return False
        token.cancel(Outcome.CANCELLED)
        return True

    def cancel_all(self) -> int:
        """Request cancellation of every running call.

        Returns:
            Number of calls signalled.
        """
        with self._lock:
            tokens = list(self._tokens.values())
        for token in tokens:
            token.cancel(Outcome.CANCELLED)
        return len(tokens)

    async def wait(self, tool_call_id: str) -> ExecutionResult:
        """Wait for one call's result.

        Raises:
            KeyError: If the call was never started.
        """
        with self._lock:
            task = self._tasks[tool_call_id]
        return await task

    async def wait_all(self) -> Dict[str, ExecutionResult]:
        """Wait for every started call and return results by id.

        Announced calls that were never started receive an error result so
        every tool-call-start is matched by a tool-result.
        """
        with self._lock:
            tasks = dict(self._tasks)
            orphans = [
                cid for cid in self._begun
                if cid not in self._tasks and cid not in self._results
            ]
        for cid in orphans:
            logger.warning(f"Tool call '{cid}' announced but never started")
            self._finish(cid, ExecutionResult(None, "", "", 0.0, Outcome.ERROR, error="tool call never started"))

        results: Dict[str, ExecutionResult] = {}
        outcomes = await asyncio.gather(*tasks.values(), return_exceptions=True)
        for cid, outcome in zip(tasks.keys(), outcomes):
            if isinstance(outcome, BaseException):
                # Cancelled task: report the result it emitted before stopping
                with self._lock:
                    emitted = self._results.get(cid)
                if emitted is None:
                    # Cancelled before it ever ran
                    emitted = ExecutionResult(None, "", "", 0.0, Outcome.CANCELLED, error=str(outcome) or None)
                    self._finish(cid, emitted)
                results[cid] = emitted
            else:
                results[cid] = outcome
        return results

    def snapshot(self, tool_call_id: str) -> Optional[ToolCallSnapshot]:
        """Current registry state of a call, or None once evicted."""
        return self._registry.snapshot(tool_call_id)

    def running_ids(self) -> List[str]:
        with self._lock:
            return [cid for cid, task in self._tasks.items() if not task.done()]


__all__ = ['ToolExecutionSession', 'DEFAULT_TOOL_NAME']
