"""End-to-end tests for ToolExecutionSession."""

import asyncio
import sys
import time

import pytest

from toolstream.config import StreamingConfig
from toolstream.events import StreamEventType
from toolstream.protocol import ExecutionResult, Outcome, ToolCallStatus
from toolstream.session import ToolExecutionSession

from .helpers import posix_only, py_command


def of_type(events, event_type, tool_call_id=None):
    return [
        e for e in events
        if e.type == event_type and (tool_call_id is None or e.tool_call_id == tool_call_id)
    ]


def progress_text(events, tool_call_id, kind="stdout"):
    return "".join(
        e.content for e in of_type(events, StreamEventType.TOOL_PROGRESS, tool_call_id)
        if e.progress["kind"] == kind
    )


@pytest.fixture
def events():
    return []


@pytest.fixture
def session(fast_config, events):
    return ToolExecutionSession(config=fast_config, consumer=events.append)


@posix_only
class TestSingleCall:
    """Tests for one tool call through the whole pipeline."""

    @pytest.mark.asyncio
    async def test_event_order(self, session, events):
        session.start("call_1", py_command("print('hi')"))
        results = await session.wait_all()

        assert results["call_1"].outcome == Outcome.SUCCESS
        own = [e for e in events if e.tool_call_id == "call_1"]
        assert own[0].type == StreamEventType.TOOL_CALL_START
        assert own[1].type == StreamEventType.TOOL_CALL_ARG_FINISH
        assert own[1].args["command"] == py_command("print('hi')")
        assert own[-1].type == StreamEventType.TOOL_RESULT
        assert len(of_type(events, StreamEventType.TOOL_RESULT)) == 1
        assert [e.sequence for e in events] == list(range(1, len(events) + 1))

    @pytest.mark.asyncio
    async def test_slow_output_streams_in_two_updates(self, session, events):
        """Output separated by more than the throttle window arrives as two updates."""
        code = (
            "import sys, time\n"
            "sys.stdout.write('a'); sys.stdout.flush()\n"
            "time.sleep(0.25)\n"
            "sys.stdout.write('b'); sys.stdout.flush()\n"
        )
        session.start("call_1", sys.executable, args=["-c", code])
        await session.wait_all()

        updates = of_type(events, StreamEventType.TOOL_PROGRESS, "call_1")
        assert [u.content for u in updates] == ["a", "b"]
        result = of_type(events, StreamEventType.TOOL_RESULT, "call_1")[0]
        assert result.result["stdout"] == "ab"
        assert result.outcome == "success"

    @pytest.mark.asyncio
    async def test_registry_matches_stream(self, session, events):
        session.start("call_1", py_command("import sys; print('out'); print('err', file=sys.stderr)"))
        await session.wait_all()

        snap = session.snapshot("call_1")
        assert snap.phase == ToolCallStatus.COMPLETED
        assert snap.accumulated_stdout == progress_text(events, "call_1") == "out\n"
        assert snap.accumulated_stderr == progress_text(events, "call_1", "stderr") == "err\n"
        assert snap.result["exit_code"] == 0

    @pytest.mark.asyncio
    async def test_timeout_with_partial_output(self, session, events):
        start = time.monotonic()
        session.start("call_1", py_command("import time; print('partial', flush=True); time.sleep(30)"), timeout=1.0)
        results = await session.wait_all()

        assert time.monotonic() - start < 6.0
        assert results["call_1"].outcome == Outcome.TIMEOUT
        assert progress_text(events, "call_1") == "partial\n"
        result = of_type(events, StreamEventType.TOOL_RESULT, "call_1")[0]
        assert result.outcome == "timeout"
        assert result.result["stdout"] == "partial\n"
        assert session.snapshot("call_1").phase == ToolCallStatus.CANCELLED

    @pytest.mark.asyncio
    async def test_spawn_failure_reports_error(self, session, events):
        session.start("call_1", "definitely-not-a-real-tool-xyz")
        results = await session.wait_all()

        assert results["call_1"].outcome == Outcome.ERROR
        assert [e.type for e in events] == [
            StreamEventType.TOOL_CALL_START,
            StreamEventType.TOOL_CALL_ARG_FINISH,
            StreamEventType.TOOL_RESULT,
        ]
        assert "not found" in events[-1].result["error"]
        assert session.snapshot("call_1").phase == ToolCallStatus.FAILED


@posix_only
class TestConcurrentCalls:
    """Tests for several tool calls on one stream."""

    @pytest.mark.asyncio
    async def test_calls_stay_isolated(self, session, events):
        code = "import sys, time\nfor i in range(5):\n    print('{0}-%d' % i, flush=True)\n    time.sleep(0.05)\n"
        session.start("call_1", sys.executable, args=["-c", code.format("one")])
        session.start("call_2", sys.executable, args=["-c", code.format("two")])
        results = await session.wait_all()

        assert results["call_1"].stdout == "".join(f"one-{i}\n" for i in range(5))
        assert results["call_2"].stdout == "".join(f"two-{i}\n" for i in range(5))
        assert progress_text(events, "call_1") == results["call_1"].stdout
        assert progress_text(events, "call_2") == results["call_2"].stdout
        assert session.snapshot("call_1").accumulated_stdout == results["call_1"].stdout
        assert session.snapshot("call_2").accumulated_stdout == results["call_2"].stdout

    @pytest.mark.asyncio
    async def test_text_interleaves_with_tool_events(self, session, events):
        session.multiplexer.text_delta("Running tests. ")
        session.start("call_1", py_command("print('ok')"))
        session.multiplexer.text_delta("Waiting. ")
        await session.wait_all()
        session.multiplexer.text_delta("Done.")

        texts = of_type(events, StreamEventType.TEXT_DELTA)
        assert [t.delta for t in texts] == ["Running tests. ", "Waiting. ", "Done."]
        assert events[-1].type == StreamEventType.TEXT_DELTA


@posix_only
class TestStreamingCap:
    """Tests for the live-view buffer cap."""

    @pytest.mark.asyncio
    async def test_live_view_keeps_tail_result_keeps_all(self, events):
        config = StreamingConfig(
            stream_buffer_cap=1000,
            max_buffer_bytes=1024 * 1024,
            grace_period_ms=300,
            kill_delay_ms=1000,
            extra_paths=[],
        )
        session = ToolExecutionSession(config=config, consumer=events.append)
        code = "import sys\nsys.stdout.write(''.join(str(i % 10) for i in range(5000)))\n"
        session.start("call_1", sys.executable, args=["-c", code])
        results = await session.wait_all()

        full = "".join(str(i % 10) for i in range(5000))
        assert results["call_1"].stdout == full
        assert not results["call_1"].truncated

        snap = session.snapshot("call_1")
        assert snap.accumulated_stdout == full[-1000:]
        for update in of_type(events, StreamEventType.TOOL_PROGRESS, "call_1"):
            assert len(update.content) <= 1000


@posix_only
class TestCancellation:
    """Tests for cancelling calls through the session."""

    @pytest.mark.asyncio
    async def test_cancel_running_call(self, session, events, fast_config):
        session.start("call_1", py_command("import time; print('working', flush=True); time.sleep(30)"))
        await asyncio.sleep(0.5)
        assert session.running_ids() == ["call_1"]

        start = time.monotonic()
        assert session.cancel("call_1")
        result = await session.wait("call_1")

        assert time.monotonic() - start < fast_config.grace_period + fast_config.kill_delay + 2.0
        assert result.outcome == Outcome.CANCELLED
        assert len(of_type(events, StreamEventType.TOOL_RESULT, "call_1")) == 1
        assert not session.cancel("call_1")

    @pytest.mark.asyncio
    async def test_cancel_all(self, session, events):
        for n in (1, 2):
            session.start(f"call_{n}", py_command("import time; time.sleep(30)"))
        await asyncio.sleep(0.3)

        assert session.cancel_all() == 2
        results = await session.wait_all()

        assert {r.outcome for r in results.values()} == {Outcome.CANCELLED}
        assert len(of_type(events, StreamEventType.TOOL_RESULT)) == 2

    @pytest.mark.asyncio
    async def test_task_cancel_still_emits_result(self, session, events):
        """Cancelling the task reports the output produced before it stopped."""
        code = "import sys, time; sys.stdout.write('partial\\n'); sys.stdout.flush(); time.sleep(30)"
        task = session.start("call_1", sys.executable, args=["-c", code])
        for _ in range(100):
            if progress_text(events, "call_1"):
                break
            await asyncio.sleep(0.05)
        task.cancel()
        results = await session.wait_all()

        assert task.cancelled()
        assert results["call_1"].outcome == Outcome.CANCELLED
        assert results["call_1"].stdout == "partial\n"
        result_events = of_type(events, StreamEventType.TOOL_RESULT, "call_1")
        assert len(result_events) == 1
        assert result_events[0].outcome == "cancelled"
        assert result_events[0].result["stdout"] == progress_text(events, "call_1") == "partial\n"
        assert events[-1] is result_events[0]

    @pytest.mark.asyncio
    async def test_task_cancelled_before_running_gets_result(self, session, events):
        task = session.start("call_1", py_command("print('never')"))
        task.cancel()
        results = await session.wait_all()

        assert results["call_1"].outcome == Outcome.CANCELLED
        assert results["call_1"].exit_code is None
        result_events = of_type(events, StreamEventType.TOOL_RESULT, "call_1")
        assert len(result_events) == 1
        assert result_events[0].outcome == "cancelled"


class TestArgumentStreaming:
    """Tests for begin()/arg_delta() before start()."""

    @posix_only
    @pytest.mark.asyncio
    async def test_begin_then_start(self, session, events):
        session.begin("call_1", "cli")
        session.arg_delta("call_1", '{"command": "ec')
        session.arg_delta("call_1", 'ho hi"}')
        session.start("call_1", "echo hi")
        await session.wait_all()

        assert [e.type for e in events[:4]] == [
            StreamEventType.TOOL_CALL_START,
            StreamEventType.TOOL_CALL_ARG_DELTA,
            StreamEventType.TOOL_CALL_ARG_DELTA,
            StreamEventType.TOOL_CALL_ARG_FINISH,
        ]
        assert events[0].name == "cli"

    @pytest.mark.asyncio
    async def test_reused_id_rejected(self, session):
        session.begin("call_1")
        with pytest.raises(ValueError):
            session.begin("call_1")

    @pytest.mark.asyncio
    async def test_announced_but_never_started_gets_error_result(self, session, events):
        """Every tool-call-start is matched by exactly one tool-result."""
        session.begin("call_1")
        results = await session.wait_all()

        assert results == {}
        result_events = of_type(events, StreamEventType.TOOL_RESULT, "call_1")
        assert len(result_events) == 1
        assert result_events[0].outcome == "error"


@posix_only
class TestAcknowledgement:
    """Tests for registry eviction driven by consumer acknowledgement."""

    @pytest.mark.asyncio
    async def test_ack_evicts_finished_call(self, fast_config):
        session = None

        def consumer(event):
            session.multiplexer.acknowledge(event.sequence)

        session = ToolExecutionSession(config=fast_config, consumer=consumer)
        session.start("call_1", py_command("print('x')"))
        await session.wait_all()

        assert session.snapshot("call_1") is None
        assert len(session.registry) == 0

    @pytest.mark.asyncio
    async def test_repeated_wait_all_after_eviction(self, fast_config, caplog):
        """An unstarted call answered and evicted is not answered again."""
        events = []
        session = None

        def consumer(event):
            events.append(event)
            session.multiplexer.acknowledge(event.sequence)

        session = ToolExecutionSession(config=fast_config, consumer=consumer)
        session.begin("call_1")
        with caplog.at_level("WARNING"):
            first = await session.wait_all()
            second = await session.wait_all()

        assert first == {}
        assert second == {}
        assert session.snapshot("call_1") is None
        assert len(of_type(events, StreamEventType.TOOL_RESULT)) == 1
        assert "ordering violation" not in caplog.text

    @pytest.mark.asyncio
    async def test_no_ack_keeps_state(self, session):
        session.start("call_1", py_command("print('x')"))
        await session.wait_all()
        assert session.snapshot("call_1").outcome == Outcome.SUCCESS


class TestExecutorFailures:
    """Tests for unexpected executor failures."""

    @pytest.mark.asyncio
    async def test_executor_exception_becomes_error_result(self, fast_config, events, caplog):
        class BrokenExecutor:
            async def execute(self, command, **kwargs) -> ExecutionResult:
                raise RuntimeError("executor exploded")

        session = ToolExecutionSession(config=fast_config, consumer=events.append, executor=BrokenExecutor())
        session.start("call_1", "anything")
        with caplog.at_level("ERROR", logger="toolstream.session"):
            results = await session.wait_all()

        assert results["call_1"].outcome == Outcome.ERROR
        assert results["call_1"].error == "executor exploded"
        assert events[-1].type == StreamEventType.TOOL_RESULT
        assert "Unexpected failure" in caplog.text
