"""Process lifecycle trace file.

Complements `logging`: each line records one step of a tool call's process
timeline (spawn, signal, exit) so a running session can be followed with
`tail -f` without turning on debug logging.

Lines look like:
    [14:02:11.532] [executor] call_1: spawned pid=4242 shell=False
    [14:02:16.540] [cancel] pid=4242: grace period expired, sending forced termination

Environment Variables:
    TOOLSTREAM_TRACE_LOG: Trace file path. An empty value disables tracing.
        Default: toolstream_trace.log in the system temp directory.
"""

import os
import tempfile
import threading
import traceback
from datetime import datetime
from typing import List, Optional


TRACE_ENV_VAR = "TOOLSTREAM_TRACE_LOG"
DEFAULT_TRACE_FILENAME = "toolstream_trace.log"

_lock = threading.Lock()


def resolve_trace_path(env_var: str = TRACE_ENV_VAR) -> Optional[str]:
    """Trace file named by the environment, or None when tracing is disabled."""
    value = os.environ.get(env_var)
    if value is None:
        return os.path.join(tempfile.gettempdir(), DEFAULT_TRACE_FILENAME)
    return value or None


def format_trace_lines(component: str, msg: str, include_traceback: bool = False) -> List[str]:
    stamp = datetime.now().strftime("%H:%M:%S.%f")[:-3]
    prefix = f"[{stamp}] [{component}]"
    lines = [f"{prefix} {msg}\n"]
    if include_traceback:
        exc = traceback.format_exc()
        if exc.strip() != "NoneType: None":
            lines.extend(f"{prefix}   {line}\n" for line in exc.rstrip().splitlines())
    return lines


def trace_write(
    component: str,
    msg: str,
    trace_path: Optional[str],
    *,
    include_traceback: bool = False,
) -> None:
    """Append one entry to `trace_path`. Never raises.

    Args:
        component: Source of the entry, e.g. "executor" or "cancel".
        msg: Entry text.
        trace_path: Target file; None disables the write.
        include_traceback: Append the exception currently being handled.
    """
    if not trace_path:
        return
    lines = format_trace_lines(component, msg, include_traceback)
    try:
        os.makedirs(os.path.dirname(os.path.abspath(trace_path)), exist_ok=True)
        with _lock, open(trace_path, "a", encoding="utf-8") as f:
            f.writelines(lines)
    except OSError:
        # Tracing must never break tool execution
        return


def trace(component: str, msg: str, *, include_traceback: bool = False) -> None:
    """Write an entry to the file named by TOOLSTREAM_TRACE_LOG."""
    trace_write(component, msg, resolve_trace_path(), include_traceback=include_traceback)


__all__ = ['trace', 'trace_write', 'resolve_trace_path', 'format_trace_lines']
