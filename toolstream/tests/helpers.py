"""Shared helpers for process-based tests."""

import shlex
import sys

import pytest


posix_only = pytest.mark.skipif(sys.platform == "win32", reason="requires POSIX process groups and signals")


def py_command(code: str) -> str:
    """Shell command line running `code` with the current interpreter."""
    return f"{shlex.quote(sys.executable)} -c {shlex.quote(code)}"
