"""Subprocess wrappers and console output.

Every external tool (git, uv) runs through :func:`git` or :func:`run`.
Progress goes to stdout: :func:`step` opens a phase, indented lines report
per-solution progress. Warnings and errors go to stderr and never stop the
process; the command layer decides the exit code.
"""

from __future__ import annotations

import subprocess
import sys
from pathlib import Path


def git(*args: str, cwd: Path | str | None = None, check: bool = True) -> str:
    """Run git in ``cwd`` and return its stripped stdout.

    With ``check`` (the default) a failing command raises
    ``subprocess.CalledProcessError``; queries that may legitimately find
    nothing (tags, remote branches) pass ``check=False`` and get the
    (usually empty) output instead.
    """
    result = subprocess.run(
        ["git", *args], cwd=cwd, capture_output=True, text=True, check=check
    )
    return result.stdout.strip()


def run(
    *args: str, cwd: Path | str | None = None, check: bool = True
) -> subprocess.CompletedProcess[bytes]:
    """Run a build command with its output streamed to the terminal."""
    return subprocess.run(args, cwd=cwd, check=check)


def step(msg: str) -> None:
    """Open a phase of the run with a ruled header."""
    print(f"\n{'─' * 60}\n{msg}\n{'─' * 60}")


def warn(msg: str) -> None:
    print(f"  WARNING: {msg}", file=sys.stderr)


def error(msg: str) -> None:
    print(f"ERROR: {msg}", file=sys.stderr)
