#!/usr/bin/env python3
"""Owned child processes with a graceful-shutdown contract.

Every handle owns exactly one child. ``cleanup()`` sends SIGTERM once and polls
for exit; leaving a ``with`` block without an explicit cleanup runs it
implicitly, and a failure there aborts the whole process: a leaked workload or
scheduler would poison every later test in the guest.
"""

from __future__ import annotations

import os
import signal
import subprocess
import sys
import time
from pathlib import Path
from typing import List, NoReturn, Optional

POLL_INTERVAL_S = 0.1
POLL_ATTEMPTS = 10


class ProcessLaunchError(RuntimeError):
    pass


class CleanupError(RuntimeError):
    pass


class LivenessError(CleanupError):
    pass


def describe_returncode(returncode: int) -> str:
    if returncode < 0:
        try:
            name = signal.Signals(-returncode).name
        except ValueError:
            name = "unknown"
        return f"killed by signal {-returncode} ({name})"
    return f"exit status {returncode}"


def exit_status_ok(returncode: int) -> bool:
    return returncode == 0 or returncode == -signal.SIGTERM


def check_exit_status(returncode: int, context: str) -> None:
    if not exit_status_ok(returncode):
        raise LivenessError(f"{context}: bad exit code: {describe_returncode(returncode)}")


def wait_with_timeout(
    proc: subprocess.Popen,
    context: str,
    interval: float = POLL_INTERVAL_S,
    attempts: int = POLL_ATTEMPTS,
) -> None:
    for _ in range(attempts):
        returncode = proc.poll()
        if returncode is not None:
            check_exit_status(returncode, context)
            return
        time.sleep(interval)
    raise CleanupError(f"{context}: failed to exit cleanly within {interval * attempts:.1f}s of SIGTERM")


def fatal(message: str) -> NoReturn:
    print(f"[process_utils] fatal: {message}", file=sys.stderr, flush=True)
    os.abort()


def spawn(
    name: str,
    argv: List[str],
    log_path: Optional[Path] = None,
) -> subprocess.Popen:
    """Start ``argv``; stdout/stderr go to ``log_path`` when given, else are inherited."""
    stdout = None
    if log_path:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        stdout = open(log_path, "w", encoding="utf-8")
        # Write a small header so users can see what was launched.
        stdout.write(f"[launcher] starting {name}: {' '.join(argv)}\n")
        stdout.flush()
    try:
        return subprocess.Popen(argv, stdout=stdout, stderr=subprocess.STDOUT if stdout else None)
    except OSError as exc:
        raise ProcessLaunchError(f"failed to start {name}: {exc}") from exc
    finally:
        # The child holds its own copy of the descriptor.
        if stdout:
            stdout.close()


class ChildHandle:
    kind = "process"

    def __init__(self, proc: subprocess.Popen, name: Optional[str] = None):
        self.proc = proc
        self.name = name or self.kind
        self._consumed = False

    @property
    def pid(self) -> int:
        return self.proc.pid

    @property
    def consumed(self) -> bool:
        return self._consumed

    def is_alive(self) -> bool:
        return self.proc.poll() is None

    def cleanup(self) -> None:
        if self._consumed:
            raise CleanupError(f"{self.kind} {self.name} was already cleaned up")
        self._consumed = True
        try:
            self._terminate()
        finally:
            self._release()

    def _terminate(self) -> None:
        returncode = self.proc.poll()
        if returncode is not None:
            check_exit_status(returncode, f"{self.kind} terminated early")
            return
        self.proc.send_signal(signal.SIGTERM)
        wait_with_timeout(self.proc, f"{self.kind} failed to exit cleanly after SIGTERM sent")

    def _release(self) -> None:
        """Drop resources tied to the child's lifetime."""

    def __enter__(self) -> "ChildHandle":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        if self._consumed:
            return
        try:
            self.cleanup()
        except CleanupError as err:
            message = f"implicit cleanup of {self.kind} {self.name} (pid {self.pid}) failed: {err}"
            if exc is not None:
                message += f" (while handling {type(exc).__name__}: {exc})"
            fatal(message)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.name} pid={self.pid}>"
