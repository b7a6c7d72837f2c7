#!/usr/bin/env python3
"""Runtime support imported by generated target programs inside the guest."""

from __future__ import annotations

import os
import tempfile
import time
from pathlib import Path
from typing import IO, List, Optional, Sequence

from scx_tests.framework.process_utils import ChildHandle, LivenessError, spawn

# The scheduler opens its config through /proc/<our pid>/fd/<n>, so give it a
# moment before anything else touches the file.
STARTUP_GRACE_S = 0.1


class WorkloadHandle(ChildHandle):
    kind = "workload"


class StressNgWorkload(WorkloadHandle):
    @classmethod
    def start(cls, binary: str, args: Sequence[str], log_path: Optional[Path] = None) -> "StressNgWorkload":
        proc = spawn("stress-ng", [binary, *args], log_path=log_path)
        return cls(proc, name="stress-ng")


class SchedulerHandle(ChildHandle):
    kind = "scheduler"

    def __init__(self, proc, name: Optional[str] = None, config_file: Optional[IO[bytes]] = None):
        super().__init__(proc, name=name)
        self.config_file = config_file

    @classmethod
    def start_layered(
        cls,
        binary: str,
        args: Sequence[str],
        config_json: str,
        log_path: Optional[Path] = None,
    ) -> "SchedulerHandle":
        cfg_file = tempfile.TemporaryFile()
        try:
            cfg_file.write(config_json.encode("utf-8"))
            cfg_file.flush()
            argv: List[str] = [binary, *args, config_fd_arg(cfg_file)]
            proc = spawn("scx_layered", argv, log_path=log_path)
        except BaseException:
            cfg_file.close()
            raise
        time.sleep(STARTUP_GRACE_S)
        return cls(proc, name="scx_layered", config_file=cfg_file)

    def _release(self) -> None:
        if self.config_file is not None:
            self.config_file.close()
            self.config_file = None


def config_fd_arg(cfg_file: IO[bytes]) -> str:
    return f"f:/proc/{os.getpid()}/fd/{cfg_file.fileno()}"


def assert_alive(handle: ChildHandle, message: str) -> None:
    if not handle.is_alive():
        raise LivenessError(f"{message} (pid {handle.pid})")
