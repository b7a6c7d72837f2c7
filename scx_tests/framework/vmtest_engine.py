#!/usr/bin/env python3
"""VM phase events and an engine that produces them by driving the ``vmtest`` CLI.

An engine runs one target and writes events to a ``queue.Queue``: BootStart,
Boot*, BootEnd, SetupStart, Setup*, SetupEnd, CommandStart, Command*,
CommandEnd, then ``CLOSED``. A failing BootEnd or SetupEnd ends the stream
early.
"""

from __future__ import annotations

import json
import queue
import subprocess
import sys
import tempfile
import threading
from dataclasses import dataclass, field
from pathlib import Path
from typing import ClassVar, List, Optional

CLOSED = None

BOOT_MARKER = "===> Booting"
SETUP_MARKER = "===> Setting up VM"
COMMAND_MARKER = "===> Running command"


class VmOutput:
    phase: ClassVar[str] = ""
    role: ClassVar[str] = ""


@dataclass(frozen=True)
class BootStart(VmOutput):
    phase: ClassVar[str] = "boot"
    role: ClassVar[str] = "start"


@dataclass(frozen=True)
class Boot(VmOutput):
    phase: ClassVar[str] = "boot"
    role: ClassVar[str] = "output"
    text: str = ""


@dataclass(frozen=True)
class BootEnd(VmOutput):
    phase: ClassVar[str] = "boot"
    role: ClassVar[str] = "end"
    error: Optional[str] = None


@dataclass(frozen=True)
class SetupStart(VmOutput):
    phase: ClassVar[str] = "setup"
    role: ClassVar[str] = "start"


@dataclass(frozen=True)
class Setup(VmOutput):
    phase: ClassVar[str] = "setup"
    role: ClassVar[str] = "output"
    text: str = ""


@dataclass(frozen=True)
class SetupEnd(VmOutput):
    phase: ClassVar[str] = "setup"
    role: ClassVar[str] = "end"
    error: Optional[str] = None


@dataclass(frozen=True)
class CommandStart(VmOutput):
    phase: ClassVar[str] = "command"
    role: ClassVar[str] = "start"


@dataclass(frozen=True)
class Command(VmOutput):
    phase: ClassVar[str] = "command"
    role: ClassVar[str] = "output"
    text: str = ""


@dataclass(frozen=True)
class CommandEnd(VmOutput):
    phase: ClassVar[str] = "command"
    role: ClassVar[str] = "end"
    exit_code: Optional[int] = None
    error: Optional[str] = None


_PHASES = ("boot", "setup", "command")
_START_EVENTS = {"boot": BootStart, "setup": SetupStart, "command": CommandStart}
_OUTPUT_EVENTS = {"boot": Boot, "setup": Setup, "command": Command}
_END_EVENTS = {"boot": BootEnd, "setup": SetupEnd, "command": CommandEnd}


class _PhaseChannel:
    """Forward events to the consumer, remembering how far the stream got."""

    def __init__(self, tx: queue.Queue):
        self.tx = tx
        self.open_phase: Optional[str] = None
        self.closed_phases: List[str] = []

    def put(self, event: VmOutput) -> None:
        if event.role == "start":
            self.open_phase = event.phase
        elif event.role == "end":
            self.open_phase = None
            self.closed_phases.append(event.phase)
        self.tx.put(event)

    def fail(self, error: str) -> None:
        """End the stream with a failing terminal event for the current phase."""
        phase = self.open_phase
        if phase is None:
            if "command" in self.closed_phases:
                print(f"[vmtest] warning: {error} after the command finished", file=sys.stderr)
                return
            phase = _PHASES[len(self.closed_phases)]
            self.put(_START_EVENTS[phase]())
        self.put(_END_EVENTS[phase](error=error))


@dataclass
class VMResources:
    memory: str = "4G"
    num_cpus: int = 2


@dataclass
class VmTarget:
    name: str
    kernel: Optional[str]
    command: str
    vm: VMResources = field(default_factory=VMResources)


@dataclass
class VmConfig:
    targets: List[VmTarget]
    vmtest_bin: str = "vmtest"


def _toml_string(value: str) -> str:
    # JSON string escapes are a subset of TOML basic-string escapes.
    return json.dumps(value)


def render_vmtest_config(target: VmTarget) -> str:
    return "\n".join(
        [
            "[[target]]",
            f"name = {_toml_string(target.name)}",
            f"kernel = {_toml_string(target.kernel or '')}",
            f"command = {_toml_string(target.command)}",
            "",
            "[target.vm]",
            f"memory = {_toml_string(target.vm.memory)}",
            f"num_cpus = {int(target.vm.num_cpus)}",
            "",
        ]
    )


class VmtestEngine:
    """Run a target through ``vmtest`` on a producer thread."""

    def __init__(self, config: VmConfig):
        self.config = config
        self._thread: Optional[threading.Thread] = None

    def run_one(self, index: int, tx: queue.Queue) -> threading.Thread:
        target = self.config.targets[index]
        self._thread = threading.Thread(target=self._produce, args=(target, tx), name=f"vmtest[{target.name}]", daemon=True)
        self._thread.start()
        return self._thread

    def _produce(self, target: VmTarget, tx: queue.Queue) -> None:
        channel = _PhaseChannel(tx)
        try:
            channel.put(BootStart())
            if not target.kernel:
                channel.put(BootEnd(error="no kernel image configured (set SCX_TEST_KERNEL)"))
                return
            with tempfile.TemporaryDirectory(prefix="scx-vmtest-") as tmp:
                cfg_path = Path(tmp) / "vmtest.toml"
                cfg_path.write_text(render_vmtest_config(target), encoding="utf-8")
                self._stream(target, [self.config.vmtest_bin, "--config", str(cfg_path)], channel)
        except Exception as exc:
            # Producer must never die silently; report through the channel.
            channel.fail(f"vmtest engine error: {type(exc).__name__}: {exc}")
        finally:
            tx.put(CLOSED)

    def _stream(self, target: VmTarget, argv: List[str], tx: _PhaseChannel) -> None:
        try:
            proc = subprocess.Popen(argv, stdout=subprocess.PIPE, stderr=subprocess.STDOUT, text=True, errors="replace")
        except OSError as exc:
            tx.put(BootEnd(error=f"failed to start vmtest: {exc}"))
            return

        phase = "boot"
        assert proc.stdout is not None
        for raw in proc.stdout:
            line = raw.rstrip("\n")
            if SETUP_MARKER in line and phase == "boot":
                tx.put(BootEnd())
                tx.put(SetupStart())
                phase = "setup"
            elif COMMAND_MARKER in line and phase == "setup":
                tx.put(SetupEnd())
                tx.put(CommandStart())
                phase = "command"
            elif BOOT_MARKER in line and phase == "boot":
                continue
            else:
                tx.put(_OUTPUT_EVENTS[phase](text=line))
        returncode = proc.wait()

        if phase == "command":
            tx.put(CommandEnd(exit_code=returncode))
        elif phase == "setup":
            tx.put(SetupEnd(error=f"vmtest exited with status {returncode} during setup of {target.name}"))
        else:
            tx.put(BootEnd(error=f"vmtest exited with status {returncode} while booting {target.name}"))
