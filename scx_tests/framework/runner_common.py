#!/usr/bin/env python3
"""Host-side support imported by generated runner tests."""

from __future__ import annotations

import enum
import json
import os
import queue
from datetime import datetime
from pathlib import Path
from typing import Callable, Optional, Union

from scx_tests.framework.settings import FrameworkSettings, load_settings
from scx_tests.framework.spec_model import ParseError, Topology
from scx_tests.framework.vmtest_engine import (
    CLOSED,
    CommandEnd,
    VmConfig,
    VmOutput,
    VMResources,
    VmTarget,
    VmtestEngine,
)

TARGET_BINARY_ENV = "SCX_TEST_TARGET_BINARY"
BUILD_MANIFEST = ".scx_tests_build.json"


class VmPhaseError(RuntimeError):
    pass


class VmProtocolError(RuntimeError):
    """The engine broke the event-stream contract; not a test verdict."""


class VmState(enum.Enum):
    INIT = "init"
    BOOTING = "booting"
    SETTING_UP = "setting_up"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


_PHASE_STATES = {
    "boot": (VmState.INIT, VmState.BOOTING),
    "setup": (VmState.BOOTING, VmState.SETTING_UP),
    "command": (VmState.SETTING_UP, VmState.RUNNING),
}

_PHASE_FAILURES = {
    "boot": "failed to boot vm",
    "setup": "failed to setup vm",
    "command": "failed to run command in vm",
}


def _log(message: str) -> None:
    ts = datetime.now().isoformat(timespec="seconds")
    print(f"[vm] [{ts}] {message}", flush=True)


class PhaseTracker:
    """Consume phase events in order; returns the exit code from CommandEnd."""

    def __init__(self) -> None:
        self.state = VmState.INIT
        self._phase_open = False

    def _violation(self, event: VmOutput) -> VmProtocolError:
        return VmProtocolError(
            f"unexpected {type(event).__name__} in state {self.state.value}"
            f" (phase {'open' if self._phase_open else 'closed'})"
        )

    def feed(self, event: VmOutput) -> Optional[int]:
        states = _PHASE_STATES.get(event.phase)
        if states is None:
            raise VmProtocolError(f"unknown event {event!r}")
        previous, current = states

        if event.role == "start":
            if self.state is not previous or self._phase_open:
                raise self._violation(event)
            self.state = current
            self._phase_open = True
            _log(f"{event.phase} started")
            return None

        if self.state is not current or not self._phase_open:
            raise self._violation(event)

        if event.role == "output":
            _log(f"{event.phase} output: {event.text}")
            return None

        self._phase_open = False
        if event.error is not None:
            self.state = VmState.FAILED
            raise VmPhaseError(f"{_PHASE_FAILURES[event.phase]}: {event.error}")
        _log(f"{event.phase} succeeded")
        if isinstance(event, CommandEnd):
            self.state = VmState.DONE
            return event.exit_code
        return None


def build_vm_config(
    topo: Topology,
    target_binary: Union[str, Path],
    test_case: str,
    settings: FrameworkSettings,
) -> VmConfig:
    target = VmTarget(
        name=settings.vm.target_name,
        kernel=settings.vm.kernel,
        command=f"{target_binary} {test_case}",
        vm=VMResources(memory=settings.vm.memory, num_cpus=topo.num_cpus()),
    )
    return VmConfig(targets=[target], vmtest_bin=settings.vm.vmtest)


def run_target_in_vm(
    topo: Topology,
    target_binary: Optional[Union[str, Path]],
    test_case: str,
    engine_factory: Callable[[VmConfig], object] = VmtestEngine,
    settings: Optional[FrameworkSettings] = None,
) -> int:
    if target_binary is None:
        raise ValueError(f"target binary unknown; build the suite or set {TARGET_BINARY_ENV}")
    settings = settings or load_settings()
    cfg = build_vm_config(topo, target_binary, test_case, settings)
    vm = engine_factory(cfg)

    tx: queue.Queue = queue.Queue()
    vm.run_one(0, tx)

    tracker = PhaseTracker()
    for msg in iter(tx.get, CLOSED):
        exit_code = tracker.feed(msg)
        if tracker.state is VmState.DONE:
            if exit_code is None:
                raise VmProtocolError("CommandEnd carried neither an exit code nor an error")
            return exit_code

    raise VmProtocolError("event stream closed without a CommandEnd")


def decode_topology(text: str) -> Topology:
    try:
        data = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ParseError(f"malformed topology JSON: {exc}") from exc
    return Topology.from_mapping(data)


def target_binary(runner_file: Union[str, Path]) -> Optional[Path]:
    override = os.environ.get(TARGET_BINARY_ENV)
    if override:
        return Path(override)
    runner_dir = Path(runner_file).resolve().parent
    for directory in (runner_dir, *runner_dir.parents):
        manifest = directory / BUILD_MANIFEST
        if not manifest.is_file():
            continue
        try:
            target = json.loads(manifest.read_text(encoding="utf-8")).get("target")
        except (OSError, json.JSONDecodeError, AttributeError):
            return None
        return Path(target) if target else None
    configured = load_settings().target_binary
    return Path(configured) if configured else None


def case_test(fn):
    """Mark a generated method so pytest collects it under the case's own name."""
    fn.__test__ = True
    return fn
