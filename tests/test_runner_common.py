from __future__ import annotations

import json
from pathlib import Path

import pytest

from scx_tests.framework import runner_common
from scx_tests.framework.runner_common import (
    PhaseTracker,
    VmPhaseError,
    VmProtocolError,
    VmState,
    build_vm_config,
    decode_topology,
    run_target_in_vm,
    target_binary,
)
from scx_tests.framework.spec_model import ParseError, Topology
from scx_tests.framework.vmtest_engine import (
    CLOSED,
    Boot,
    BootEnd,
    BootStart,
    Command,
    CommandEnd,
    CommandStart,
    Setup,
    SetupEnd,
    SetupStart,
    VmtestEngine,
)

HAPPY_PREFIX = [BootStart(), Boot(text="kernel"), BootEnd(), SetupStart(), Setup(text="mount"), SetupEnd(), CommandStart()]


def scripted_engine(events, configs=None):
    """Engine factory whose run_one replays ``events`` then closes the stream."""

    class _Engine:
        def __init__(self, config):
            if configs is not None:
                configs.append(config)

        def run_one(self, index, tx):
            assert index == 0
            for event in events:
                tx.put(event)
            tx.put(CLOSED)

    return _Engine


def _run(events, settings, configs=None):
    return run_target_in_vm(
        Topology(), "/guest/target.py", "foo_bar", engine_factory=scripted_engine(events, configs), settings=settings
    )


@pytest.mark.parametrize("exit_code", [0, 1, 101])
def test_exit_code_is_returned_as_value(settings, exit_code):
    events = [*HAPPY_PREFIX, Command(text="running"), CommandEnd(exit_code=exit_code)]
    assert _run(events, settings) == exit_code


def test_vm_config_carries_case_and_cpus(settings):
    configs = []
    _run([*HAPPY_PREFIX, CommandEnd(exit_code=0)], settings, configs)
    (config,) = configs
    (target,) = config.targets
    assert target.command == "/guest/target.py foo_bar"
    assert target.kernel == "/boot/bzImage"
    assert target.vm.memory == "2G"
    assert target.vm.num_cpus == 2


def test_build_vm_config_uses_topology_cpu_count(settings):
    cfg = build_vm_config(Topology(sockets=2, cores_per_llc=4), Path("/t"), "a_b", settings)
    assert cfg.targets[0].vm.num_cpus == 8
    assert cfg.targets[0].name == "scx_test_runner"
    assert cfg.vmtest_bin == "vmtest"


def test_boot_failure_stops_before_setup(settings, capsys):
    events = [BootStart(), BootEnd(error="no kernel")]
    with pytest.raises(VmPhaseError, match="failed to boot vm: no kernel"):
        _run(events, settings)
    assert "setup" not in capsys.readouterr().out


def test_setup_failure(settings):
    events = [BootStart(), BootEnd(), SetupStart(), SetupEnd(error="bad rootfs")]
    with pytest.raises(VmPhaseError, match="failed to setup vm: bad rootfs"):
        _run(events, settings)


def test_command_failure(settings):
    events = [*HAPPY_PREFIX, CommandEnd(error="guest crashed")]
    with pytest.raises(VmPhaseError, match="failed to run command in vm: guest crashed"):
        _run(events, settings)


def test_stream_closing_early_is_a_protocol_error(settings):
    with pytest.raises(VmProtocolError, match="closed without a CommandEnd"):
        _run(HAPPY_PREFIX, settings)


def test_command_end_without_status_is_a_protocol_error(settings):
    with pytest.raises(VmProtocolError, match="neither an exit code nor an error"):
        _run([*HAPPY_PREFIX, CommandEnd()], settings)


@pytest.mark.parametrize(
    "events",
    [
        [SetupStart()],
        [BootStart(), BootStart()],
        [BootStart(), SetupStart()],
        [BootStart(), BootEnd(), Setup(text="early")],
        [BootStart(), BootEnd(), CommandStart()],
        [BootStart(), BootEnd(), SetupStart(), SetupEnd(), CommandEnd(exit_code=0)],
    ],
)
def test_out_of_order_events_are_rejected(settings, events):
    with pytest.raises(VmProtocolError, match="unexpected"):
        _run(events, settings)


def test_tracker_walks_every_state():
    tracker = PhaseTracker()
    seen = []
    for event in [*HAPPY_PREFIX, CommandEnd(exit_code=0)]:
        tracker.feed(event)
        seen.append(tracker.state)
    assert seen[0] is VmState.BOOTING
    assert VmState.SETTING_UP in seen
    assert seen[-2] is VmState.RUNNING
    assert seen[-1] is VmState.DONE


def test_tracker_marks_failure():
    tracker = PhaseTracker()
    tracker.feed(BootStart())
    with pytest.raises(VmPhaseError):
        tracker.feed(BootEnd(error="x"))
    assert tracker.state is VmState.FAILED


def test_missing_target_binary_is_rejected(settings):
    with pytest.raises(ValueError, match="target binary unknown"):
        run_target_in_vm(Topology(), None, "foo_bar", engine_factory=scripted_engine([]), settings=settings)


def test_decode_topology():
    assert decode_topology('{"sockets":2,"llcs_per_socket":1,"cores_per_llc":2,"threads_per_core":2}') == Topology(
        sockets=2
    )
    with pytest.raises(ParseError, match="malformed topology JSON"):
        decode_topology("{sockets")


def test_target_binary_from_environment(monkeypatch, tmp_path):
    monkeypatch.setenv(runner_common.TARGET_BINARY_ENV, "/opt/target.py")
    assert target_binary(tmp_path / "test_generated.py") == Path("/opt/target.py")


def test_target_binary_from_build_manifest(monkeypatch, tmp_path):
    monkeypatch.delenv(runner_common.TARGET_BINARY_ENV, raising=False)
    (tmp_path / runner_common.BUILD_MANIFEST).write_text(json.dumps({"target": "/out/target.py"}), encoding="utf-8")
    nested = tmp_path / "generated"
    nested.mkdir()
    assert target_binary(nested / "test_generated.py") == Path("/out/target.py")


def test_target_binary_unknown(monkeypatch, tmp_path):
    monkeypatch.delenv(runner_common.TARGET_BINARY_ENV, raising=False)
    monkeypatch.setenv("SCX_TESTS_CONFIG", str(tmp_path / "absent.yaml"))
    (tmp_path / runner_common.BUILD_MANIFEST).write_text(json.dumps({"target": None}), encoding="utf-8")
    assert target_binary(tmp_path / "test_generated.py") is None


def test_case_test_marks_for_collection():
    @runner_common.case_test
    def starts_and_stops(self):
        pass

    assert starts_and_stops.__test__ is True


def test_engine_failure_mid_command_is_a_phase_error(settings, monkeypatch):
    def _stream(self, target, argv, tx):
        for event in [BootEnd(), SetupStart(), SetupEnd(), CommandStart()]:
            tx.put(event)
        raise OSError("pipe closed")

    monkeypatch.setattr(VmtestEngine, "_stream", _stream)
    with pytest.raises(VmPhaseError, match="failed to run command in vm: vmtest engine error: OSError: pipe closed"):
        run_target_in_vm(Topology(), "/guest/target.py", "foo_bar", settings=settings)
