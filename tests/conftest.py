from __future__ import annotations

import textwrap
from pathlib import Path

import pytest

from scx_tests.framework.settings import FrameworkSettings, VmSettings

SAMPLE_SPEC = textwrap.dedent(
    """
    [topology]
    sockets = 2
    cores_per_llc = 2

    [workload]
    type = "stress-ng"
    args = ["--cpu", "4"]

    [scheduler]
    type = "layered"
    args = ["-v"]

    [[scheduler.config]]
    name = "normal"
    matches = [[]]

    [scheduler.config.kind.Open]
    preempt = false

    [cases.bar]
    delay_s = 3
    type = "bpftrace"
    script = "BEGIN { exit(); }"
    expect_json = "{}"

    [cases.quick]
    delay_s = 0
    type = "bpftrace"
    script = "BEGIN { exit(); }"
    expect_json = "{}"
    """
)


@pytest.fixture
def sample_spec() -> str:
    return SAMPLE_SPEC


@pytest.fixture
def write_spec(tmp_path: Path):
    def _write(name: str, text: str = SAMPLE_SPEC, directory: Path = None) -> Path:
        root = directory or tmp_path / "specs"
        root.mkdir(parents=True, exist_ok=True)
        path = root / name
        path.write_text(text, encoding="utf-8")
        return path

    return _write


@pytest.fixture
def settings() -> FrameworkSettings:
    return FrameworkSettings(
        binaries={"stress-ng": "/usr/bin/stress-ng", "layered": "/opt/scx/scx_layered"},
        vm=VmSettings(kernel="/boot/bzImage", memory="2G", vmtest="vmtest", target_name="scx_test_runner"),
    )
