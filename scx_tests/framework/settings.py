#!/usr/bin/env python3
"""Framework defaults loaded from configs/framework.yaml."""

from __future__ import annotations

import os
import string
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, Optional

import yaml

CONFIG_ENV = "SCX_TESTS_CONFIG"
DEFAULT_CONFIG_PATH = Path(__file__).resolve().parents[1] / "configs" / "framework.yaml"

DEFAULT_BINARIES: Dict[str, str] = {
    "stress-ng": "stress-ng",
    "layered": "scx_layered",
}


@dataclass
class VmSettings:
    kernel: Optional[str] = None
    memory: str = "4G"
    vmtest: str = "vmtest"
    target_name: str = "scx_test_runner"


@dataclass
class FrameworkSettings:
    binaries: Dict[str, str] = field(default_factory=lambda: dict(DEFAULT_BINARIES))
    vm: VmSettings = field(default_factory=VmSettings)
    target_binary: Optional[str] = None

    def binary(self, kind: str) -> str:
        return self.binaries.get(kind) or DEFAULT_BINARIES.get(kind) or kind


def expand_with_env(template: str, extra_env: Optional[Dict[str, str]] = None) -> str:
    env = os.environ.copy()
    if extra_env:
        env.update(extra_env)
    return string.Template(template).safe_substitute(env)


def _resolve(value, extra_env: Optional[Dict[str, str]] = None) -> Optional[str]:
    if value is None:
        return None
    expanded = expand_with_env(str(value), extra_env)
    if "$" in expanded or not expanded.strip():
        return None
    return expanded


def _read_raw(path: Path) -> Dict:
    if not path.exists():
        return {}
    try:
        raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    except (OSError, yaml.YAMLError):
        return {}
    if not isinstance(raw, dict):
        return {}
    return raw


def load_settings(path: Optional[Path] = None, extra_env: Optional[Dict[str, str]] = None) -> FrameworkSettings:
    if path is None:
        override = os.environ.get(CONFIG_ENV)
        path = Path(override) if override else DEFAULT_CONFIG_PATH
    raw = _read_raw(Path(path))

    binaries = dict(DEFAULT_BINARIES)
    raw_binaries = raw.get("binaries") or {}
    if isinstance(raw_binaries, dict):
        for kind, value in raw_binaries.items():
            resolved = _resolve(value, extra_env)
            if resolved:
                binaries[str(kind)] = resolved

    vm = VmSettings()
    raw_vm = raw.get("vm") or {}
    if isinstance(raw_vm, dict):
        vm.kernel = _resolve(raw_vm.get("kernel"), extra_env)
        vm.memory = _resolve(raw_vm.get("memory"), extra_env) or vm.memory
        vm.vmtest = _resolve(raw_vm.get("vmtest"), extra_env) or vm.vmtest
        vm.target_name = _resolve(raw_vm.get("target_name"), extra_env) or vm.target_name

    return FrameworkSettings(
        binaries=binaries,
        vm=vm,
        target_binary=_resolve(raw.get("target_binary"), extra_env),
    )
