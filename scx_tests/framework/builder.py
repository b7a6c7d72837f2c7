#!/usr/bin/env python3
"""Collect suite spec files and write the generated target and runner sources.

Typical use from a suite's build script::

    Builder(out_dir) \\
        .register_test_dir(Path("specs")) \\
        .enable_runner(Path("test_generated.py")) \\
        .enable_target(Path("target.py")) \\
        .build()

Every registered path is a rebuild trigger; ``needs_rebuild()`` compares them
against the fingerprints stored in the build manifest by the last ``build()``.
"""

from __future__ import annotations

import hashlib
import json
import os
import stat
import sys
from pathlib import Path
from typing import Dict, List, Optional, Union

from scx_tests.framework.codegen import check_case_identifiers, generate_runner, generate_target
from scx_tests.framework.runner_common import BUILD_MANIFEST
from scx_tests.framework.settings import FrameworkSettings
from scx_tests.framework.spec_model import SpecError, load_suites

SPEC_SUFFIX = ".toml"


def _fingerprint(path: Path) -> Optional[str]:
    if path.is_dir():
        digest = hashlib.sha256()
        for entry in sorted(path.iterdir()):
            digest.update(entry.name.encode("utf-8") + b"\0")
            if entry.is_file():
                digest.update(entry.read_bytes())
        return "dir:" + digest.hexdigest()
    if path.is_file():
        return "file:" + hashlib.sha256(path.read_bytes()).hexdigest()
    return None


class Builder:
    def __init__(self, out_dir: Optional[Union[str, Path]] = None, settings: Optional[FrameworkSettings] = None):
        out = out_dir or os.environ.get("OUT_DIR")
        if not out:
            raise SpecError("no output directory supplied and OUT_DIR is not set")
        self.out_dir = Path(out)
        self.settings = settings
        self.target_filename: Optional[Path] = None
        self.runner_filename: Optional[Path] = None
        self.test_paths: List[Path] = []
        self.rerun_if_changed: List[Path] = []
        self.warnings: List[str] = []

    def _declare_dependency(self, path: Path) -> None:
        self.rerun_if_changed.append(path)
        print(f"[builder] rerun-if-changed={path}")

    def _warn(self, message: str) -> None:
        self.warnings.append(message)
        print(f"[builder] warning: {message}", file=sys.stderr)

    def register_test(self, path: Union[str, Path]) -> "Builder":
        path = Path(path)
        self._declare_dependency(path)
        self.test_paths.append(path)
        return self

    def register_test_dir(self, test_dir: Union[str, Path]) -> "Builder":
        test_dir = Path(test_dir)
        self._declare_dependency(test_dir)
        try:
            entries = sorted(test_dir.iterdir())
        except OSError as exc:
            raise SpecError(f"failed to read test directory {test_dir}: {exc}") from exc

        added = False
        for path in entries:
            if path.is_file() and path.suffix == SPEC_SUFFIX:
                self.test_paths.append(path)
                added = True

        if not added:
            self._warn(f"Test directory `{test_dir}` provided doesn't contain any {SPEC_SUFFIX} files")
        return self

    @staticmethod
    def _relative(path: Union[str, Path]) -> Path:
        path = Path(path)
        if path.is_absolute():
            raise SpecError(f"path supplied must be relative: `{path}`")
        return path

    def enable_target(self, path: Union[str, Path]) -> "Builder":
        self.target_filename = self._relative(path)
        return self

    def enable_runner(self, path: Union[str, Path]) -> "Builder":
        self.runner_filename = self._relative(path)
        return self

    @property
    def manifest_path(self) -> Path:
        return self.out_dir / BUILD_MANIFEST

    def _fingerprints(self) -> Dict[str, Optional[str]]:
        return {str(path): _fingerprint(path) for path in self.rerun_if_changed}

    def build(self) -> None:
        configs = load_suites(self.test_paths)
        check_case_identifiers(configs)
        self.out_dir.mkdir(parents=True, exist_ok=True)

        target_path: Optional[Path] = None
        if self.target_filename is not None:
            target_path = self.out_dir / self.target_filename
            target_path.parent.mkdir(parents=True, exist_ok=True)
            target_path.write_text(generate_target(configs, settings=self.settings), encoding="utf-8")
            mode = target_path.stat().st_mode
            target_path.chmod(mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)

        if self.runner_filename is not None:
            runner_path = self.out_dir / self.runner_filename
            runner_path.parent.mkdir(parents=True, exist_ok=True)
            with open(runner_path, "w", encoding="utf-8") as f:
                for suite_name, cfg in configs:
                    f.write(generate_runner(suite_name, cfg))

        manifest = {
            "target": str(target_path.resolve()) if target_path else None,
            "runner": str((self.out_dir / self.runner_filename).resolve()) if self.runner_filename else None,
            "suites": [name for name, _ in configs],
            "inputs": self._fingerprints(),
        }
        self.manifest_path.write_text(json.dumps(manifest, indent=2), encoding="utf-8")
        print(f"[builder] generated {len(configs)} suite(s) into {self.out_dir}")

    def needs_rebuild(self) -> bool:
        try:
            manifest = json.loads(self.manifest_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError):
            return True
        if not isinstance(manifest, dict):
            return True
        for key in ("target", "runner"):
            output = manifest.get(key)
            if output and not Path(output).exists():
                return True
        return manifest.get("inputs") != self._fingerprints()
