#!/usr/bin/env python3
"""Generate the layered scheduler suite's target and pytest runner.

Usage:
  OUT_DIR=build/layered python3 -m scx_tests.layered.build
  python3 -m pytest build/layered/test_generated.py

Without OUT_DIR the sources land in scx_tests/layered/generated/.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from scx_tests.framework.builder import Builder

SUITE_ROOT = Path(__file__).resolve().parent
SPEC_DIR = SUITE_ROOT / "specs"
DEFAULT_OUT_DIR = SUITE_ROOT / "generated"


def build(out_dir: Optional[Path] = None) -> Builder:
    builder = (
        Builder(out_dir or os.environ.get("OUT_DIR") or DEFAULT_OUT_DIR)
        .register_test_dir(SPEC_DIR)
        .enable_runner(Path("test_generated.py"))
        .enable_target(Path("target.py"))
    )
    builder.build()
    return builder


def main() -> int:
    build()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
