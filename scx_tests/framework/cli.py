#!/usr/bin/env python3
"""Print generated target/runner sources for ad-hoc inspection.

Example:
  scx-tests generate target scx_tests/layered/specs/*.toml
  scx-tests generate runner scx_tests/layered/specs/basic.toml
  scx-tests describe scx_tests/layered/specs/basic.toml
"""

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path
from typing import List, Optional

from scx_tests.framework.codegen import CodegenError, generate_runner, generate_target
from scx_tests.framework.spec_model import SpecError, describe, load_suites, read_test_config, suite_name


def _generate_target(args) -> None:
    print(generate_target(load_suites(args.paths)))


def _generate_runner(args) -> None:
    print(generate_runner(suite_name(args.path), read_test_config(args.path)))


def _describe(args) -> None:
    print(json.dumps(describe(read_test_config(args.path)), indent=2))


def parse_args(argv: Optional[List[str]] = None):
    parser = argparse.ArgumentParser(prog="scx-tests", description="Scheduler integration test generator")
    commands = parser.add_subparsers(dest="command", required=True)

    generate = commands.add_parser("generate", help="Generate test sources from TOML specs")
    kinds = generate.add_subparsers(dest="kind", required=True)

    target = kinds.add_parser("target", help="Guest-side target for one or more suites")
    target.add_argument("paths", nargs="+", type=Path)
    target.set_defaults(func=_generate_target)

    runner = kinds.add_parser("runner", help="Host-side runner for one suite")
    runner.add_argument("path", type=Path, help="TOML spec to build test cases from")
    runner.set_defaults(func=_generate_runner)

    show = commands.add_parser("describe", help="Summarize a parsed suite")
    show.add_argument("path", type=Path)
    show.set_defaults(func=_describe)

    return parser.parse_args(argv)


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    try:
        args.func(args)
    except (SpecError, CodegenError) as exc:
        print(f"[scx_tests] error: {exc}", file=sys.stderr)
        return 2
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
