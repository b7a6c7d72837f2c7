#!/usr/bin/env python3
"""Turn parsed suites into Python source for the guest target and the host runner.

The target is one executable script for all suites: a starter function per
suite for its workload and scheduler, a ``<suite>_<case>_target`` function per
case and a ``main`` that dispatches on the ``<suite>_<case>`` argument. The
runner is a pytest module with one class per suite and one test per case; the
same identifier links a runner test to its target case.
"""

from __future__ import annotations

import json
from typing import Callable, Dict, List, Optional, Sequence, Tuple

from scx_tests.framework.settings import FrameworkSettings, load_settings
from scx_tests.framework.spec_model import TestConfig, is_identifier

MIN_DELAY_MS = 100
RESERVED_CASE_NAMES = {"run", "TARGET_BINARY"}

TARGET_HEADER = '''#!/usr/bin/env python3
"""Generated scheduler test target. Do not edit."""

import contextlib
import sys
import time

from scx_tests.framework import target_common

'''

TARGET_MAIN = '''

def main(argv=None):
    args = sys.argv[1:] if argv is None else argv
    if not args:
        raise SystemExit("case argument required")
    arg = args[0]
    target = CASES.get(arg)
    if target is None:
        raise SystemExit(f"invalid case name: {arg}")
    target()
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
'''


class CodegenError(RuntimeError):
    pass


def codegen_string(value: str) -> str:
    # Only the quote is escaped; backslashes pass through as written.
    return '"' + value.replace('"', '\\"') + '"'


def codegen_list_of_strings(strings: Sequence[str]) -> str:
    return "[" + "".join(f"{codegen_string(s)}, " for s in strings) + "]"


def case_identifier(suite_name: str, case_name: str) -> str:
    return f"{suite_name}_{case_name}"


def delay_ms(delay_s: int) -> int:
    return max(delay_s * 1000, MIN_DELAY_MS)


def _check_suite_name(suite_name: str) -> None:
    if not is_identifier(suite_name):
        raise CodegenError(f"suite name {suite_name!r} is not a valid identifier")


def _check_case_name(suite_name: str, case_name: str) -> None:
    if not is_identifier(case_name) or case_name in RESERVED_CASE_NAMES:
        raise CodegenError(f"case name {case_name!r} in suite {suite_name!r} cannot be used as a test name")


def check_case_identifiers(suites: Sequence[Tuple[str, TestConfig]]) -> None:
    """Reject suites whose <suite>_<case> identifiers collide, e.g. a_b.c and a.b_c."""
    owners: Dict[str, str] = {}
    for suite_name, cfg in suites:
        for case_name in cfg.cases:
            _check_case_name(suite_name, case_name)
            full_name = case_identifier(suite_name, case_name)
            if full_name in owners:
                raise CodegenError(
                    f"duplicate case identifier {full_name!r} from suites {owners[full_name]!r} and {suite_name!r}"
                )
            owners[full_name] = suite_name


def _serialize(value, what: str) -> str:
    try:
        return json.dumps(value, separators=(",", ":"), allow_nan=False)
    except (TypeError, ValueError) as exc:
        raise CodegenError(f"failed to serialize {what}: {exc}") from exc


def _generate_stress_ng(workload, settings: FrameworkSettings) -> List[str]:
    return [
        f"    args = {codegen_list_of_strings(workload.args)}",
        f"    return target_common.StressNgWorkload.start({codegen_string(settings.binary('stress-ng'))}, args)",
    ]


def _generate_layered(scheduler, settings: FrameworkSettings) -> List[str]:
    cfg = _serialize(scheduler.config, "layered scheduler config")
    return [
        f"    args = {codegen_list_of_strings(scheduler.args)}",
        # repr round-trips the JSON text exactly.
        f"    cfg = {cfg!r}",
        f"    return target_common.SchedulerHandle.start_layered({codegen_string(settings.binary('layered'))}, args, cfg)",
    ]


WORKLOAD_GENERATORS: Dict[str, Callable[[object, FrameworkSettings], List[str]]] = {
    "stress-ng": _generate_stress_ng,
}
SCHEDULER_GENERATORS: Dict[str, Callable[[object, FrameworkSettings], List[str]]] = {
    "layered": _generate_layered,
}


def _generate_starter(kind: str, suite_name: str, variant, generators, settings: FrameworkSettings) -> List[str]:
    generator = generators.get(variant.type)
    if generator is None:
        raise CodegenError(f"unsupported {kind} type {variant.type!r} in suite {suite_name!r}")
    return [f"def run_{kind}_{suite_name}():", *generator(variant, settings), "", ""]


def _generate_case(suite_name: str, case_name: str, case) -> List[str]:
    full_name = case_identifier(suite_name, case_name)
    delay = delay_ms(case.delay_s)
    return [
        f"def {full_name}_target():",
        "    with contextlib.ExitStack() as stack:",
        f"        workload = stack.enter_context(run_workload_{suite_name}())",
        f"        scheduler = stack.enter_context(run_scheduler_{suite_name}())",
        f'        print("workload & scheduler started, sleeping for {delay}ms while they warm up", flush=True)',
        f"        time.sleep({delay} / 1000)",
        '        target_common.assert_alive(workload, "workload stopped prematurely")',
        '        target_common.assert_alive(scheduler, "scheduler stopped prematurely")',
        "        workload.cleanup()",
        "        scheduler.cleanup()",
        "",
        "",
    ]


def generate_target(
    suites: Sequence[Tuple[str, TestConfig]],
    settings: Optional[FrameworkSettings] = None,
) -> str:
    settings = settings or load_settings()
    lines: List[str] = []

    for suite_name, cfg in suites:
        _check_suite_name(suite_name)
        lines += _generate_starter("workload", suite_name, cfg.workload, WORKLOAD_GENERATORS, settings)
        lines += _generate_starter("scheduler", suite_name, cfg.scheduler, SCHEDULER_GENERATORS, settings)

    check_case_identifiers(suites)
    dispatch: List[str] = []
    for suite_name, cfg in suites:
        for case_name in sorted(cfg.cases):
            full_name = case_identifier(suite_name, case_name)
            lines += _generate_case(suite_name, case_name, cfg.cases[case_name])
            dispatch.append(f"    {codegen_string(full_name)}: {full_name}_target,")

    lines += ["CASES = {", *dispatch, "}"]
    return TARGET_HEADER + "\n" + "\n".join(lines) + "\n" + TARGET_MAIN


def generate_runner(suite_name: str, cfg: TestConfig) -> str:
    _check_suite_name(suite_name)
    topology = cfg.topology.to_json()
    lines = [
        "from scx_tests.framework import runner_common",
        "",
        "",
        f"class {suite_name}:",
        "    __test__ = True",
        "    TARGET_BINARY = runner_common.target_binary(__file__)",
        "",
        "    @staticmethod",
        "    def run():",
        '        raise NotImplementedError("run")',
    ]
    for case_name in sorted(cfg.cases):
        _check_case_name(suite_name, case_name)
        full_name = case_identifier(suite_name, case_name)
        lines += [
            "",
            "    @runner_common.case_test",
            f"    def {case_name}(self):",
            f"        topo = runner_common.decode_topology({codegen_string(topology)})",
            f"        target_status = runner_common.run_target_in_vm(topo, self.TARGET_BINARY, {codegen_string(full_name)})",
            '        assert target_status == 0, f"target failed with exit code {target_status}"',
        ]
    return "\n".join(lines) + "\n\n\n"
