#!/usr/bin/env python3
"""Schema and parsing for declarative scheduler test suites (one TOML file per suite).

A suite document looks like::

    [topology]
    cores_per_llc = 4

    [workload]
    type = "stress-ng"
    args = ["--cpu", "4"]

    [scheduler]
    type = "layered"
    args = ["-v"]
    config = [...]

    [cases.smoke]
    delay_s = 2
    type = "bpftrace"
    script = "..."
    expect_json = "{}"

Absent topology fields and case delays take their defaults; the workload,
scheduler and case test tables are tagged unions discriminated by ``type``.
"""

from __future__ import annotations

import json
import keyword
import sys
import tomllib
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import Any, Callable, ClassVar, Dict, Iterable, List, Mapping, Tuple

U8_MAX = 255
U32_MAX = 2**32 - 1

TOPOLOGY_KEYS = {"sockets", "llcs_per_socket", "cores_per_llc", "threads_per_core"}
SUITE_KEYS = {"topology", "workload", "scheduler", "cases"}


class SpecError(RuntimeError):
    pass


class ParseError(SpecError):
    pass


def _warn_unknown_keys(label: str, mapping: Mapping, allowed) -> None:
    unknown = sorted(set(mapping.keys()) - set(allowed))
    if unknown:
        print(
            f"[spec_model] warning: unrecognized keys {unknown} in {label}; they will be ignored",
            file=sys.stderr,
        )


def _require_table(label: str, value) -> Mapping:
    if not isinstance(value, dict):
        raise ParseError(f"{label} must be a table, got {type(value).__name__}")
    return value


def _coerce_int(label: str, value, minimum: int, maximum: int) -> int:
    # bool is an int subclass; `sockets = true` is a typo, not a count.
    if isinstance(value, bool) or not isinstance(value, int):
        raise ParseError(f"{label} must be an integer, got {value!r}")
    if value < minimum or value > maximum:
        raise ParseError(f"{label} must be between {minimum} and {maximum}, got {value}")
    return value


def _string_list(label: str, value) -> List[str]:
    if not isinstance(value, list) or not all(isinstance(item, str) for item in value):
        raise ParseError(f"{label} must be an array of strings")
    return list(value)


def _required_string(label: str, mapping: Mapping, key: str) -> str:
    if key not in mapping:
        raise ParseError(f"{label} is missing required field '{key}'")
    value = mapping[key]
    if not isinstance(value, str):
        raise ParseError(f"{label}.{key} must be a string")
    return value


def is_identifier(name: str) -> bool:
    return name.isidentifier() and not keyword.iskeyword(name)


@dataclass
class Topology:
    sockets: int = 1
    llcs_per_socket: int = 1
    cores_per_llc: int = 2
    threads_per_core: int = 2

    def num_cpus(self) -> int:
        return self.sockets * self.llcs_per_socket * self.cores_per_llc

    def to_json(self) -> str:
        return json.dumps(asdict(self), separators=(",", ":"))

    @classmethod
    def from_mapping(cls, data: Mapping, label: str = "topology") -> "Topology":
        _require_table(label, data)
        _warn_unknown_keys(label, data, TOPOLOGY_KEYS)
        defaults = cls()
        values = {
            key: _coerce_int(f"{label}.{key}", data.get(key, getattr(defaults, key)), 1, U8_MAX)
            for key in sorted(TOPOLOGY_KEYS)
        }
        return cls(**values)


@dataclass
class StressNg:
    TYPE: ClassVar[str] = "stress-ng"

    args: List[str]

    @property
    def type(self) -> str:
        return self.TYPE

    @classmethod
    def from_mapping(cls, data: Mapping, label: str) -> "StressNg":
        if "args" not in data:
            raise ParseError(f"{label} is missing required field 'args'")
        return cls(args=_string_list(f"{label}.args", data["args"]))


@dataclass
class Layered:
    TYPE: ClassVar[str] = "layered"

    config: Any
    args: List[str] = field(default_factory=list)

    @property
    def type(self) -> str:
        return self.TYPE

    @classmethod
    def from_mapping(cls, data: Mapping, label: str) -> "Layered":
        if "config" not in data:
            raise ParseError(f"{label} is missing required field 'config'")
        config = data["config"]
        if not isinstance(config, (dict, list)):
            raise ParseError(f"{label}.config must be a table or an array")
        return cls(config=config, args=_string_list(f"{label}.args", data.get("args", [])))


@dataclass
class Bpftrace:
    TYPE: ClassVar[str] = "bpftrace"

    script: str
    expect_json: str

    @property
    def type(self) -> str:
        return self.TYPE

    @classmethod
    def from_mapping(cls, data: Mapping, label: str) -> "Bpftrace":
        return cls(
            script=_required_string(label, data, "script"),
            expect_json=_required_string(label, data, "expect_json"),
        )


WORKLOAD_TYPES: Dict[str, Callable[[Mapping, str], Any]] = {
    StressNg.TYPE: StressNg.from_mapping,
}
SCHEDULER_TYPES: Dict[str, Callable[[Mapping, str], Any]] = {
    Layered.TYPE: Layered.from_mapping,
}
CASE_TEST_TYPES: Dict[str, Callable[[Mapping, str], Any]] = {
    Bpftrace.TYPE: Bpftrace.from_mapping,
}

_VARIANT_KEYS = {
    StressNg.TYPE: {"type", "args"},
    Layered.TYPE: {"type", "args", "config"},
    Bpftrace.TYPE: {"type", "delay_s", "script", "expect_json"},
}


def _parse_variant(label: str, data, registry: Dict[str, Callable[[Mapping, str], Any]]):
    table = _require_table(label, data)
    tag = table.get("type")
    if tag is None:
        raise ParseError(f"{label} is missing its 'type' tag (expected one of {sorted(registry)})")
    parser = registry.get(tag)
    if parser is None:
        raise ParseError(f"{label} has unsupported type {tag!r} (expected one of {sorted(registry)})")
    _warn_unknown_keys(label, table, _VARIANT_KEYS.get(tag, {"type"}))
    return parser(table, label)


@dataclass
class Case:
    test: Any
    delay_s: int = 5

    @classmethod
    def from_mapping(cls, data, label: str) -> "Case":
        table = _require_table(label, data)
        delay_s = _coerce_int(f"{label}.delay_s", table.get("delay_s", 5), 0, U32_MAX)
        return cls(test=_parse_variant(label, table, CASE_TEST_TYPES), delay_s=delay_s)


@dataclass
class TestConfig:
    __test__ = False

    topology: Topology
    workload: Any
    scheduler: Any
    cases: Dict[str, Case] = field(default_factory=dict)

    @classmethod
    def from_mapping(cls, data: Mapping, label: str = "<suite>") -> "TestConfig":
        _warn_unknown_keys(label, data, SUITE_KEYS)
        for key in ("workload", "scheduler"):
            if key not in data:
                raise ParseError(f"missing required table [{key}]")

        topology = Topology.from_mapping(data.get("topology", {}), label="topology")
        workload = _parse_variant("workload", data["workload"], WORKLOAD_TYPES)
        scheduler = _parse_variant("scheduler", data["scheduler"], SCHEDULER_TYPES)

        cases: Dict[str, Case] = {}
        for name, raw_case in _require_table("cases", data.get("cases", {})).items():
            if not is_identifier(name):
                raise ParseError(f"case name {name!r} is not a valid identifier")
            cases[name] = Case.from_mapping(raw_case, label=f"cases.{name}")
        return cls(topology=topology, workload=workload, scheduler=scheduler, cases=cases)


def parse_test_config(text: str, label: str = "<string>") -> TestConfig:
    try:
        data = tomllib.loads(text)
    except tomllib.TOMLDecodeError as exc:
        raise ParseError(f"{label}: malformed TOML: {exc}") from exc
    try:
        return TestConfig.from_mapping(data, label=label)
    except ParseError as exc:
        raise ParseError(f"{label}: {exc}") from exc


def read_test_config(path: Path) -> TestConfig:
    path = Path(path)
    if not path.is_file():
        raise SpecError(f"path provided must be a filename: {path}")
    try:
        content = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise SpecError(f"failed to read {path}: {exc}") from exc
    return parse_test_config(content, label=str(path))


def suite_name(path: Path) -> str:
    return Path(path).stem


def load_suites(paths: Iterable[Path]) -> List[Tuple[str, TestConfig]]:
    """Parse each spec file into a ``(suite_name, TestConfig)`` pair."""
    suites = []
    seen: Dict[str, Path] = {}
    for path in paths:
        name = suite_name(path)
        if name in seen:
            raise SpecError(f"duplicate suite name {name!r}: {seen[name]} and {path}")
        seen[name] = Path(path)
        suites.append((name, read_test_config(path)))
    return suites


def describe(config: TestConfig) -> Dict[str, object]:
    return {
        "topology": asdict(config.topology),
        "num_cpus": config.topology.num_cpus(),
        "workload": config.workload.type,
        "scheduler": config.scheduler.type,
        "cases": sorted(config.cases),
    }
