from __future__ import annotations

from scx_tests.layered import build as layered_build
from scx_tests.framework.spec_model import read_test_config


def test_bundled_specs_parse():
    specs = sorted(layered_build.SPEC_DIR.glob("*.toml"))
    assert specs
    for path in specs:
        cfg = read_test_config(path)
        assert cfg.workload.type == "stress-ng"
        assert cfg.scheduler.type == "layered"


def test_build_layered_suite(tmp_path, monkeypatch):
    monkeypatch.delenv("SCX_TEST_KERNEL", raising=False)
    builder = layered_build.build(tmp_path)
    assert builder.warnings == []
    target = (tmp_path / "target.py").read_text(encoding="utf-8")
    runner = (tmp_path / "test_generated.py").read_text(encoding="utf-8")
    assert '"basic_starts_and_stops": basic_starts_and_stops_target,' in target
    assert "time.sleep(100 / 1000)" in target
    assert "    def no_warmup(self):" in runner
    assert not builder.needs_rebuild()
