"""File for tests."""

from __future__ import annotations

import io
from collections.abc import Callable, Iterator
from pathlib import Path
from typing import Any

import pytest
import yaml

from processor import ControlUnit, Datapath


def pytest_configure(config: Any) -> None:
    """Configure the tests."""
    config.addinivalue_line(
        "markers",
        "golden_test(pattern): parameterize test with YAML files matching pattern",
    )


def _iter_marker_patterns(node: Any) -> Iterator[str]:
    """Yield pattern strings from golden_test markers on `node`."""
    for m in node.iter_markers(name="golden_test"):
        if m.args:
            yield m.args[0]
        else:
            yield "golden/*.yaml"


def _load_golden(p: Path) -> dict[str, Any]:
    """Load one golden record; a broken file becomes a record the test reports."""
    try:
        with p.open("r", encoding="utf-8") as f:
            data = yaml.safe_load(f) or {}
    except (OSError, yaml.YAMLError) as e:
        data = {"__yaml_load_error__": str(e)}
    if not isinstance(data, dict):
        data = {"__yaml_load_error__": f"{p.name} does not contain a mapping"}
    data.setdefault("__path__", str(p))
    data.setdefault("__name__", p.name)
    return data


def pytest_generate_tests(metafunc: Any) -> None:
    """Generate tests (parametrization) from YAML golden files."""
    if "golden" not in metafunc.fixturenames:
        return

    patterns: list[str] = list(_iter_marker_patterns(metafunc.definition))
    if not patterns:
        patterns = ["golden/*.yaml"]

    root = Path(metafunc.config.rootpath)

    files: list[Path] = []
    for pat in patterns:
        files.extend(sorted(root.glob(pat)))

    if not files:
        return

    metafunc.parametrize("golden", [_load_golden(p) for p in files], ids=[p.name for p in files])


class Machine:
    """Datapath + ControlUnit pair wired to in-memory streams."""

    def __init__(self, dp: Datapath, cu: ControlUnit, stdout: io.StringIO) -> None:
        self.dp = dp
        self.cu = cu
        self._stdout = stdout

    @property
    def output(self) -> str:
        return self._stdout.getvalue()

    def run(self) -> tuple[int, str]:
        return self.cu.run()


@pytest.fixture
def machine() -> Callable[..., Machine]:
    """Build a machine for a word list with optional stdin text and preloaded registers."""

    def _make(
        program: list[int],
        stdin: str = "",
        registers: list[int] | None = None,
        mem_cells: int = 32768,
        halt_on_empty_ret: bool = False,
        input_lines: list[str] | None = None,
    ) -> Machine:
        out = io.StringIO()
        dp = Datapath(
            program,
            mem_cells=mem_cells,
            registers=registers,
            stdin=io.StringIO(stdin),
            stdout=out,
            input_lines=input_lines,
        )
        return Machine(dp, ControlUnit(dp, halt_on_empty_ret=halt_on_empty_ret), out)

    return _make
