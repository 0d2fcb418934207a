"""Pytest config for Python regression tests.

We keep helper modules (like `_tolerances.py`) alongside tests and ensure they
are importable regardless of how pytest is invoked.
"""

from __future__ import annotations

import json
import os
import sys
import time
from collections import defaultdict
from contextlib import contextmanager
from dataclasses import asdict, dataclass
from pathlib import Path
from typing import Any, Callable, Iterator

import pytest

# Make `tests/python` importable as a top-level module path.
THIS_DIR = Path(__file__).resolve().parent
if str(THIS_DIR) not in sys.path:
    sys.path.insert(0, str(THIS_DIR))

FIXTURES_DIR = THIS_DIR.parent / "fixtures"


@dataclass(frozen=True)
class _TimingRecord:
    nodeid: str
    label: str
    seconds: float


class _TimingRecorder:
    def __init__(self, *, enabled: bool, json_path: str | None):
        self.enabled = enabled
        self.json_path = json_path
        self.records: list[_TimingRecord] = []

    def add(self, nodeid: str, label: str, seconds: float) -> None:
        if not self.enabled:
            return
        self.records.append(_TimingRecord(nodeid=nodeid, label=str(label), seconds=float(seconds)))

    @contextmanager
    def time_block(self, *, nodeid: str, label: str) -> Iterator[None]:
        if not self.enabled:
            yield
            return
        t0 = time.perf_counter()
        try:
            yield
        finally:
            self.add(nodeid, label, time.perf_counter() - t0)

    def dump_json(self) -> None:
        if not (self.enabled and self.json_path):
            return
        out_path = Path(self.json_path)
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.write_text(json.dumps([asdict(r) for r in self.records], indent=2), encoding="utf-8")


class _TimingFacade:
    def __init__(self, *, recorder: _TimingRecorder, nodeid: str):
        self._recorder = recorder
        self._nodeid = nodeid

    @contextmanager
    def time(self, label: str) -> Iterator[None]:
        with self._recorder.time_block(nodeid=self._nodeid, label=label):
            yield

    def call(self, label: str, fn: Callable[..., Any], *args: Any, **kwargs: Any) -> Any:
        with self.time(label):
            return fn(*args, **kwargs)


def load_fixture(name: str) -> dict:
    return json.loads((FIXTURES_DIR / name).read_text(encoding="utf-8"))


def pytest_addoption(parser: pytest.Parser) -> None:
    parser.addoption(
        "--qc-test-timings",
        action="store_true",
        default=False,
        help="Record and print quickcls-vs-reference timing breakdown for parity tests.",
    )
    parser.addoption(
        "--qc-test-timings-json",
        action="store",
        default=None,
        help="Write recorded timing records to a JSON file path.",
    )


def pytest_configure(config: pytest.Config) -> None:
    enabled = bool(config.getoption("--qc-test-timings") or os.environ.get("QC_TEST_TIMINGS") == "1")
    json_path = config.getoption("--qc-test-timings-json") or os.environ.get("QC_TEST_TIMINGS_JSON")
    config._qc_timing_recorder = _TimingRecorder(enabled=enabled, json_path=json_path)  # type: ignore[attr-defined]


@pytest.fixture()
def qc_timing(request: pytest.FixtureRequest) -> _TimingFacade:
    recorder: _TimingRecorder = request.config._qc_timing_recorder  # type: ignore[attr-defined]
    return _TimingFacade(recorder=recorder, nodeid=request.node.nodeid)


@pytest.fixture()
def fixtures_dir() -> Path:
    return FIXTURES_DIR


@pytest.fixture()
def simple_workspace() -> dict:
    return load_fixture("simple_workspace.json")


def pytest_terminal_summary(terminalreporter: Any, exitstatus: int, config: pytest.Config) -> None:
    recorder: _TimingRecorder = config._qc_timing_recorder  # type: ignore[attr-defined]
    if not recorder.enabled or not recorder.records:
        return

    by_test: dict[str, dict[str, float]] = defaultdict(lambda: defaultdict(float))
    totals: dict[str, float] = defaultdict(float)
    for r in recorder.records:
        by_test[r.nodeid][r.label] += r.seconds
        totals[r.label] += r.seconds

    terminalreporter.section("quickcls timing breakdown (QC_TEST_TIMINGS=1 / --qc-test-timings)")

    def _fmt(secs: float) -> str:
        if secs >= 60.0:
            return f"{secs/60.0:.2f}m"
        if secs >= 1.0:
            return f"{secs:.2f}s"
        return f"{secs*1000.0:.1f}ms"

    for nodeid in sorted(by_test):
        labels = by_test[nodeid]
        terminalreporter.write_line(f"{nodeid}: " + ", ".join(f"{k}={_fmt(v)}" for k, v in sorted(labels.items())))

    terminalreporter.write_line(
        "Totals: "
        + ", ".join(f"{k}={_fmt(v)}" for k, v in sorted(totals.items(), key=lambda kv: (-kv[1], kv[0])))
    )

    recorder.dump_json()
