from __future__ import annotations

import threading
from collections import Counter
from collections.abc import Iterator
from dataclasses import replace
from pathlib import Path

import pytest

from wavefront.config import RunConfig, WavefrontConfig
from wavefront.models import BuildOutcome, TestReport
from wavefront.state_db import StateDB
from wavefront.tasks import TaskContext


@pytest.fixture()
def project_root(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest.fixture()
def db(project_root: Path) -> Iterator[StateDB]:
    with StateDB(project_root / ".wavefront" / "state.db") as state:
        yield state


@pytest.fixture()
def config() -> WavefrontConfig:
    base = WavefrontConfig()
    return replace(
        base,
        run=RunConfig(max_retries=2, fail_fast=False, concurrency_cap=0, force_integration=False),
    )


class RecordingCollaborator:
    """Succeeds unless told otherwise and records every invocation.

    ``fail_tests`` maps a unit to how many of its first test runs fail;
    ``-1`` fails them all.
    """

    def __init__(self, fail_tests: dict[str, int] | None = None) -> None:
        self.fail_tests = dict(fail_tests or {})
        self.calls: list[tuple[str, str, int]] = []
        self.bindings: dict[str, dict[str, dict]] = {}
        self._lock = threading.Lock()

    def count(self, stage: str) -> Counter[str]:
        return Counter(u for s, u, _ in self.calls if s == stage)

    def build(self, ctx: TaskContext) -> BuildOutcome:
        with self._lock:
            self.calls.append(("build", ctx.unit_id, ctx.attempt))
            self.bindings[ctx.unit_id] = {
                dep: binding.describe() for dep, binding in ctx.dependencies.items()
            }
        return BuildOutcome(success=True, artifact_ref=f"{ctx.unit_id}@{ctx.attempt}")

    def test(self, ctx: TaskContext) -> TestReport:
        with self._lock:
            self.calls.append((ctx.stage, ctx.unit_id, ctx.attempt))
            runs = sum(1 for s, u, _ in self.calls if s == "test" and u == ctx.unit_id)
        failing = self.fail_tests.get(ctx.unit_id, 0)
        if ctx.stage == "test" and (failing < 0 or runs <= failing):
            return TestReport(passed=2, failed=1, failing_ids=[f"{ctx.unit_id}::test_edge"])
        return TestReport(passed=3)


@pytest.fixture()
def recording() -> type[RecordingCollaborator]:
    return RecordingCollaborator
