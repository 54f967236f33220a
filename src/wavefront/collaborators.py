"""The boundary to whatever actually builds and tests a unit.

The orchestrator calls ``build`` and ``test`` once per unit per attempt and
never looks inside what a unit produces.
"""

from __future__ import annotations

import importlib
import json
import logging
import os
import subprocess
import time
from collections.abc import Callable
from pathlib import Path
from typing import Protocol, runtime_checkable

from pydantic import ValidationError

from wavefront.errors import CollaboratorLoadError, TimeoutFailure
from wavefront.models import BuildOutcome, TestReport
from wavefront.tasks import TaskContext

logger = logging.getLogger(__name__)


@runtime_checkable
class Collaborator(Protocol):
    def build(self, ctx: TaskContext) -> BuildOutcome: ...

    def test(self, ctx: TaskContext) -> TestReport: ...


def _default_build(ctx: TaskContext) -> BuildOutcome:
    return BuildOutcome(success=True, artifact_ref=f"{ctx.unit_id}@{ctx.attempt}")


def _default_test(ctx: TaskContext) -> TestReport:
    return TestReport(passed=1)


class CallableCollaborator:
    """Adapts plain callables. Missing callables always succeed."""

    def __init__(
        self,
        build: Callable[[TaskContext], BuildOutcome] | None = None,
        test: Callable[[TaskContext], TestReport | dict] | None = None,
    ) -> None:
        self._build = build or _default_build
        self._test = test or _default_test

    def build(self, ctx: TaskContext) -> BuildOutcome:
        return self._build(ctx)

    def test(self, ctx: TaskContext) -> TestReport:
        result = self._test(ctx)
        if isinstance(result, dict):
            return TestReport.model_validate(result)
        return result


class CommandCollaborator:
    """Runs each unit's ``build_command`` / ``test_command`` in a shell.

    Commands see the unit id, attempt, stage, artifact reference and a JSON
    description of their resolved dependencies in the environment. A test
    command may print a JSON test report as its last output line; otherwise
    the exit code decides.
    """

    def __init__(self, cwd: Path) -> None:
        self._cwd = cwd

    def _run(self, command: str, ctx: TaskContext) -> subprocess.CompletedProcess[str]:
        env = dict(os.environ)
        env.update(
            {
                "WAVEFRONT_UNIT": ctx.unit_id,
                "WAVEFRONT_ATTEMPT": str(ctx.attempt),
                "WAVEFRONT_STAGE": ctx.stage,
                "WAVEFRONT_ARTIFACT": ctx.artifact_ref or "",
                "WAVEFRONT_DEPENDENCIES": json.dumps(
                    {dep: binding.describe() for dep, binding in ctx.dependencies.items()},
                    sort_keys=True,
                ),
            }
        )
        ctx.checkpoint()
        try:
            return subprocess.run(
                command,
                shell=True,
                cwd=self._cwd,
                env=env,
                capture_output=True,
                text=True,
                timeout=ctx.remaining(),
            )
        except subprocess.TimeoutExpired as exc:
            raise TimeoutFailure(ctx.key, ctx.timeout or 0.0) from exc

    def build(self, ctx: TaskContext) -> BuildOutcome:
        command = ctx.unit.build_command
        if not command:
            return BuildOutcome(success=True, artifact_ref=ctx.unit_id)
        result = self._run(command, ctx)
        if result.returncode != 0:
            error = (result.stderr or result.stdout).strip()[-2000:]
            return BuildOutcome(
                success=False,
                error=f"exit {result.returncode}: {error}" if error else f"exit {result.returncode}",
            )
        lines = result.stdout.strip().splitlines()
        return BuildOutcome(success=True, artifact_ref=lines[-1] if lines else ctx.unit_id)

    def test(self, ctx: TaskContext) -> TestReport:
        command = ctx.unit.test_command
        if not command:
            return TestReport(passed=0)
        started = time.monotonic()
        result = self._run(command, ctx)
        duration = time.monotonic() - started

        lines = result.stdout.strip().splitlines()
        if lines:
            try:
                report = TestReport.model_validate_json(lines[-1])
            except ValidationError:
                logger.debug("%s: last output line is not a test report", ctx.key)
            else:
                if report.duration == 0.0:
                    report = report.model_copy(update={"duration": duration})
                return report

        if result.returncode == 0:
            return TestReport(passed=1, duration=duration)
        return TestReport(failed=1, failing_ids=[ctx.unit_id], duration=duration)


def load_collaborator(reference: str) -> Collaborator:
    """Import ``package.module:attribute``; call it if it is a factory."""
    module_name, sep, attribute = reference.partition(":")
    if not sep or not module_name or not attribute:
        msg = f"Collaborator reference must look like 'package.module:name', got {reference!r}"
        raise CollaboratorLoadError(msg)
    try:
        module = importlib.import_module(module_name)
    except ImportError as exc:
        msg = f"Cannot import {module_name!r}: {exc}"
        raise CollaboratorLoadError(msg) from exc
    try:
        target = getattr(module, attribute)
    except AttributeError as exc:
        msg = f"{module_name!r} has no attribute {attribute!r}"
        raise CollaboratorLoadError(msg) from exc

    if isinstance(target, type) or not isinstance(target, Collaborator):
        target = target() if callable(target) else target
    if not isinstance(target, Collaborator):
        msg = f"{reference} does not provide build() and test()"
        raise CollaboratorLoadError(msg)
    return target
