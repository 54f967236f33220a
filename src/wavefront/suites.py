from __future__ import annotations

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from wavefront.config import WavefrontConfig
from wavefront.models import TestOutcome, TestReport, TestRun, UnitDeclaration, UnitStatus
from wavefront.progress import ProgressTracker
from wavefront.tasks import TaskContext, TaskOutcome, TaskStatus, run_concurrently

if TYPE_CHECKING:
    from wavefront.collaborators import Collaborator

logger = logging.getLogger(__name__)

_RUN_TO_UNIT_STATUS = {
    TestOutcome.PASSED: UnitStatus.PASSED,
    TestOutcome.CANCELLED: UnitStatus.CANCELLED,
}


@dataclass
class TestTarget:
    """A built unit ready for its test suite."""

    __test__ = False

    unit: UnitDeclaration
    artifact_ref: str | None = None
    dependencies: dict[str, Any] = field(default_factory=dict)
    iteration: int = 1


@dataclass
class AggregatedResult:
    phase: int | None
    runs: dict[str, TestRun] = field(default_factory=dict)

    @property
    def passed(self) -> bool:
        """True iff every unit ran and reported zero failing tests."""
        return all(r.outcome is TestOutcome.PASSED for r in self.runs.values())

    @property
    def passed_units(self) -> list[str]:
        return sorted(u for u, r in self.runs.items() if r.outcome is TestOutcome.PASSED)

    @property
    def failed_units(self) -> list[str]:
        return sorted(u for u, r in self.runs.items() if r.is_failure)

    @property
    def cancelled_units(self) -> list[str]:
        return sorted(u for u, r in self.runs.items() if r.outcome is TestOutcome.CANCELLED)

    def failures(self) -> dict[str, dict[str, Any]]:
        """Per failing unit: its failing test ids and error detail."""
        return {
            unit_id: {
                "outcome": run.outcome.value,
                "failing_ids": list(run.failing_ids),
                "error": run.error,
            }
            for unit_id, run in sorted(self.runs.items())
            if run.is_failure
        }


def _as_report(value: Any) -> TestReport:
    if isinstance(value, TestReport):
        return value
    return TestReport.model_validate(value)


def _is_failure(outcome: TaskOutcome[TestReport]) -> bool:
    if outcome.status is TaskStatus.COMPLETED:
        return outcome.value is None or not outcome.value.ok
    return outcome.status is not TaskStatus.CANCELLED


def _to_run(unit_id: str, phase: int | None, iteration: int, outcome: TaskOutcome[TestReport]) -> TestRun:
    if outcome.status is TaskStatus.COMPLETED and outcome.value is not None:
        report = outcome.value
        return TestRun(
            unit_id=unit_id,
            phase=phase,
            iteration=iteration,
            outcome=TestOutcome.PASSED if report.ok else TestOutcome.FAILED,
            passed=report.passed,
            failed=report.failed,
            failing_ids=report.failing_ids,
            duration=report.duration or outcome.duration,
        )
    status_map = {
        TaskStatus.TIMEOUT: TestOutcome.TIMEOUT,
        TaskStatus.CANCELLED: TestOutcome.CANCELLED,
        TaskStatus.FAILED: TestOutcome.ERROR,
        TaskStatus.COMPLETED: TestOutcome.ERROR,
    }
    return TestRun(
        unit_id=unit_id,
        phase=phase,
        iteration=iteration,
        outcome=status_map[outcome.status],
        duration=outcome.duration,
        error=outcome.error or "test operation returned no report",
    )


class TestCoordinator:
    """Runs and aggregates the test suites of a phase concurrently."""

    __test__ = False

    def __init__(
        self,
        collaborator: Collaborator,
        tracker: ProgressTracker,
        config: WavefrontConfig,
    ) -> None:
        self._collaborator = collaborator
        self._tracker = tracker
        self._config = config

    def max_workers(self, size: int) -> int | None:
        """Concurrency for a batch of *size* units; ``None`` is uncapped."""
        policy = self._config.test.policy
        if policy == "auto":
            full = size <= self._config.test.full_parallel_threshold
            policy = "full" if full else "bounded"
        cap = None if policy == "full" else self._config.test.slots
        global_cap = self._config.run.concurrency_cap
        if global_cap:
            cap = global_cap if cap is None else min(cap, global_cap)
        return cap

    def _timeout(self, unit: UnitDeclaration, stage: str) -> float:
        if unit.timeout_seconds is not None:
            return unit.timeout_seconds
        if stage == "integration":
            return self._config.timeouts.integration
        return self._config.timeouts.test

    def _execute(
        self,
        phase: int | None,
        targets: Mapping[str, TestTarget],
        stage: str,
        fail_fast: bool,
    ) -> AggregatedResult:
        tasks = {
            unit_id: (
                TaskContext(
                    unit=target.unit,
                    stage=stage,
                    attempt=target.iteration,
                    phase=phase,
                    dependencies=dict(target.dependencies),
                    artifact_ref=target.artifact_ref,
                    timeout=self._timeout(target.unit, stage),
                ),
                self._run_suite,
            )
            for unit_id, target in sorted(targets.items())
        }
        outcomes = run_concurrently(
            tasks,
            max_workers=self.max_workers(len(tasks)),
            fail_fast=fail_fast,
            is_failure=_is_failure,
        )
        result = AggregatedResult(phase=phase)
        for unit_id, outcome in outcomes.items():
            result.runs[unit_id] = _to_run(unit_id, phase, targets[unit_id].iteration, outcome)
        return result

    def _run_suite(self, ctx: TaskContext) -> TestReport:
        report = _as_report(self._collaborator.test(ctx))
        ctx.checkpoint()
        return report

    def _settle(self, result: AggregatedResult) -> None:
        for unit_id, run in sorted(result.runs.items()):
            status = _RUN_TO_UNIT_STATUS.get(run.outcome, UnitStatus.FAILED)
            detail = None
            if run.is_failure:
                detail = run.error or f"failing: {', '.join(run.failing_ids) or run.failed}"
                logger.warning(
                    "%s failed tests (attempt %d): %s", unit_id, run.iteration, detail
                )
            self._tracker.unit(unit_id, status, detail=detail)

    def run_phase_tests(
        self,
        phase: int | None,
        targets: Mapping[str, TestTarget],
        fail_fast: bool | None = None,
    ) -> AggregatedResult:
        """Test every built unit of a phase and record each unit's result."""
        if fail_fast is None:
            fail_fast = self._config.run.fail_fast
        result = self._execute(phase, targets, "test", fail_fast)
        self._settle(result)
        logger.info(
            "Phase %s tests: %d passed, %d failed, %d cancelled",
            phase,
            len(result.passed_units),
            len(result.failed_units),
            len(result.cancelled_units),
        )
        return result

    def rerun(
        self,
        previous: AggregatedResult,
        targets: Mapping[str, TestTarget],
        failed_only: bool = True,
    ) -> AggregatedResult:
        """Test again every targeted unit that has not passed in *previous*.

        Units cancelled in *previous* are left out unless *failed_only* is
        false. Reruns never fail fast: each unit's retry is independent.
        """
        skip = set(previous.passed_units)
        if failed_only:
            skip.update(previous.cancelled_units)
        selected = {u: t for u, t in targets.items() if u not in skip}
        return self.run_phase_tests(previous.phase, selected, fail_fast=False)

    def run_integration(self, targets: Mapping[str, TestTarget]) -> AggregatedResult:
        """One aggregated run across all units; unit states are left alone."""
        result = self._execute(None, targets, "integration", fail_fast=False)
        for unit_id in result.failed_units:
            logger.warning("Integration failure in %s: %s", unit_id, result.failures()[unit_id])
        return result
