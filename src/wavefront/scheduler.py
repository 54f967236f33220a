"""Phase planning and per-phase build execution.

Phases are topological layers over hard edges. Within a phase every unit
builds concurrently against bindings from the contract registry, the test
coordinator checks the built units, and units that fail get fresh build and
test cycles of their own until they pass or run out of retries.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from wavefront.config import WavefrontConfig
from wavefront.contracts import ArtifactImplementation, Binding, ContractRegistry
from wavefront.dag import Graph
from wavefront.errors import ContractDriftError, UnresolvedDependencyError
from wavefront.models import BuildOutcome, PhaseStatus, TestOutcome, TestRun, UnitStatus
from wavefront.progress import ProgressTracker
from wavefront.suites import AggregatedResult, TestCoordinator, TestTarget
from wavefront.tasks import TaskContext, TaskStatus, run_concurrently

if TYPE_CHECKING:
    from wavefront.collaborators import Collaborator

logger = logging.getLogger(__name__)

_RETRYABLE = (UnitStatus.FAILED, UnitStatus.BUILD_FAILED)


@dataclass
class Phase:
    index: int
    unit_ids: list[str]


@dataclass
class UnitResult:
    unit_id: str
    phase: int
    status: UnitStatus
    attempts: int = 1
    artifact_ref: str | None = None
    error: str | None = None
    dependencies: dict[str, Binding] = field(default_factory=dict, repr=False)
    test_runs: list[TestRun] = field(default_factory=list)
    implementation: Any = field(default=None, repr=False)
    drift: ContractDriftError | None = field(default=None, repr=False)

    def to_record(self) -> dict[str, Any]:
        return {
            "unit_id": self.unit_id,
            "phase": self.phase,
            "status": self.status.value,
            "attempts": self.attempts,
            "artifact_ref": self.artifact_ref,
            "error": self.error,
            "test_runs": [r.model_dump(mode="json") for r in self.test_runs],
        }


@dataclass
class PhaseOutcome:
    phase: Phase
    status: PhaseStatus
    results: dict[str, UnitResult] = field(default_factory=dict)
    tests: AggregatedResult | None = None
    drift: list[ContractDriftError] = field(default_factory=list)

    def units_in(self, status: UnitStatus) -> list[str]:
        return sorted(u for u, r in self.results.items() if r.status is status)


def plan_phases(graph: Graph, completed: set[str] | None = None) -> list[Phase]:
    """Split the pending units into sequential phases.

    Units in *completed* are left out and count as done. Ties within a phase
    go to higher priority, then to the lower id.
    """
    phases = []
    for offset, layer in enumerate(graph.layers(completed)):
        ordered = sorted(layer, key=lambda u: (-graph.get_node(u).priority, u))
        phases.append(Phase(index=offset + 1, unit_ids=ordered))
    return phases


class BuildScheduler:
    def __init__(
        self,
        graph: Graph,
        registry: ContractRegistry,
        tests: TestCoordinator,
        tracker: ProgressTracker,
        collaborator: Collaborator,
        config: WavefrontConfig,
    ) -> None:
        self.graph = graph
        self._registry = registry
        self._tests = tests
        self._tracker = tracker
        self._collaborator = collaborator
        self._config = config

    # ── Planning ─────────────────────────────────────────────────────

    def plan(
        self, graph: Graph | None = None, completed: set[str] | None = None
    ) -> list[Phase]:
        return plan_phases(graph or self.graph, completed)

    # ── Building ─────────────────────────────────────────────────────

    def _bind(self, unit_id: str) -> dict[str, Binding]:
        node = self.graph.get_node(unit_id)
        return {
            dep: self._registry.resolve(dep, consumer=unit_id, allow_stub=node.stub_eligible)
            for dep in node.dependencies
        }

    def _build_one(self, ctx: TaskContext) -> BuildOutcome:
        outcome = self._collaborator.build(ctx)
        if isinstance(outcome, dict):
            outcome = BuildOutcome.model_validate(outcome)
        ctx.checkpoint()
        return outcome

    def _build_timeout(self, unit_id: str) -> float:
        declaration = self.graph.get_node(unit_id).declaration
        if declaration is not None and declaration.timeout_seconds is not None:
            return declaration.timeout_seconds
        return self._config.timeouts.build

    def execute(
        self,
        phase: Phase,
        unit_ids: list[str] | None = None,
        attempts: dict[str, int] | None = None,
    ) -> list[UnitResult]:
        """Build the given units of *phase* concurrently, one task per unit.

        A failing build only affects its own unit. Successfully built units
        come back in ``testing`` state, ready for the test coordinator.
        """
        ids = phase.unit_ids if unit_ids is None else unit_ids
        attempts = attempts or {}
        results: dict[str, UnitResult] = {}
        tasks = {}
        for unit_id in ids:
            attempt = attempts.get(unit_id, 1)
            self._tracker.unit(unit_id, UnitStatus.BUILDING, attempt=attempt)
            try:
                bindings = self._bind(unit_id)
            except UnresolvedDependencyError as exc:
                logger.error("%s", exc)
                self._tracker.unit(unit_id, UnitStatus.BLOCKED, detail=str(exc))
                results[unit_id] = UnitResult(
                    unit_id, phase.index, UnitStatus.BLOCKED, attempt, error=str(exc)
                )
                continue
            ctx = TaskContext(
                unit=self.graph.get_node(unit_id).declaration,
                stage="build",
                attempt=attempt,
                phase=phase.index,
                dependencies=bindings,
                timeout=self._build_timeout(unit_id),
            )
            tasks[unit_id] = (ctx, self._build_one)
            results[unit_id] = UnitResult(
                unit_id, phase.index, UnitStatus.BUILDING, attempt, dependencies=bindings
            )

        cap = self._config.run.concurrency_cap or None
        outcomes = run_concurrently(tasks, max_workers=cap)

        for unit_id, outcome in outcomes.items():
            result = results[unit_id]
            built = outcome.value
            if outcome.status is not TaskStatus.COMPLETED or built is None or not built.success:
                result.status = UnitStatus.BUILD_FAILED
                result.error = outcome.error or (built.error if built else None) or "build failed"
                logger.warning(
                    "%s build failed (attempt %d): %s", unit_id, result.attempts, result.error
                )
                self._tracker.unit(unit_id, UnitStatus.BUILD_FAILED, detail=result.error)
                continue

            if built.contract is not None:
                try:
                    self._registry.register(unit_id, built.contract)
                except ContractDriftError as exc:
                    logger.error("%s", exc)
                    result.status = UnitStatus.BLOCKED
                    result.error = str(exc)
                    result.drift = exc
                    self._tracker.unit(unit_id, UnitStatus.BLOCKED, detail=str(exc))
                    continue

            result.status = UnitStatus.TESTING
            result.artifact_ref = built.artifact_ref
            result.implementation = built.implementation or ArtifactImplementation(
                unit_id, built.artifact_ref
            )
            self._tracker.unit(unit_id, UnitStatus.TESTING)

        return [results[u] for u in ids]

    # ── Whole phase ──────────────────────────────────────────────────

    def _targets(self, built: list[UnitResult]) -> dict[str, TestTarget]:
        return {
            r.unit_id: TestTarget(
                unit=self.graph.get_node(r.unit_id).declaration,
                artifact_ref=r.artifact_ref,
                dependencies=r.dependencies,
                iteration=r.attempts,
            )
            for r in built
            if r.status is UnitStatus.TESTING
        }

    @staticmethod
    def _apply(tests: AggregatedResult, results: dict[str, UnitResult]) -> None:
        for unit_id, run in tests.runs.items():
            result = results[unit_id]
            result.test_runs.append(run)
            if run.outcome is TestOutcome.PASSED:
                result.status = UnitStatus.PASSED
                result.error = None
            elif run.outcome is TestOutcome.CANCELLED:
                result.status = UnitStatus.CANCELLED
            else:
                result.status = UnitStatus.FAILED
                result.error = run.error or "failing: " + ", ".join(run.failing_ids)

    def run_phase(self, phase: Phase) -> PhaseOutcome:
        """Build, test and retry one phase until every unit has settled."""
        self._tracker.phase(phase.index, PhaseStatus.ACTIVE)
        logger.info("Phase %d: %s", phase.index, ", ".join(phase.unit_ids))
        outcome = PhaseOutcome(phase=phase, status=PhaseStatus.ACTIVE)
        attempts = {u: 1 for u in phase.unit_ids}

        built = self.execute(phase, attempts=attempts)
        outcome.results = {r.unit_id: r for r in built}
        cumulative = self._tests.run_phase_tests(phase.index, self._targets(built))
        self._apply(cumulative, outcome.results)
        outcome.tests = AggregatedResult(phase=phase.index, runs=dict(cumulative.runs))

        max_retries = self._config.run.max_retries
        while True:
            retry = []
            for unit_id, result in sorted(outcome.results.items()):
                if result.status not in _RETRYABLE:
                    continue
                if attempts[unit_id] > max_retries:
                    result.status = UnitStatus.ESCALATED
                    logger.error(
                        "%s escalated after %d attempt(s): %s",
                        unit_id,
                        attempts[unit_id],
                        result.error,
                    )
                    self._tracker.unit(unit_id, UnitStatus.ESCALATED, detail=result.error)
                    continue
                attempts[unit_id] += 1
                retry.append(unit_id)
            if not retry:
                break

            logger.info("Phase %d: retrying %s", phase.index, ", ".join(retry))
            rebuilt = self.execute(phase, unit_ids=retry, attempts=attempts)
            for r in rebuilt:
                r.test_runs = outcome.results[r.unit_id].test_runs
                outcome.results[r.unit_id] = r
            targets = self._targets(rebuilt)
            if targets:
                rerun = self._tests.rerun(outcome.tests, targets)
                self._apply(rerun, outcome.results)
                outcome.tests.runs.update(rerun.runs)

        for unit_id, result in outcome.results.items():
            if result.drift is not None:
                outcome.drift.append(result.drift)
            elif result.status is UnitStatus.PASSED:
                self._registry.publish(unit_id, result.implementation)

        passed = all(r.status is UnitStatus.PASSED for r in outcome.results.values())
        outcome.status = PhaseStatus.COMPLETE if passed else PhaseStatus.BLOCKED
        detail = None if passed else _blocked_detail(outcome)
        self._tracker.phase(phase.index, outcome.status, detail=detail)
        logger.info("Phase %d %s", phase.index, outcome.status.value)
        return outcome


def _blocked_detail(outcome: PhaseOutcome) -> str:
    parts = []
    for status in (UnitStatus.ESCALATED, UnitStatus.BLOCKED, UnitStatus.CANCELLED):
        units = outcome.units_in(status)
        if units:
            parts.append(f"{status.value}: {', '.join(units)}")
    return "; ".join(parts)
