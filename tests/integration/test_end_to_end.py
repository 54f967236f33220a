from __future__ import annotations

import json
import time
from dataclasses import replace
from pathlib import Path

import pytest

from wavefront.cli import EXIT_INVALID_PLAN, EXIT_OK, main
from wavefront.collaborators import CallableCollaborator
from wavefront.config import WavefrontConfig
from wavefront.models import BuildPlan, PhaseStatus, TestReport, UnitStatus
from wavefront.orchestrator import Orchestrator, RunStatus, carried_from_db
from wavefront.state_db import StateDB
from wavefront.tasks import TaskContext


def _plan(*units: dict) -> BuildPlan:
    return BuildPlan.model_validate({"units": list(units)})


def _write(project_root: Path, plan: BuildPlan) -> Path:
    path = project_root / "plan.json"
    path.write_text(json.dumps(plan.model_dump(mode="json", exclude_defaults=True)))
    return path


CHAIN = _plan(
    {"id": "A"},
    {"id": "B", "dependencies": ["A"]},
    {"id": "C", "dependencies": ["B"]},
)

STUBBED = _plan(
    {"id": "D", "exported_capabilities": ["lookup"]},
    {"id": "E", "dependencies": ["D"], "stub_eligible": True},
)

CYCLE = _plan(
    {"id": "F", "dependencies": ["G"]},
    {"id": "G", "dependencies": ["F"]},
)


# ---------------------------------------------------------------------------
# 1. Layered execution
# ---------------------------------------------------------------------------


class TestChain:
    def test_three_sequential_phases(self, config: WavefrontConfig, recording) -> None:
        collaborator = recording()
        report = Orchestrator(config, collaborator).run(CHAIN)

        assert report.status is RunStatus.COMPLETED
        assert [o.phase.unit_ids for o in report.phases] == [["A"], ["B"], ["C"]]
        builds = [u for s, u, _ in collaborator.calls if s == "build"]
        assert builds == ["A", "B", "C"]
        assert collaborator.bindings["B"] == {"A": {"kind": "real", "artifact_ref": "A@1"}}
        assert collaborator.bindings["C"] == {"B": {"kind": "real", "artifact_ref": "B@1"}}

    def test_integration_runs_every_unit_once(self, config: WavefrontConfig, recording) -> None:
        collaborator = recording()
        Orchestrator(config, collaborator).run(CHAIN)
        assert collaborator.count("integration") == {"A": 1, "B": 1, "C": 1}

    def test_join_waits_for_slow_provider(self, config: WavefrontConfig, recording) -> None:
        class SlowA(recording):
            def build(self, ctx: TaskContext):
                if ctx.unit_id == "A":
                    time.sleep(0.2)
                return super().build(ctx)

        plan = _plan({"id": "A"}, {"id": "B"}, {"id": "C", "dependencies": ["A", "B"]})
        collaborator = SlowA()
        orchestrator = Orchestrator(config, collaborator)
        report = orchestrator.run(plan)

        assert report.status is RunStatus.COMPLETED
        assert [o.phase.unit_ids for o in report.phases] == [["A", "B"], ["C"]]
        events = [(e.subject, e.to_state) for e in orchestrator.tracker.events if e.kind == "unit"]
        c_building = events.index(("C", UnitStatus.BUILDING.value))
        assert events.index(("A", UnitStatus.PASSED.value)) < c_building
        assert events.index(("B", UnitStatus.PASSED.value)) < c_building
        assert collaborator.bindings["C"] == {
            "A": {"kind": "real", "artifact_ref": "A@1"},
            "B": {"kind": "real", "artifact_ref": "B@1"},
        }

    def test_priority_orders_a_phase(self, config: WavefrontConfig, recording) -> None:
        plan = _plan({"id": "low"}, {"id": "high", "priority": 10}, {"id": "mid", "priority": 5})
        report = Orchestrator(config, recording()).run(plan)
        assert report.phases[0].phase.unit_ids == ["high", "mid", "low"]


# ---------------------------------------------------------------------------
# 2. Contract stubs
# ---------------------------------------------------------------------------


class TestStubbedConsumer:
    def test_consumer_builds_alongside_provider(self, config: WavefrontConfig, recording) -> None:
        collaborator = recording()
        orchestrator = Orchestrator(config, collaborator)
        report = orchestrator.run(STUBBED)

        assert report.status is RunStatus.COMPLETED
        assert [o.phase.unit_ids for o in report.phases] == [["D", "E"]]
        stub = collaborator.bindings["E"]["D"]
        assert stub["kind"] == "stub"
        assert stub["contract_checksum"] == orchestrator.registry.contract("D").checksum

    def test_stub_promoted_before_integration(self, config: WavefrontConfig) -> None:
        seen: dict[str, str] = {}

        def test(ctx: TaskContext) -> TestReport:
            if ctx.unit_id == "E":
                seen[ctx.stage] = ctx.dependencies["D"].describe()["kind"]
            return TestReport(passed=1)

        orchestrator = Orchestrator(config, CallableCollaborator(test=test))
        report = orchestrator.run(STUBBED)
        assert seen == {"test": "stub", "integration": "real"}
        assert report.integration.swapped == {"D": 1}
        assert not orchestrator.registry.bindings_for("E")["D"].is_stub

    def test_stub_answers_deterministically(self, config: WavefrontConfig) -> None:
        answers = []

        def build(ctx: TaskContext):
            if ctx.unit_id == "E":
                answers.append(ctx.dependencies["D"].invoke("lookup", {"key": "k"}))
                answers.append(ctx.dependencies["D"].invoke("lookup", {"key": "k"}))
            return {"success": True, "artifact_ref": ctx.unit_id}

        Orchestrator(config, CallableCollaborator(build=build)).run(STUBBED)
        assert answers == [{}, {}]

    def test_consumers_share_one_stub(self, config: WavefrontConfig, recording) -> None:
        plan = _plan(
            {"id": "D", "exported_capabilities": ["lookup"]},
            {"id": "E1", "dependencies": ["D"], "stub_eligible": True},
            {"id": "E2", "dependencies": ["D"], "stub_eligible": True},
        )
        collaborator = recording()
        report = Orchestrator(config, collaborator).run(plan)
        assert report.integration.swapped == {"D": 2}
        assert (
            collaborator.bindings["E1"]["D"]["contract_checksum"]
            == collaborator.bindings["E2"]["D"]["contract_checksum"]
        )

    def test_stub_of_later_phase_provider(self, config: WavefrontConfig, recording) -> None:
        plan = _plan(
            {"id": "base"},
            {"id": "D", "dependencies": ["base"], "exported_capabilities": ["lookup"]},
            {"id": "E", "dependencies": ["D"], "stub_eligible": True},
        )
        collaborator = recording()
        report = Orchestrator(config, collaborator).run(plan)
        assert [o.phase.unit_ids for o in report.phases] == [["E", "base"], ["D"]]
        assert report.status is RunStatus.COMPLETED
        assert collaborator.bindings["E"]["D"]["kind"] == "stub"


# ---------------------------------------------------------------------------
# 3. Validation
# ---------------------------------------------------------------------------


class TestCycle:
    def test_aborts_before_scheduling(self, config: WavefrontConfig, recording) -> None:
        collaborator = recording()
        report = Orchestrator(config, collaborator).run(CYCLE)
        assert report.status is RunStatus.ABORTED
        assert report.phases == []
        assert collaborator.calls == []
        (violation,) = report.violations
        assert violation.kind.value == "cycle"
        assert set(violation.path) == {"F", "G"}

    def test_cli_exit_code(
        self, project_root: Path, monkeypatch: pytest.MonkeyPatch
    ) -> None:
        monkeypatch.chdir(project_root)
        plan = _write(project_root, CYCLE)
        assert main(["validate", str(plan)]) == EXIT_INVALID_PLAN
        assert main(["run", str(plan), "--dry-run", "--no-live"]) == EXIT_INVALID_PLAN


# ---------------------------------------------------------------------------
# 4. Retries and escalation
# ---------------------------------------------------------------------------


class TestRetries:
    def test_flaky_unit_recovers(self, config: WavefrontConfig, recording) -> None:
        collaborator = recording(fail_tests={"B": 2})
        report = Orchestrator(config, collaborator).run(CHAIN)
        assert report.status is RunStatus.COMPLETED
        assert collaborator.count("build")["B"] == 3
        assert report.snapshot.unit("B").attempts == 3
        assert report.artifacts["B"] == "B@3"
        assert collaborator.bindings["C"]["B"]["artifact_ref"] == "B@3"

    def test_bounded_then_escalated(self, config: WavefrontConfig, recording) -> None:
        collaborator = recording(fail_tests={"B": -1})
        report = Orchestrator(config, collaborator).run(CHAIN)
        assert report.status is RunStatus.PAUSED
        assert collaborator.count("build")["B"] == config.run.max_retries + 1
        assert report.units["B"] is UnitStatus.ESCALATED
        assert report.units["C"] is UnitStatus.CANCELLED
        assert "C" not in collaborator.count("build")
        assert collaborator.count("integration") == {}

    def test_sibling_unaffected_by_failure(self, config: WavefrontConfig, recording) -> None:
        plan = _plan({"id": "bad"}, {"id": "good"})
        collaborator = recording(fail_tests={"bad": -1})
        report = Orchestrator(config, collaborator).run(plan)
        assert report.units == {"bad": UnitStatus.ESCALATED, "good": UnitStatus.PASSED}
        assert collaborator.count("build")["good"] == 1
        assert collaborator.count("test")["good"] == 1


# ---------------------------------------------------------------------------
# 5. Fail-fast
# ---------------------------------------------------------------------------


class TestFailFast:
    def test_cancels_siblings_and_pauses(self, config: WavefrontConfig) -> None:
        def test(ctx: TaskContext) -> TestReport:
            if ctx.unit_id == "bad":
                return TestReport(failed=1, failing_ids=["bad::boom"])
            ctx.wait(5)
            return TestReport(passed=1)

        config = replace(config, run=replace(config.run, fail_fast=True, max_retries=0))
        plan = _plan(
            {"id": "bad"},
            {"id": "slow1"},
            {"id": "slow2"},
            {"id": "next", "dependencies": ["bad"]},
        )
        report = Orchestrator(config, CallableCollaborator(test=test)).run(plan)

        assert report.status is RunStatus.PAUSED
        assert report.units == {
            "bad": UnitStatus.ESCALATED,
            "slow1": UnitStatus.CANCELLED,
            "slow2": UnitStatus.CANCELLED,
            "next": UnitStatus.CANCELLED,
        }
        assert report.phases[0].tests.cancelled_units == ["slow1", "slow2"]


# ---------------------------------------------------------------------------
# 6. Progress snapshots
# ---------------------------------------------------------------------------


class TestSnapshots:
    def test_idempotent_after_run(self, config: WavefrontConfig, recording) -> None:
        orchestrator = Orchestrator(config, recording())
        orchestrator.run(CHAIN)
        assert orchestrator.snapshot() == orchestrator.snapshot()

    def test_mid_run_view(self, config: WavefrontConfig) -> None:
        views = []
        running: list[Orchestrator] = []

        def build(ctx: TaskContext):
            views.append(running[0].snapshot())
            return {"success": True, "artifact_ref": ctx.unit_id}

        orchestrator = Orchestrator(config, CallableCollaborator(build=build))
        running.append(orchestrator)
        orchestrator.run(CHAIN)

        b_view = views[1]
        assert b_view.current_phase == 2
        assert b_view.status_of("A") is UnitStatus.PASSED
        assert b_view.status_of("B") is UnitStatus.BUILDING
        assert b_view.status_of("C") is UnitStatus.PENDING
        assert [p.status for p in b_view.phases] == [
            PhaseStatus.COMPLETE,
            PhaseStatus.ACTIVE,
            PhaseStatus.WAITING,
        ]

    def test_persisted_transitions(self, config: WavefrontConfig, recording, db: StateDB) -> None:
        report = Orchestrator(config, recording(), db=db).run(CHAIN)
        unit_states = [
            (t["subject"], t["to_state"])
            for t in db.list_transitions(report.run_id, kind="unit")
            if t["subject"] == "A"
        ]
        assert unit_states == [("A", "building"), ("A", "testing"), ("A", "passed")]
        assert db.get_snapshot(report.run_id)["integration"] == "passed"


# ---------------------------------------------------------------------------
# 7. Resume
# ---------------------------------------------------------------------------


class TestResume:
    def test_from_database(self, config: WavefrontConfig, recording, db: StateDB) -> None:
        first_collaborator = recording(fail_tests={"B": -1})
        first = Orchestrator(config, first_collaborator, db=db).run(CHAIN)
        assert first.status is RunStatus.PAUSED

        second_collaborator = recording()
        second = Orchestrator(config, second_collaborator, db=db).run(
            CHAIN, carried=carried_from_db(db, first.run_id), resumed_from=first.run_id
        )
        assert second.status is RunStatus.COMPLETED
        assert "A" not in second_collaborator.count("build")
        assert second_collaborator.bindings["B"] == {
            "A": {"kind": "real", "artifact_ref": "A@1"}
        }
        assert db.get_run(second.run_id)["resumed_from"] == first.run_id

    def test_only_limits_scope(self, config: WavefrontConfig, recording) -> None:
        plan = _plan(
            {"id": "A"},
            {"id": "B", "dependencies": ["A"]},
            {"id": "X"},
            {"id": "Y", "dependencies": ["X"]},
        )
        collaborator = recording(fail_tests={"B": -1, "Y": -1})
        orchestrator = Orchestrator(config, collaborator)
        first = orchestrator.run(plan)
        assert first.status is RunStatus.PAUSED

        collaborator.fail_tests.clear()
        second = orchestrator.resume(first, only=["B"])
        assert second.status is RunStatus.COMPLETED
        assert second.units["B"] is UnitStatus.PASSED
        assert second.units["Y"] is UnitStatus.PENDING


# ---------------------------------------------------------------------------
# 8. Command line
# ---------------------------------------------------------------------------


class TestCommandLine:
    def test_dry_run_report(self, project_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(project_root)
        plan = _write(project_root, STUBBED)
        report_path = project_root / "out" / "report.json"
        report_path.parent.mkdir()

        result = main(["run", str(plan), "--dry-run", "--no-live", "--report", str(report_path)])

        assert result == EXIT_OK
        report = json.loads(report_path.read_text())
        assert report["status"] == "completed"
        assert report["integration"]["swapped"] == {"D": 1}
        assert report["phases"][0]["units"][1]["unit_id"] == "E"
        assert (project_root / ".wavefront" / "state.db").is_file()

    def test_config_file_applies(self, project_root: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.chdir(project_root)
        (project_root / ".wavefront").mkdir()
        (project_root / ".wavefront" / "wavefront.toml").write_text("[run]\nmax_retries = 0\n")
        plan = _plan({"id": "A", "build_command": "exit 1"})
        report_path = project_root / "report.json"

        main(["run", str(_write(project_root, plan)), "--no-live", "--report", str(report_path)])

        report = json.loads(report_path.read_text())
        assert report["units"] == {"A": "escalated"}
        assert report["phases"][0]["units"][0]["attempts"] == 1
