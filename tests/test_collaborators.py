from __future__ import annotations

import json
import sys
import time
import types
from collections.abc import Iterator
from pathlib import Path

import pytest

from wavefront.collaborators import (
    CallableCollaborator,
    Collaborator,
    CommandCollaborator,
    load_collaborator,
)
from wavefront.contracts import ArtifactImplementation, Binding
from wavefront.errors import CollaboratorLoadError, TimeoutFailure
from wavefront.models import BuildOutcome, TestReport, UnitDeclaration
from wavefront.tasks import TaskContext


def _ctx(stage: str = "build", **unit) -> TaskContext:
    return TaskContext(unit=UnitDeclaration(id="svc", **unit), stage=stage, attempt=2)


class TestCallableCollaborator:
    def test_defaults_always_succeed(self) -> None:
        collaborator = CallableCollaborator()
        outcome = collaborator.build(_ctx())
        assert outcome.success
        assert outcome.artifact_ref == "svc@2"
        assert collaborator.test(_ctx("test")).ok

    def test_dict_report_coerced(self) -> None:
        collaborator = CallableCollaborator(test=lambda ctx: {"passed": 1, "failed": 2})
        report = collaborator.test(_ctx("test"))
        assert isinstance(report, TestReport)
        assert report.failed == 2

    def test_satisfies_protocol(self) -> None:
        assert isinstance(CallableCollaborator(), Collaborator)


class TestCommandCollaborator:
    def test_build_without_command(self, tmp_path: Path) -> None:
        outcome = CommandCollaborator(tmp_path).build(_ctx())
        assert outcome == BuildOutcome(success=True, artifact_ref="svc")

    def test_build_artifact_is_last_line(self, tmp_path: Path) -> None:
        ctx = _ctx(build_command="echo compiling; echo dist/svc-$WAVEFRONT_ATTEMPT.whl")
        outcome = CommandCollaborator(tmp_path).build(ctx)
        assert outcome.success
        assert outcome.artifact_ref == "dist/svc-2.whl"

    def test_build_failure_carries_stderr(self, tmp_path: Path) -> None:
        ctx = _ctx(build_command="echo 'missing header' >&2; exit 3")
        outcome = CommandCollaborator(tmp_path).build(ctx)
        assert not outcome.success
        assert outcome.error == "exit 3: missing header"

    def test_runs_in_project_root(self, tmp_path: Path) -> None:
        (tmp_path / "marker.txt").write_text("here\n")
        outcome = CommandCollaborator(tmp_path).build(_ctx(build_command="cat marker.txt"))
        assert outcome.artifact_ref == "here"

    def test_dependencies_in_environment(self, tmp_path: Path) -> None:
        ctx = _ctx(build_command='echo "$WAVEFRONT_DEPENDENCIES"')
        ctx.dependencies = {
            "db": Binding("db", "svc", ArtifactImplementation("db", "db@1"), is_stub=False)
        }
        outcome = CommandCollaborator(tmp_path).build(ctx)
        assert json.loads(outcome.artifact_ref) == {
            "db": {"kind": "real", "artifact_ref": "db@1"}
        }

    def test_test_json_report(self, tmp_path: Path) -> None:
        line = json.dumps({"passed": 4, "failed": 1, "failing_ids": ["t3"]})
        ctx = _ctx("test", test_command=f"echo running; echo '{line}'")
        report = CommandCollaborator(tmp_path).test(ctx)
        assert report.passed == 4
        assert report.failing_ids == ["t3"]
        assert report.duration > 0

    @pytest.mark.parametrize(
        ("command", "ok"),
        [("true", True), ("echo not a report; exit 1", False)],
    )
    def test_test_exit_code_decides(self, tmp_path: Path, command: str, ok: bool) -> None:
        report = CommandCollaborator(tmp_path).test(_ctx("test", test_command=command))
        assert report.ok is ok

    def test_test_without_command(self, tmp_path: Path) -> None:
        assert CommandCollaborator(tmp_path).test(_ctx("test")) == TestReport(passed=0)

    def test_timeout(self, tmp_path: Path) -> None:
        ctx = _ctx(build_command="sleep 5")
        ctx.timeout = 0.2
        ctx.started_at = time.monotonic()
        with pytest.raises(TimeoutFailure):
            CommandCollaborator(tmp_path).build(ctx)


@pytest.fixture()
def fake_module() -> Iterator[types.ModuleType]:
    module = types.ModuleType("wavefront_fake_collaborators")
    module.instance = CallableCollaborator()
    module.factory = lambda: CallableCollaborator()
    module.CollaboratorClass = CallableCollaborator
    module.nothing = 42
    sys.modules[module.__name__] = module
    yield module
    del sys.modules[module.__name__]


class TestLoadCollaborator:
    def test_instance(self, fake_module: types.ModuleType) -> None:
        assert load_collaborator(f"{fake_module.__name__}:instance") is fake_module.instance

    @pytest.mark.parametrize("attribute", ["factory", "CollaboratorClass"])
    def test_factory_or_class(self, fake_module: types.ModuleType, attribute: str) -> None:
        loaded = load_collaborator(f"{fake_module.__name__}:{attribute}")
        assert isinstance(loaded, CallableCollaborator)

    @pytest.mark.parametrize(
        "reference",
        [
            "no_colon_here",
            ":missing_module",
            "wavefront_fake_collaborators:",
            "wavefront_fake_collaborators:absent",
            "wavefront_fake_collaborators:nothing",
            "surely_not_an_installed_module:thing",
        ],
    )
    def test_bad_references(self, fake_module: types.ModuleType, reference: str) -> None:
        with pytest.raises(CollaboratorLoadError):
            load_collaborator(reference)
