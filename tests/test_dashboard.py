from __future__ import annotations

from rich.console import Console, Group
from rich.table import Table

from wavefront.dashboard import (
    _seconds,
    render_plan,
    render_run,
    render_snapshot,
    render_violations,
)
from wavefront.models import PhaseStatus, UnitDeclaration, UnitStatus
from wavefront.progress import ProgressTracker
from wavefront.scheduler import Phase
from wavefront.validator import validate


def _text(renderable) -> str:
    console = Console(width=160, record=True)
    console.print(renderable)
    return console.export_text()


def _tracker() -> ProgressTracker:
    now = [100.0]
    tracker = ProgressTracker(clock=lambda: now[0])
    tracker.start("abc123", [(1, ["a", "b"]), (2, ["c"])])
    tracker.phase(1, PhaseStatus.ACTIVE)
    tracker.unit("a", UnitStatus.BUILDING, attempt=1)
    tracker.unit("b", UnitStatus.BUILDING, attempt=1)
    tracker.unit("b", UnitStatus.BUILD_FAILED, detail="missing [brackets] in output")
    return tracker


class TestRenderSnapshot:
    def test_returns_table(self) -> None:
        table = render_snapshot(_tracker().snapshot())
        assert isinstance(table, Table)
        assert table.title == "Wavefront run abc123 (phase 1)"
        assert len(table.columns) == 5
        assert table.row_count == 3

    def test_errors_rendered_literally(self) -> None:
        text = _text(render_snapshot(_tracker().snapshot()))
        assert "missing [brackets] in output" in text
        assert "build_failed" in text

    def test_caption_summarizes(self) -> None:
        caption = render_snapshot(_tracker().snapshot()).caption
        assert "1 building" in caption
        assert "integration pending" in caption
        assert "remaining ~-" in caption

    def test_empty_snapshot(self) -> None:
        tracker = ProgressTracker(clock=lambda: 0.0)
        tracker.start("empty", [])
        table = render_snapshot(tracker.snapshot())
        assert table.row_count == 0
        assert "(phase -)" in table.title


class TestRenderViolations:
    def test_critical_first(self) -> None:
        units = [
            UnitDeclaration(id="a", references={"b": 9}),
            UnitDeclaration(id="b"),
            UnitDeclaration(id="f", dependencies=["g"]),
            UnitDeclaration(id="g", dependencies=["f"]),
        ]
        table = render_violations(validate(units).violations)
        assert table.row_count == 2
        text = _text(table)
        assert text.index("critical") < text.index("warning")


class TestRenderPlan:
    def test_stub_column(self) -> None:
        phases = [Phase(1, ["d", "e"]), Phase(2, ["f"])]
        text = _text(render_plan(phases, {"e": ["d"]}))
        assert "e -> d" in text
        assert render_plan(phases).row_count == 2


def test_render_run_groups_warnings() -> None:
    snapshot = _tracker().snapshot()
    assert isinstance(render_run(snapshot, []), Table)
    warnings = validate([UnitDeclaration(id="a", references={"b": 9}), UnitDeclaration(id="b")])
    assert isinstance(render_run(snapshot, warnings.violations), Group)


def test_seconds() -> None:
    assert _seconds(None) == "-"
    assert _seconds(42.4) == "42s"
    assert _seconds(125) == "2m05s"
