"""Rich renderings of snapshots, violations and plans for the CLI."""

from __future__ import annotations

from rich.console import Group
from rich.markup import escape
from rich.table import Table

from wavefront.models import PhaseStatus, UnitStatus
from wavefront.progress import ProgressSnapshot
from wavefront.scheduler import Phase
from wavefront.validator import Violation

_UNIT_STYLES = {
    UnitStatus.PENDING: "dim",
    UnitStatus.BUILDING: "yellow",
    UnitStatus.BUILD_FAILED: "red",
    UnitStatus.TESTING: "cyan",
    UnitStatus.PASSED: "bold green",
    UnitStatus.FAILED: "red",
    UnitStatus.CANCELLED: "dim red",
    UnitStatus.ESCALATED: "bold red",
    UnitStatus.BLOCKED: "bold magenta",
}

_PHASE_STYLES = {
    PhaseStatus.WAITING: "dim",
    PhaseStatus.ACTIVE: "yellow",
    PhaseStatus.COMPLETE: "green",
    PhaseStatus.BLOCKED: "bold red",
}


def _seconds(value: float | None) -> str:
    if value is None:
        return "-"
    minutes, seconds = divmod(int(round(value)), 60)
    return f"{minutes}m{seconds:02d}s" if minutes else f"{seconds}s"


def render_snapshot(snapshot: ProgressSnapshot) -> Table:
    phase_label = snapshot.current_phase if snapshot.current_phase is not None else "-"
    table = Table(title=f"Wavefront run {snapshot.run_id} (phase {phase_label})")
    table.add_column("Unit", style="cyan")
    table.add_column("Phase", justify="right")
    table.add_column("Status")
    table.add_column("Attempts", justify="right")
    table.add_column("Error", style="dim", max_width=60)

    for unit in snapshot.units:
        style = _UNIT_STYLES[unit.status]
        table.add_row(
            unit.unit_id,
            str(unit.phase) if unit.phase is not None else "-",
            f"[{style}]{unit.status.value}[/]",
            str(unit.attempts),
            escape(unit.error or ""),
        )

    counts = ", ".join(f"{n} {s}" for s, n in sorted(snapshot.counts().items()))
    phases = " ".join(
        f"[{_PHASE_STYLES[p.status]}]{p.index}:{p.status.value}[/]" for p in snapshot.phases
    )
    table.caption = (
        f"{counts} | phases {phases or '-'} | integration {snapshot.integration} | "
        f"elapsed {_seconds(snapshot.elapsed_seconds)} | "
        f"remaining ~{_seconds(snapshot.estimated_remaining_seconds)}"
    )
    return table


def render_violations(violations: list[Violation]) -> Table:
    table = Table(title="Plan violations")
    table.add_column("Severity")
    table.add_column("Kind", style="cyan")
    table.add_column("Units")
    table.add_column("Message", max_width=50)
    table.add_column("Remediation", style="dim", max_width=50)

    for v in sorted(violations, key=lambda v: (not v.critical, v.kind.value, v.units)):
        severity = "[bold red]critical[/]" if v.critical else "[yellow]warning[/]"
        table.add_row(
            severity, v.kind.value, ", ".join(v.units), escape(v.message), escape(v.remediation)
        )
    return table


def render_plan(phases: list[Phase], stub_edges: dict[str, list[str]] | None = None) -> Table:
    stub_edges = stub_edges or {}
    table = Table(title="Build plan")
    table.add_column("Phase", justify="right", style="cyan")
    table.add_column("Units")
    table.add_column("Builds against stubs", style="dim")

    for phase in phases:
        stubbed = [
            f"{u} -> {', '.join(stub_edges[u])}" for u in phase.unit_ids if stub_edges.get(u)
        ]
        table.add_row(str(phase.index), ", ".join(phase.unit_ids), "; ".join(stubbed) or "-")
    return table


def render_run(snapshot: ProgressSnapshot, violations: list[Violation]) -> Group | Table:
    """Warnings first when there are any, then progress."""
    if not violations:
        return render_snapshot(snapshot)
    return Group(render_violations(violations), render_snapshot(snapshot))
