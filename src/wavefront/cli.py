"""CLI entry point for wavefront."""

from __future__ import annotations

import argparse
import json
import logging
import signal
import sys
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape

EXIT_OK = 0
EXIT_RUN_FAILED = 1
EXIT_INVALID_PLAN = 2


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), show_path=False)],
        force=True,
    )


def _add_run_options(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("plan", type=Path, help="Build plan (JSON or TOML)")
    parser.add_argument(
        "--max-retries",
        type=int,
        default=None,
        help="Retries per failing unit before it escalates (default: from config)",
    )
    parser.add_argument(
        "--concurrency",
        type=int,
        default=None,
        help="Cap on concurrent build/test tasks; 0 means uncapped",
    )
    parser.add_argument(
        "--fail-fast",
        action=argparse.BooleanOptionalAction,
        default=None,
        help="Cancel a phase's remaining tests on the first failure",
    )
    parser.add_argument(
        "--force-integration",
        action="store_true",
        default=None,
        help="Run the integration step even if the run pauses",
    )
    parser.add_argument(
        "--collaborator",
        default=None,
        metavar="REF",
        help="Collaborator as package.module:name (default: run unit commands)",
    )
    parser.add_argument(
        "--dry-run",
        action="store_true",
        help="Schedule with a collaborator that always succeeds",
    )
    parser.add_argument(
        "--report",
        type=Path,
        default=None,
        metavar="FILE",
        help="Write the final run report as JSON",
    )
    parser.add_argument(
        "--no-live",
        action="store_true",
        help="Print the final table only, no live dashboard",
    )


def main(argv: list[str] | None = None) -> int:
    """Main entry point for the wavefront CLI."""
    parser = argparse.ArgumentParser(
        prog="wavefront",
        description="Parallel work-unit build orchestrator with contract stubs",
    )
    parser.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {_get_version()}",
    )
    parser.add_argument(
        "--init",
        action="store_true",
        help="Generate .wavefront/wavefront.toml from source defaults",
    )
    parser.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    subparsers = parser.add_subparsers(dest="command")

    validate_parser = subparsers.add_parser("validate", help="Check a build plan")
    validate_parser.add_argument("plan", type=Path, help="Build plan (JSON or TOML)")

    plan_parser = subparsers.add_parser("plan", help="Show the phases a plan would run in")
    plan_parser.add_argument("plan", type=Path, help="Build plan (JSON or TOML)")

    run_parser = subparsers.add_parser("run", help="Build and test every unit of a plan")
    _add_run_options(run_parser)

    resume_parser = subparsers.add_parser(
        "resume", help="Start a new run carrying over what a previous run passed"
    )
    _add_run_options(resume_parser)
    resume_parser.add_argument("--run-id", required=True, help="Run to resume from")
    resume_parser.add_argument(
        "--only",
        nargs="+",
        default=None,
        metavar="UNIT",
        help="Limit the new run to these units and what they need",
    )

    _args = parser.parse_args(argv)

    if _args.init:
        from wavefront.config import init_config

        path = init_config(Path.cwd())
        print(f"Wrote {path}")
        return EXIT_OK

    if _args.command is None:
        parser.print_help()
        return EXIT_OK

    _configure_logging(_args.verbose)
    console = Console()

    if _args.command == "validate":
        return _cmd_validate(_args, console)
    if _args.command == "plan":
        return _cmd_plan(_args, console)
    return _cmd_run(_args, console)


def _load(path: Path, console: Console):
    from pydantic import ValidationError

    from wavefront.models import load_build_plan

    try:
        return load_build_plan(path)
    except FileNotFoundError:
        console.print(f"[red]No such plan: {path}[/red]")
    except ValidationError as exc:
        console.print(f"[red]Invalid plan {path}:[/red]\n{escape(str(exc))}")
    except ValueError as exc:
        console.print(f"[red]Cannot read plan {path}: {escape(str(exc))}[/red]")
    return None


def _cmd_validate(args: argparse.Namespace, console: Console) -> int:
    from wavefront.config import load_config
    from wavefront.dashboard import render_violations
    from wavefront.validator import validate

    plan = _load(args.plan, console)
    if plan is None:
        return EXIT_INVALID_PLAN
    config = load_config(Path.cwd())
    result = validate(plan.units, config.validation)
    if result.violations:
        console.print(render_violations(result.violations))
    if result.has_critical:
        return EXIT_INVALID_PLAN
    console.print(f"[green]{len(plan.units)} unit(s), no critical violations[/green]")
    return EXIT_OK


def _cmd_plan(args: argparse.Namespace, console: Console) -> int:
    from wavefront.config import load_config
    from wavefront.dashboard import render_plan, render_violations
    from wavefront.scheduler import plan_phases
    from wavefront.validator import validate

    plan = _load(args.plan, console)
    if plan is None:
        return EXIT_INVALID_PLAN
    config = load_config(Path.cwd())
    result = validate(plan.units, config.validation)
    if result.violations:
        console.print(render_violations(result.violations))
    if result.has_critical:
        return EXIT_INVALID_PLAN

    phases = plan_phases(result.graph)
    stub_edges = {
        n.id: [d for d in n.dependencies if d in result.graph]
        for n in result.graph.nodes
        if n.stub_eligible and n.dependencies
    }
    console.print(render_plan(phases, stub_edges))
    return EXIT_OK


def _cmd_run(args: argparse.Namespace, console: Console) -> int:
    from wavefront.collaborators import (
        CallableCollaborator,
        CommandCollaborator,
        load_collaborator,
    )
    from wavefront.config import load_config, state_db_path, with_overrides
    from wavefront.dashboard import render_run, render_snapshot, render_violations
    from wavefront.errors import CollaboratorLoadError
    from wavefront.orchestrator import Orchestrator, RunStatus, carried_from_db
    from wavefront.state_db import StateDB

    project_root = Path.cwd()
    plan = _load(args.plan, console)
    if plan is None:
        return EXIT_INVALID_PLAN

    config = with_overrides(
        load_config(project_root),
        max_retries=args.max_retries,
        concurrency_cap=args.concurrency,
        fail_fast=args.fail_fast,
        force_integration=args.force_integration,
    )

    if args.dry_run:
        collaborator = CallableCollaborator()
    elif args.collaborator:
        try:
            collaborator = load_collaborator(args.collaborator)
        except CollaboratorLoadError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
            return EXIT_INVALID_PLAN
    else:
        collaborator = CommandCollaborator(project_root)

    with StateDB(state_db_path(project_root)) as db:
        orchestrator = Orchestrator(config, collaborator, db=db)
        carried = None
        resumed_from = None
        only = None
        if args.command == "resume":
            if db.get_run(args.run_id) is None:
                console.print(f"[red]Unknown run: {args.run_id}[/red]")
                return EXIT_INVALID_PLAN
            carried = carried_from_db(db, args.run_id)
            resumed_from = args.run_id
            only = args.only

        previous = {
            s: signal.signal(s, lambda signum, frame: orchestrator.stop())
            for s in (signal.SIGINT, signal.SIGTERM)
        }
        try:
            if args.no_live:
                report = orchestrator.run(
                    plan, carried=carried, only=only, resumed_from=resumed_from
                )
            else:
                from rich.live import Live

                with Live(
                    get_renderable=lambda: render_snapshot(orchestrator.snapshot()),
                    console=console,
                    refresh_per_second=2,
                ):
                    report = orchestrator.run(
                        plan, carried=carried, only=only, resumed_from=resumed_from
                    )
        except ValueError as exc:
            console.print(f"[red]{escape(str(exc))}[/red]")
            return EXIT_INVALID_PLAN
        finally:
            for s, handler in previous.items():
                signal.signal(s, handler)

    if report.snapshot is not None and args.no_live:
        console.print(render_run(report.snapshot, report.violations))
    elif report.violations:
        console.print(render_violations(report.violations))
    if args.report is not None:
        args.report.write_text(json.dumps(report.to_record(), indent=2, sort_keys=True) + "\n")
        console.print(f"Wrote {args.report}")

    console.print(f"Run [bold]{report.run_id}[/bold]: {report.status.value}")
    if report.status is RunStatus.COMPLETED:
        return EXIT_OK
    if report.status is RunStatus.ABORTED:
        return EXIT_INVALID_PLAN
    return EXIT_RUN_FAILED


def _get_version() -> str:
    from wavefront import __version__

    return __version__


if __name__ == "__main__":
    sys.exit(main())
