# Copyright (c) Syntropy Systems
"""fpbisect bisect command."""
from __future__ import annotations

import signal
from threading import Event
from typing import TYPE_CHECKING, Optional

import typer
from rich.console import Console
from rich.table import Table

from fpbisect.artifacts import next_run_dir
from fpbisect.config import get_bisect_root, load_config, require_project_dir
from fpbisect.engine import create_engine
from fpbisect.models.bisect import BisectTarget, Compilation

if TYPE_CHECKING:
    from fpbisect.models.report import BisectReport, TrialRecord

console = Console()


def print_trial(record: TrialRecord) -> None:
    """Print one line per trial as it completes."""
    prefix = f"  [dim]#{record.index:<3}[/dim] [{record.phase}]"
    if record.failure is not None:
        console.print(f"{prefix} {record.description} [red]{record.failure_kind} failure[/red]")
        return
    cached = " [dim](cached)[/dim]" if record.cached else ""
    style = "yellow" if record.score else "green"
    console.print(f"{prefix} {record.description} -> [{style}]{record.score}[/{style}]{cached}")


def print_report(report: BisectReport) -> None:
    """Print the files, then the symbols, found by a bisection."""
    status_style = {
        "ok": "green",
        "no_divergence": "yellow",
    }.get(report.status, "red")
    console.print()
    console.print(f"[bold]{report.test}[/bold] [{report.precision}] {report.compilation}")
    console.print(f"  status: [{status_style}]{report.status}[/{status_style}]")
    if report.message:
        console.print(f"  {report.message}")
    if report.full_score is not None:
        console.print(f"  full variant score: {report.full_score}")
    console.print(f"  trials run: {report.trial_count}")

    if report.files:
        table = Table(show_header=True, header_style="bold", title="Files")
        table.add_column("File")
        table.add_column("Score", justify="right")
        for finding in report.files:
            table.add_row(finding.unit, f"{finding.score:g}")
        console.print(table)

    if report.symbols:
        table = Table(show_header=True, header_style="bold", title="Symbols")
        table.add_column("Location")
        table.add_column("Signature")
        table.add_column("Score", justify="right")
        for finding in report.symbols:
            table.add_row(finding.location, finding.demangled or finding.symbol or "-", f"{finding.score:g}")
        console.print(table)

    if report.unattributed_files:
        console.print(
            "[yellow]Not attributable to single functions:[/yellow] "
            + ", ".join(report.unattributed_files)
        )
    for interaction in report.interactions:
        where = f" in {interaction.unit}" if interaction.unit else ""
        console.print(
            f"[yellow]Interaction{where}:[/yellow] {len(interaction.members)} candidates, "
            f"{len(interaction.attributed)} diverge alone"
        )
    for failure in report.failures:
        console.print(f"[red]Abandoned branch ({failure.kind}):[/red] {failure.message}")
    if report.run_dir:
        console.print(f"  [dim]logs:[/dim] {report.run_dir}")


def bisect(
    test: str = typer.Argument(..., help="Name of the test to bisect"),
    compilation: str = typer.Option(
        ...,
        "--compilation", "-c",
        help='Variant compilation, e.g. "g++ -O3 -ffast-math"',
    ),
    precision: str = typer.Option("double", "--precision", "-p", help="Precision to run"),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", help="Compilation threads"),
    delete: Optional[bool] = typer.Option(
        None, "--delete/--keep", help="Remove trial directories once scored"
    ),
    timeout: Optional[int] = typer.Option(
        None, "--timeout", help="Seconds before a compile or test run is killed"
    ),
) -> None:
    """Bisect one configuration down to files, then functions."""
    try:
        project_dir = require_project_dir()
        config = load_config(project_dir)
        variant = Compilation.parse(compilation)
    except (RuntimeError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if timeout is not None:
        config.timeout = timeout
    jobs = jobs if jobs is not None else config.jobs
    delete = delete if delete is not None else config.delete

    cancel_event = Event()

    def _signal_handler(signum, frame):
        console.print("\n[yellow]Cancelling, stopping running processes...[/yellow]")
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, _signal_handler)
    try:
        engine = create_engine(
            config,
            project_dir / "work",
            delete=delete,
            jobs=jobs,
            cancel_event=cancel_event,
            on_trial=print_trial,
        )
        target = BisectTarget(test=test, precision=precision, compilation=variant)
        run_dir = next_run_dir(get_bisect_root(project_dir))
        console.print(f"[bold]Bisecting[/bold] {target} [dim]({run_dir.name})[/dim]")
        report = engine.run(target, run_dir, jobs=jobs, delete=delete)
        if delete and variant != engine.trusted:
            engine.pipeline.discard(variant)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        signal.signal(signal.SIGINT, previous)

    print_report(report)
    if report.status in ("ground_truth_failed", "error"):
        raise typer.Exit(1)
