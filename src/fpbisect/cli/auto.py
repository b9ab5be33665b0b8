# Copyright (c) Syntropy Systems
"""fpbisect auto command."""
from __future__ import annotations

import signal
from pathlib import Path
from threading import Event
from typing import Optional

import typer
from rich.console import Console
from rich.table import Table

from fpbisect.config import (
    get_bisect_root,
    get_db_path,
    load_config,
    require_project_dir,
)
from fpbisect.db import get_connection
from fpbisect.engine import create_engine
from fpbisect.orchestrator import AutoRunOrchestrator
from fpbisect.report import write_csv, write_json

console = Console()


def auto(
    parallel: Optional[int] = typer.Option(
        None, "--parallel", "-P", help="Bisections to run at once"
    ),
    jobs: Optional[int] = typer.Option(None, "--jobs", "-j", help="Compilation threads per build"),
    delete: Optional[bool] = typer.Option(
        None, "--delete/--keep", help="Remove trial directories and variant objects when done"
    ),
    test: Optional[str] = typer.Option(None, "--test", "-t", help="Only bisect this test"),
    output: Optional[Path] = typer.Option(
        None, "--output", "-o", help="Combined JSON report (a .csv is written next to it)"
    ),
) -> None:
    """Bisect every recorded result whose comparison is non-zero."""
    try:
        project_dir = require_project_dir()
        config = load_config(project_dir)
    except (RuntimeError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    parallel = parallel if parallel is not None else config.parallel
    jobs = jobs if jobs is not None else config.jobs
    delete = delete if delete is not None else config.delete
    if output is None:
        output = project_dir / "auto-bisect.json"

    cancel_event = Event()

    def _signal_handler(signum, frame):
        console.print("\n[yellow]Cancelling, stopping running processes...[/yellow]")
        cancel_event.set()

    previous = signal.signal(signal.SIGINT, _signal_handler)
    conn = get_connection(get_db_path(project_dir))
    try:
        engine = create_engine(
            config,
            project_dir / "work",
            delete=delete,
            jobs=jobs,
            cancel_event=cancel_event,
        )
        orchestrator = AutoRunOrchestrator(
            engine,
            get_bisect_root(project_dir),
            reentrant=config.reentrant,
            cancel_event=cancel_event,
        )
        combined = orchestrator.run_all(conn, parallel=parallel, jobs=jobs, delete=delete, test=test)
    except (OSError, ValueError) as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    finally:
        conn.close()
        signal.signal(signal.SIGINT, previous)

    csv_path = output.with_suffix(".csv")
    write_json(combined, output)
    write_csv(combined, csv_path)

    if not combined.entries:
        console.print(f"[dim]No divergent results to bisect ({combined.skipped} skipped)[/dim]")
    else:
        table = Table(show_header=True, header_style="bold")
        table.add_column("ID", style="dim")
        table.add_column("Test")
        table.add_column("Precision")
        table.add_column("Compilation")
        table.add_column("Status")
        table.add_column("Files")
        table.add_column("Symbols")
        for entry in combined.entries:
            report = entry.report
            status_style = {
                "ok": "green",
                "no_divergence": "yellow",
            }.get(report.status, "red")
            table.add_row(
                str(entry.result_id),
                entry.test,
                entry.precision,
                report.compilation,
                f"[{status_style}]{report.status}[/{status_style}]",
                ", ".join(f.unit for f in report.files) or "-",
                ", ".join(s.demangled or s.symbol or "" for s in report.symbols) or "-",
            )
        console.print(table)
        console.print(f"[dim]{combined.skipped} result(s) skipped[/dim]")

    console.print(f"  [dim]report:[/dim] {output}")
    console.print(f"  [dim]csv:[/dim] {csv_path}")
    if combined.failed:
        console.print(f"[red]{len(combined.failed)} bisection(s) failed[/red]")
