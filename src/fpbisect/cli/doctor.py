# Copyright (c) Syntropy Systems
"""fpbisect doctor command."""

import shutil
import sqlite3
from typing import cast

from rich.console import Console

from fpbisect.artifacts import directory_size
from fpbisect.config import find_project_dir, get_bisect_root, get_db_path, load_config
from fpbisect.db import get_connection, get_results

console = Console()


def doctor() -> None:
    """Check fpbisect setup and diagnose issues.

    Verifies:
    - project directory and config exist
    - SQLite database is healthy
    - compiler, nm and objcopy are on PATH
    """
    issues: list[str] = []
    warnings: list[str] = []

    project_dir = find_project_dir()
    if project_dir is None:
        console.print("[red]✗[/red] No .fpbisect directory found")
        console.print("  Run [bold]fpbisect init[/bold] to initialize a project")
        return

    console.print(f"[green]✓[/green] fpbisect directory: {project_dir}")

    try:
        config = load_config(project_dir)
    except (ValueError, OSError) as e:
        console.print(f"[red]✗[/red] Invalid config: {e}")
        issues.append(f"Invalid config: {e}")
        config = None

    # Check database
    db_path = get_db_path(project_dir)
    if not db_path.exists():
        console.print(f"[red]✗[/red] Database not found: {db_path}")
        issues.append("Database missing")
    else:
        conn = None
        try:
            conn = get_connection(db_path)

            result = cast(
                "sqlite3.Row | None",
                conn.execute("PRAGMA journal_mode").fetchone(),
            )
            if result is not None and cast("str", result[0]).lower() == "wal":
                console.print("[green]✓[/green] SQLite: WAL mode enabled")
            else:
                journal_mode = (
                    cast("str", result[0]) if result is not None else "unknown"
                )
                console.print(
                    f"[yellow]⚠[/yellow] SQLite: journal_mode is {journal_mode}, expected WAL"
                )
                warnings.append("Not using WAL mode")

            rows = get_results(conn)
            divergent = [r for r in rows if r.diverged]
            console.print(
                f"[green]✓[/green] Database: {len(rows)} results, {len(divergent)} divergent"
            )
        except sqlite3.Error as e:
            console.print(f"[red]✗[/red] Database error: {e}")
            issues.append(f"Database error: {e}")
        finally:
            if conn is not None:
                conn.close()

    bisect_root = get_bisect_root(project_dir)
    if bisect_root.exists():
        count = len([p for p in bisect_root.iterdir() if p.is_dir()])
        size_mb = directory_size(bisect_root) / (1024 * 1024)
        console.print(f"[green]✓[/green] Bisect directory: {count} bisections ({size_mb:.1f} MB)")
    else:
        console.print("[yellow]⚠[/yellow] Bisect directory not found")
        warnings.append("Bisect directory missing")

    if config is not None:
        if config.source_path.is_dir():
            console.print(f"[green]✓[/green] Sources: {config.source_path}")
        else:
            console.print(f"[red]✗[/red] Source directory not found: {config.source_path}")
            issues.append("Source directory missing")

        compiler = config.ground_truth_compilation.compiler
        tools = [("trusted compiler", compiler), ("nm", "nm"), ("objcopy", "objcopy")]
        for label, tool in tools:
            found = shutil.which(tool)
            if found:
                console.print(f"[green]✓[/green] {label}: {found}")
            else:
                console.print(f"[red]✗[/red] {label} not found: {tool}")
                issues.append(f"{tool} not found")

    # Summary
    console.print()
    if issues:
        console.print(f"[red]Found {len(issues)} issue(s)[/red]")
        for issue in issues:
            console.print(f"  - {issue}")
    elif warnings:
        console.print(f"[yellow]Found {len(warnings)} warning(s)[/yellow]")
        for warning in warnings:
            console.print(f"  - {warning}")
    else:
        console.print("[green]All checks passed[/green]")
