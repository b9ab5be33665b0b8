# Copyright (c) Syntropy Systems
"""fpbisect init command."""

from pathlib import Path

import typer
import yaml
from rich.console import Console

from fpbisect.config import PROJECT_DIR_NAME, default_config_data
from fpbisect.db import init_db

console = Console()


def init(
    path: Path = typer.Argument(
        Path(),
        help="Directory to initialize (default: current directory)",
    ),
) -> None:
    """Initialize a new fpbisect project.

    Creates a .fpbisect directory with configuration and results database.
    """
    target = path.resolve()
    project_dir = target / PROJECT_DIR_NAME

    if project_dir.exists():
        console.print(f"[yellow]Already initialized:[/yellow] {project_dir}")
        return

    project_dir.mkdir(parents=True)
    bisect_dir = project_dir / "bisect"
    bisect_dir.mkdir()

    config_path = project_dir / "config.yaml"
    with config_path.open("w") as f:
        yaml.dump(default_config_data(), f, default_flow_style=False, sort_keys=False)

    db_path = project_dir / "results.db"
    init_db(db_path)

    console.print(f"[green]Initialized fpbisect project:[/green] {project_dir}")
    console.print(f"  [dim]config:[/dim] {config_path}")
    console.print(f"  [dim]database:[/dim] {db_path}")
    console.print(f"  [dim]bisections:[/dim] {bisect_dir}")
