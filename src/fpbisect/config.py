# Copyright (c) Syntropy Systems
"""Configuration management for fpbisect."""
from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

import yaml

from fpbisect.models.bisect import Compilation

PROJECT_DIR_NAME = ".fpbisect"


@dataclass
class ProjectConfig:
    """Configuration for a project under investigation."""

    # Where sources live, relative to the project root
    source_dir: str = "."

    # Glob patterns selecting the compilation units
    sources: list[str] = field(default_factory=lambda: ["*.c", "*.cpp", "*.cc"])

    include_dirs: list[str] = field(default_factory=list)
    cflags: list[str] = field(default_factory=list)
    ldflags: list[str] = field(default_factory=list)

    # Trusted compilation every variant is compared against
    ground_truth: str = "g++ -O0"

    # Arguments for the test executable; supports {{test}}, {{precision}}, {{output}}
    run_args: list[str] = field(default_factory=lambda: ["{{test}}", "{{precision}}"])

    # Prefix for launching the executable, e.g. ["mpirun", "-n", "4"]
    launcher: list[str] = field(default_factory=list)

    comparator: str = "l2"
    tolerance: float = 0.0

    # Seconds before a compile or test run is killed
    timeout: int = 600

    # Compilation threads per build
    jobs: int = 1

    # Concurrent bisections for auto runs
    parallel: int = 1

    # Remove trial directories once scored
    delete: bool = False

    # False when the test writes to fixed paths and cannot run concurrently
    reentrant: bool = True

    # Grace period before SIGKILL after SIGTERM (seconds)
    kill_grace_period: int = 10

    # Project root, set by load_config
    root: Path = field(default_factory=Path.cwd, repr=False)

    @property
    def ground_truth_compilation(self) -> Compilation:
        """Parsed trusted compilation."""
        return Compilation.parse(self.ground_truth)

    @property
    def source_path(self) -> Path:
        """Absolute path to the source directory."""
        return (self.root / self.source_dir).resolve()


def find_project_dir(start_path: Path | None = None) -> Path | None:
    """Find the nearest .fpbisect directory by walking up from start_path.

    Returns None if no .fpbisect directory is found.
    """
    if start_path is None:
        start_path = Path.cwd()

    current = start_path.resolve()

    while current != current.parent:
        project_dir = current / PROJECT_DIR_NAME
        if project_dir.is_dir():
            return project_dir
        current = current.parent

    # Check root
    project_dir = current / PROJECT_DIR_NAME
    if project_dir.is_dir():
        return project_dir

    return None


def _string_list(data: dict[str, object], key: str) -> list[str] | None:
    value = data.get(key)
    if value is None:
        return None
    if isinstance(value, str):
        return value.split()
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        msg = f"'{key}' must be a list of strings"
        raise ValueError(msg)
    return cast("list[str]", value)


def load_config(project_dir: Path | None = None) -> ProjectConfig:
    """Load configuration from .fpbisect/config.yaml or defaults.

    Looks for config in:
    1. Provided project_dir
    2. Nearest .fpbisect directory walking up
    3. Defaults
    """
    if project_dir is None:
        project_dir = find_project_dir()

    config = ProjectConfig()
    if project_dir is None:
        return config

    config.root = project_dir.resolve().parent
    config_path = project_dir / "config.yaml"
    if not config_path.exists():
        return config

    with config_path.open() as f:
        data = cast("dict[str, object]", yaml.safe_load(f) or {})

    for key in ("sources", "include_dirs", "cflags", "ldflags", "run_args", "launcher"):
        values = _string_list(data, key)
        if values is not None:
            setattr(config, key, values)

    for key in ("source_dir", "ground_truth", "comparator"):
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, str):
            msg = f"'{key}' must be a string"
            raise ValueError(msg)
        setattr(config, key, value)

    for key in ("timeout", "jobs", "parallel", "kill_grace_period"):
        value = data.get(key)
        if value is None:
            continue
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            msg = f"'{key}' must be a number"
            raise ValueError(msg)
        setattr(config, key, int(value))

    tolerance = data.get("tolerance")
    if tolerance is not None:
        # YAML 1.1 reads 1e-6 (no dot) as a string
        if isinstance(tolerance, bool) or not isinstance(tolerance, (int, float, str)):
            msg = "'tolerance' must be a number"
            raise ValueError(msg)
        try:
            config.tolerance = float(tolerance)
        except ValueError:
            msg = f"'tolerance' must be a number, got '{tolerance}'"
            raise ValueError(msg) from None
        if not config.tolerance >= 0:
            msg = "'tolerance' must be non-negative"
            raise ValueError(msg)

    for key in ("delete", "reentrant"):
        value = data.get(key)
        if value is None:
            continue
        if not isinstance(value, bool):
            msg = f"'{key}' must be true or false"
            raise ValueError(msg)
        setattr(config, key, value)

    # Fail early on an unparsable trusted compilation
    _ = config.ground_truth_compilation

    return config


def default_config_data() -> dict[str, object]:
    """Config written by `fpbisect init`."""
    defaults = ProjectConfig()
    return {
        "source_dir": defaults.source_dir,
        "sources": defaults.sources,
        "include_dirs": defaults.include_dirs,
        "cflags": defaults.cflags,
        "ldflags": defaults.ldflags,
        "ground_truth": defaults.ground_truth,
        "run_args": defaults.run_args,
        "launcher": defaults.launcher,
        "comparator": defaults.comparator,
        "tolerance": defaults.tolerance,
        "timeout": defaults.timeout,
        "jobs": defaults.jobs,
        "parallel": defaults.parallel,
        "delete": defaults.delete,
        "reentrant": defaults.reentrant,
        "kill_grace_period": defaults.kill_grace_period,
    }


def get_db_path(project_dir: Path | None = None) -> Path:
    """Get the path to the results database."""
    if project_dir is None:
        project_dir = require_project_dir()
    return project_dir / "results.db"


def get_bisect_root(project_dir: Path | None = None) -> Path:
    """Get the directory holding bisect-NN run directories."""
    if project_dir is None:
        project_dir = require_project_dir()
    return project_dir / "bisect"


def require_project_dir() -> Path:
    """Get the project directory or raise an error if not found."""
    project_dir = find_project_dir()
    if project_dir is None:
        msg = "No .fpbisect directory found. Run 'fpbisect init' first."
        raise RuntimeError(
            msg
        )
    return project_dir
