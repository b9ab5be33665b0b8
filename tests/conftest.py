# Copyright (c) Syntropy Systems
"""Pytest fixtures for fpbisect tests."""

import os
import sqlite3
import tempfile
import threading
from collections.abc import Generator
from pathlib import Path

import pytest

from fpbisect.artifacts import ArtifactManager
from fpbisect.comparator import L2Comparator
from fpbisect.config import ProjectConfig
from fpbisect.engine import BisectionEngine
from fpbisect.errors import BuildFailure
from fpbisect.ground_truth import BaselineResult, GroundTruthManager
from fpbisect.models.bisect import BisectTarget, Compilation, SymbolSite
from fpbisect.runner import ProcessResult
from fpbisect.trial import TrialRunner

# Store original cwd at module load time
_original_cwd = Path.cwd()

TRUSTED = Compilation("g++", "-O0")
VARIANT = Compilation("g++", "-O3", "-ffast-math")
TARGET = BisectTarget(test="Example", precision="double", compilation=VARIANT)

BASELINE_VALUE = 1.0


class FakePipeline:
    """Build pipeline whose "executable" prints a value derived from the plan.

    The printed value is 1.0 plus the weight of every culprit compiled with
    the variant flags. Culprits are units ("a.c") or symbols ("a.c:f").
    A symbol counts as variant when its whole unit is variant or when it is
    spliced in. An interaction only adds its weight when all its members
    are variant.
    """

    def __init__(
        self,
        units,
        culprits=None,
        symbols=None,
        interactions=(),
        broken=(),
        crashing=(),
        fail_trusted=False,
    ):
        self._units = sorted(units)
        self.culprits = dict(culprits or {})
        self.symbol_names = dict(symbols or {})
        self.interactions = [(frozenset(group), weight) for group, weight in interactions]
        self.broken = set(broken)
        self.crashing = set(crashing)
        self.fail_trusted = fail_trusted

        self.plans = []
        self.events = []
        self.discarded = []
        self.active_builds = 0
        self.peak_builds = 0
        self._lock = threading.Lock()

    def units(self):
        return list(self._units)

    def symbols(self, unit, trusted, variant):
        return [
            SymbolSite(unit=unit, name=name, demangled=f"{name}()", line=index + 1)
            for index, name in enumerate(self.symbol_names.get(unit, []))
        ]

    def variant_elements(self, plan):
        elements = set()
        for unit in plan.variant_units:
            elements.add(unit)
            elements.update(f"{unit}:{name}" for name in self.symbol_names.get(unit, []))
        for unit, names in plan.symbol_splits:
            elements.update(f"{unit}:{name}" for name in names)
        return elements

    def value(self, plan):
        elements = self.variant_elements(plan)
        delta = sum(w for element, w in self.culprits.items() if element in elements)
        delta += sum(w for group, w in self.interactions if group <= elements)
        return BASELINE_VALUE + delta

    def build(self, plan, trusted, variant, workdir, jobs):
        with self._lock:
            self.plans.append(plan)
            self.events.append(("build", plan.signature))
        if plan.is_trusted and self.fail_trusted:
            raise BuildFailure("trusted build broken")
        elements = self.variant_elements(plan)
        if elements & self.broken:
            raise BuildFailure(f"cannot build {sorted(elements & self.broken)}")

        executable = workdir / "fpbisect-test"
        if elements & self.crashing:
            executable.write_text("CRASH\n")
        else:
            executable.write_text(f"{self.value(plan)!r}\n")
        return executable

    def discard(self, compilation):
        with self._lock:
            self.discarded.append(compilation)


class FakeExecutor:
    """Executor that "runs" a fake executable by reading what it would print."""

    def __init__(self, events=None, delay=0.0):
        self.events = events if events is not None else []
        self.calls = []
        self.delay = delay
        self._lock = threading.Lock()

    def execute(self, executable, args, workdir, timeout=None):
        text = executable.read_text()
        with self._lock:
            self.calls.append((executable, list(args)))
            self.events.append(("run", workdir.name))
        if self.delay:
            threading.Event().wait(self.delay)
        if text.startswith("CRASH"):
            return ProcessResult(
                argv=[str(executable), *args],
                exit_code=1,
                stdout="",
                stderr="segfault",
                duration=0.0,
            )
        return ProcessResult(
            argv=[str(executable), *args],
            exit_code=0,
            stdout=text,
            stderr="",
            duration=0.0,
        )


def make_trials(pipeline, root, executor=None, delete=False, on_trial=None):
    """TrialRunner against the fake pipeline with a 1.0 baseline."""
    if executor is None:
        executor = FakeExecutor(pipeline.events)
    return TrialRunner(
        target=TARGET,
        trusted=TRUSTED,
        pipeline=pipeline,
        executor=executor,
        comparator=L2Comparator(),
        baseline=BaselineResult(
            test=TARGET.test,
            precision=TARGET.precision,
            compilation=TRUSTED,
            output=f"{BASELINE_VALUE!r}\n",
        ),
        artifacts=ArtifactManager(root / "trials", delete=delete),
        run_args=["{{test}}", "{{precision}}"],
        on_trial=on_trial,
    )


def make_engine(pipeline, root, executor=None, delete=False, on_trial=None):
    """BisectionEngine wired to the fake pipeline and executor."""
    if executor is None:
        executor = FakeExecutor(pipeline.events)
    config = ProjectConfig(ground_truth=str(TRUSTED), comparator="l2")
    ground_truth = GroundTruthManager(
        trusted=TRUSTED,
        pipeline=pipeline,
        executor=executor,
        artifacts=ArtifactManager(root / "ground-truth", delete=delete),
        run_args=config.run_args,
    )
    return BisectionEngine(
        config=config,
        pipeline=pipeline,
        executor=executor,
        comparator=L2Comparator(),
        ground_truth=ground_truth,
        on_trial=on_trial,
    )


SIX_UNITS = [f"unit{i}.c" for i in range(1, 7)]


@pytest.fixture
def temp_dir() -> Generator[Path, None, None]:
    """Create a temporary directory for testing."""
    with tempfile.TemporaryDirectory() as tmpdir:
        yield Path(tmpdir)


@pytest.fixture
def fpbisect_project(temp_dir: Path) -> Generator[Path, None, None]:
    """Create a temporary fpbisect project directory."""
    from fpbisect.db import init_db

    project_dir = temp_dir / ".fpbisect"
    project_dir.mkdir()
    (project_dir / "bisect").mkdir()

    init_db(project_dir / "results.db")

    # Change to temp directory
    os.chdir(temp_dir)

    yield temp_dir

    # Always return to original cwd
    os.chdir(_original_cwd)


@pytest.fixture
def db_connection(fpbisect_project: Path) -> Generator[sqlite3.Connection, None, None]:
    """Get a database connection for the test project."""
    from fpbisect.db import get_connection

    conn = get_connection(fpbisect_project / ".fpbisect" / "results.db")
    yield conn
    conn.close()
