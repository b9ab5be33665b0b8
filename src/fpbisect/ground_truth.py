# Copyright (c) Syntropy Systems
"""Building and caching the trusted baseline output."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING

from fpbisect.errors import GroundTruthFailure, TrialFailure
from fpbisect.models.bisect import BuildPlan
from fpbisect.trial import execute_test

if TYPE_CHECKING:
    from fpbisect.artifacts import ArtifactManager
    from fpbisect.build import BuildPipeline
    from fpbisect.models.bisect import BisectTarget, Compilation
    from fpbisect.trial import Executor

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BaselineResult:
    """Canonical output of the trusted build of one test and precision."""

    test: str
    precision: str
    compilation: Compilation
    output: str


class GroundTruthManager:
    """Establishes baselines once per (test, precision, trusted compilation).

    Failures are cached like successes: a baseline that could not be built
    or run is reported again without another attempt.
    """

    def __init__(
        self,
        *,
        trusted: Compilation,
        pipeline: BuildPipeline,
        executor: Executor,
        artifacts: ArtifactManager,
        run_args: list[str],
        timeout: float | None = None,
        jobs: int = 1,
    ) -> None:
        self.trusted = trusted
        self.pipeline = pipeline
        self.executor = executor
        self.artifacts = artifacts
        self.run_args = run_args
        self.timeout = timeout
        self.jobs = jobs
        self.builds = 0

        self._cache: dict[tuple[str, str, Compilation], BaselineResult | GroundTruthFailure] = {}
        self._locks: dict[tuple[str, str, Compilation], threading.Lock] = {}
        self._guard = threading.Lock()

    def _key(self, target: BisectTarget) -> tuple[str, str, Compilation]:
        return (target.test, target.precision, self.trusted)

    def _lock_for(self, key: tuple[str, str, Compilation]) -> threading.Lock:
        with self._guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def establish(self, target: BisectTarget) -> BaselineResult:
        """Return the baseline for target, building it on first use.

        Raises GroundTruthFailure if the trusted build fails to compile,
        exits non-zero, or times out.
        """
        key = self._key(target)
        with self._lock_for(key):
            cached = self._cache.get(key)
            if cached is None:
                cached = self._build(target)
                self._cache[key] = cached
            else:
                logger.debug("Reusing ground truth for %s [%s]", target.test, target.precision)

        if isinstance(cached, GroundTruthFailure):
            raise GroundTruthFailure(str(cached))
        return cached

    def _build(self, target: BisectTarget) -> BaselineResult | GroundTruthFailure:
        logger.info(
            "Establishing ground truth for %s [%s] with '%s'",
            target.test,
            target.precision,
            self.trusted,
        )
        self.builds += 1
        with self.artifacts.acquire(f"ground-truth-{target.test}-{target.precision}") as lease:
            try:
                executable = self.pipeline.build(
                    BuildPlan(), self.trusted, self.trusted, lease.path, self.jobs
                )
                output = execute_test(
                    self.executor, executable, lease.path, target, self.run_args, self.timeout
                )
            except TrialFailure as e:
                logger.error("Ground truth failed for %s: %s", target, e)
                return GroundTruthFailure(f"Ground truth for {target.test} [{target.precision}] failed: {e}")

        return BaselineResult(
            test=target.test,
            precision=target.precision,
            compilation=self.trusted,
            output=output,
        )
