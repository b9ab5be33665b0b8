# Copyright (c) Syntropy Systems
"""Running trials: build a plan, execute it, score it against the baseline."""
from __future__ import annotations

import logging
import math
from contextlib import ExitStack
from typing import TYPE_CHECKING, Callable, Optional, Protocol

from fpbisect.errors import BuildFailure, RuntimeFailure, TrialFailure
from fpbisect.models.bisect import TrialResult
from fpbisect.models.report import TrialRecord

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path

    from fpbisect.artifacts import ArtifactLease, ArtifactManager
    from fpbisect.build import BuildPipeline
    from fpbisect.comparator import Comparator
    from fpbisect.ground_truth import BaselineResult
    from fpbisect.models.bisect import BisectTarget, BuildPlan, Compilation
    from fpbisect.models.report import Phase
    from fpbisect.runner import ProcessResult

logger = logging.getLogger(__name__)

OUTPUT_FILE = "fpbisect-output.txt"

OnTrial = Callable[[TrialRecord], None]


class Executor(Protocol):
    """Runs a built executable and captures what it printed."""

    def execute(
        self,
        executable: Path,
        args: list[str],
        workdir: Path,
        timeout: float | None = None,
    ) -> ProcessResult:
        ...


def substitute_templates(argv: list[str], test: str, precision: str, output: str) -> list[str]:
    """Replace {{test}}, {{precision}} and {{output}} in run arguments."""
    result = []
    for arg in argv:
        arg = arg.replace("{{test}}", test)
        arg = arg.replace("{{precision}}", precision)
        arg = arg.replace("{{output}}", output)
        result.append(arg)
    return result


def execute_test(
    executor: Executor,
    executable: Path,
    workdir: Path,
    target: BisectTarget,
    run_args: list[str],
    timeout: float | None,
) -> str:
    """Run the test executable in workdir and return its output.

    The output is the file named by {{output}} when the arguments use it,
    stdout otherwise. Raises RuntimeFailure on a non-zero exit or timeout.
    """
    output_path = workdir / OUTPUT_FILE
    args = substitute_templates(run_args, target.test, target.precision, str(output_path))
    result = executor.execute(executable, args, workdir, timeout)
    if not result.ok:
        msg = f"Test '{target.test}' {result.describe_failure()}"
        raise RuntimeFailure(msg, workdir / "run.err")

    if any("{{output}}" in arg for arg in run_args):
        if not output_path.exists():
            msg = f"Test '{target.test}' did not write {output_path.name}"
            raise RuntimeFailure(msg)
        return output_path.read_text(errors="replace")
    return result.stdout


class TrialRunner:
    """Builds, runs and scores build plans for one bisection.

    Results are memoized by plan signature, so asking twice for the same
    plan runs it once. Within a batch every plan is built before any is
    executed, keeping compile load away from the test runs.
    """

    def __init__(
        self,
        *,
        target: BisectTarget,
        trusted: Compilation,
        pipeline: BuildPipeline,
        executor: Executor,
        comparator: Comparator,
        baseline: BaselineResult,
        artifacts: ArtifactManager,
        run_args: list[str],
        timeout: float | None = None,
        jobs: int = 1,
        on_trial: Optional[OnTrial] = None,
    ) -> None:
        self.target = target
        self.trusted = trusted
        self.pipeline = pipeline
        self.executor = executor
        self.comparator = comparator
        self.baseline = baseline
        self.artifacts = artifacts
        self.run_args = run_args
        self.timeout = timeout
        self.jobs = jobs
        self.on_trial = on_trial

        self.records: list[TrialRecord] = []
        self.trials_run = 0
        self._memo: dict[str, TrialResult] = {}

    def run(self, plan: BuildPlan, phase: Phase = "file", unit: str | None = None) -> TrialResult:
        """Run a single plan."""
        return self.run_batch([plan], phase=phase, unit=unit)[0]

    def run_batch(
        self,
        plans: Sequence[BuildPlan],
        phase: Phase = "file",
        unit: str | None = None,
    ) -> list[TrialResult]:
        """Run plans as one batch: build all of them, then execute them."""
        pending: list[BuildPlan] = []
        for plan in plans:
            if plan.signature not in self._memo and plan not in pending:
                pending.append(plan)

        fresh: set[str] = set()
        with ExitStack() as stack:
            built: list[tuple[BuildPlan, ArtifactLease, Path | None, TrialFailure | None]] = []
            for plan in pending:
                lease = stack.enter_context(self.artifacts.acquire(f"trial-{plan.digest}"))
                try:
                    executable = self.pipeline.build(
                        plan, self.trusted, self.target.compilation, lease.path, self.jobs
                    )
                    built.append((plan, lease, executable, None))
                except BuildFailure as e:
                    logger.warning("Build failed for %s: %s", plan.describe(), e)
                    built.append((plan, lease, None, e))

            for plan, lease, executable, failure in built:
                result = TrialResult(plan=plan, failure=failure)
                if executable is not None:
                    try:
                        result.score = self._score(executable, lease.path)
                    except RuntimeFailure as e:
                        logger.warning("Run failed for %s: %s", plan.describe(), e)
                        result.failure = e
                self.trials_run += 1
                result.index = self.trials_run
                self._memo[plan.signature] = result
                fresh.add(plan.signature)
                self._record(result, phase, unit, cached=False)
                lease.release()

        results: list[TrialResult] = []
        for plan in plans:
            result = self._memo[plan.signature]
            if plan.signature in fresh:
                fresh.discard(plan.signature)
            else:
                self._record(result, phase, unit, cached=True)
            results.append(result)
        return results

    def _score(self, executable: Path, workdir: Path) -> float:
        output = execute_test(
            self.executor, executable, workdir, self.target, self.run_args, self.timeout
        )
        try:
            score = float(self.comparator.compare(self.baseline.output, output))
        except Exception as e:
            msg = f"Comparator failed: {e!r}"
            raise RuntimeFailure(msg) from e
        if math.isnan(score) or score < 0:
            msg = f"Comparator returned an invalid score: {score}"
            raise RuntimeFailure(msg)
        return score

    def _record(self, result: TrialResult, phase: Phase, unit: str | None, cached: bool) -> None:
        failure = result.failure
        record = TrialRecord(
            index=result.index,
            phase=phase,
            unit=unit,
            description=result.plan.describe(),
            signature=result.plan.signature,
            score=result.score,
            failure_kind=failure.kind if failure is not None else None,
            failure=str(failure) if failure is not None else None,
            cached=cached,
        )
        self.records.append(record)
        if failure is None:
            logger.info(
                "Trial %d%s: %s -> score %s",
                record.index,
                " (cached)" if cached else "",
                record.description,
                record.score,
            )
        if self.on_trial is not None:
            self.on_trial(record)
