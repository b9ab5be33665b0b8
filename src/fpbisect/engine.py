# Copyright (c) Syntropy Systems
"""Two-phase bisection of one configuration: files, then symbols."""
from __future__ import annotations

import contextvars
import logging
from typing import TYPE_CHECKING, Optional

from fpbisect.artifacts import ArtifactManager
from fpbisect.bisect import CompilationUnitPartitioner, SymbolPartitioner
from fpbisect.build import CompilerPipeline
from fpbisect.comparator import get_comparator
from fpbisect.errors import BuildFailure, GroundTruthFailure
from fpbisect.ground_truth import GroundTruthManager
from fpbisect.models.bisect import BuildPlan
from fpbisect.models.report import (
    BisectReport,
    BranchFailureRecord,
    Finding,
    InteractionRecord,
)
from fpbisect.runner import LocalExecutor
from fpbisect.trial import TrialRunner

if TYPE_CHECKING:
    from pathlib import Path
    from threading import Event

    from fpbisect.bisect import Partitioner
    from fpbisect.build import BuildPipeline
    from fpbisect.comparator import Comparator
    from fpbisect.config import ProjectConfig
    from fpbisect.models.bisect import BisectTarget, Compilation, SearchOutcome
    from fpbisect.trial import Executor, OnTrial

logger = logging.getLogger(__name__)

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"
LOG_FILE = "bisect.log"
REPORT_FILE = "report.json"


# Bisection the current thread works for; compile pools copy it to their workers
_current_run: contextvars.ContextVar[str | None] = contextvars.ContextVar(
    "fpbisect_run", default=None
)


class _RunFilter(logging.Filter):
    """Only pass records emitted on behalf of one bisection."""

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        return _current_run.get() == self.run_id


def _attach_log_file(run_dir: Path) -> logging.Handler:
    handler = logging.FileHandler(run_dir / LOG_FILE)
    handler.setLevel(logging.DEBUG)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    handler.addFilter(_RunFilter(str(run_dir)))
    package_logger = logging.getLogger("fpbisect")
    package_logger.addHandler(handler)
    if package_logger.level == logging.NOTSET or package_logger.level > logging.DEBUG:
        package_logger.setLevel(logging.DEBUG)
    return handler


def _detach_log_file(handler: logging.Handler) -> None:
    logging.getLogger("fpbisect").removeHandler(handler)
    handler.close()


class BisectionEngine:
    """Finds the files, then the functions, behind one divergent configuration."""

    def __init__(
        self,
        *,
        config: ProjectConfig,
        pipeline: BuildPipeline,
        executor: Executor,
        comparator: Comparator,
        ground_truth: GroundTruthManager,
        on_trial: Optional[OnTrial] = None,
    ) -> None:
        self.config = config
        self.pipeline = pipeline
        self.executor = executor
        self.comparator = comparator
        self.ground_truth = ground_truth
        self.on_trial = on_trial

    @property
    def trusted(self) -> Compilation:
        return self.ground_truth.trusted

    def run(
        self,
        target: BisectTarget,
        run_dir: Path,
        jobs: int = 1,
        delete: bool = False,
    ) -> BisectReport:
        """Bisect target, keeping logs and the report in run_dir."""
        run_dir.mkdir(parents=True, exist_ok=True)
        token = _current_run.set(str(run_dir))
        handler = _attach_log_file(run_dir)
        report = BisectReport(
            test=target.test,
            precision=target.precision,
            compilation=str(target.compilation),
            ground_truth=str(self.trusted),
            run_dir=str(run_dir),
        )
        artifacts = ArtifactManager(run_dir / "trials", delete=delete)
        try:
            logger.info("Bisecting %s against '%s'", target, self.trusted)
            try:
                baseline = self.ground_truth.establish(target)
            except GroundTruthFailure as e:
                report.status = "ground_truth_failed"
                report.message = str(e)
                return report

            trials = TrialRunner(
                target=target,
                trusted=self.trusted,
                pipeline=self.pipeline,
                executor=self.executor,
                comparator=self.comparator,
                baseline=baseline,
                artifacts=artifacts,
                run_args=self.config.run_args,
                timeout=self.config.timeout,
                jobs=jobs,
                on_trial=self.on_trial,
            )
            try:
                self._bisect(target, trials, report)
            finally:
                report.trials = trials.records
        except Exception as e:
            report.status = "error"
            report.message = f"Bisection aborted: {e!r}"
            raise
        finally:
            artifacts.cleanup()
            (run_dir / REPORT_FILE).write_text(report.model_dump_json(indent=2))
            _detach_log_file(handler)
            _current_run.reset(token)
        return report

    def _bisect(self, target: BisectTarget, trials: TrialRunner, report: BisectReport) -> None:
        units = self.pipeline.units()
        file_search = CompilationUnitPartitioner(trials)
        files = file_search.search(units)
        self._merge(file_search, files, report)
        report.full_score = files.full_score

        if not files.diverged:
            if files.failures:
                report.status = "error"
                report.message = f"Full variant build failed: {files.failures[0][1]}"
            else:
                report.status = "no_divergence"
                report.message = "The variant build matches the ground truth"
            return

        report.files = [
            Finding(kind="file", unit=unit, score=score) for unit, score in files.found
        ]
        if files.found:
            verify = trials.run(BuildPlan.for_units(u for u, _ in files.found), phase="verify")
            report.verification_score = verify.score
            if verify.score != files.full_score:
                logger.warning(
                    "Found files score %s alone, full variant build scored %s",
                    verify.score,
                    files.full_score,
                )

        splits: list[tuple[str, frozenset[str]]] = []
        for unit, _ in files.found:
            names = self._bisect_symbols(unit, target, trials, report)
            if names:
                splits.append((unit, frozenset(names)))

        if splits:
            verify = trials.run(BuildPlan(symbol_splits=tuple(splits)), phase="verify")
            report.symbol_verification_score = verify.score

    def _bisect_symbols(
        self,
        unit: str,
        target: BisectTarget,
        trials: TrialRunner,
        report: BisectReport,
    ) -> list[str]:
        try:
            sites = self.pipeline.symbols(unit, self.trusted, target.compilation)
        except BuildFailure as e:
            report.failures.append(
                BranchFailureRecord(
                    phase="symbol", unit=unit, members=[unit], kind=e.kind, message=str(e)
                )
            )
            return []

        if not sites:
            logger.warning("%s has no exported functions to bisect", unit)
            report.unattributed_files.append(unit)
            return []

        search = SymbolPartitioner(trials, unit)
        outcome = search.search(sites)
        self._merge(search, outcome, report)
        if not outcome.diverged:
            logger.warning(
                "Variant functions of %s do not reproduce the divergence on their own", unit
            )
            report.unattributed_files.append(unit)
            return []

        report.symbols.extend(
            Finding(
                kind="symbol",
                unit=unit,
                symbol=site.name,
                demangled=site.demangled or None,
                line=site.line,
                score=score,
            )
            for site, score in outcome.found
        )
        return [site.name for site, _ in outcome.found]

    def _merge(self, search: Partitioner, outcome: SearchOutcome, report: BisectReport) -> None:
        for members, attributed in outcome.interactions:
            report.interactions.append(
                InteractionRecord(
                    phase=search.phase,
                    unit=search.unit,
                    members=[search.label(m) for m in members],
                    attributed=[search.label(m) for m in attributed],
                )
            )
        for members, failure in outcome.failures:
            report.failures.append(
                BranchFailureRecord(
                    phase=search.phase,
                    unit=search.unit,
                    members=[search.label(m) for m in members],
                    kind=failure.kind,
                    message=str(failure),
                )
            )


def create_engine(
    config: ProjectConfig,
    work_root: Path,
    *,
    delete: bool = False,
    jobs: int = 1,
    cancel_event: Event | None = None,
    on_trial: Optional[OnTrial] = None,
) -> BisectionEngine:
    """Wire the default compiler pipeline, executor and comparator."""
    pipeline = CompilerPipeline(config, work_root / "objects", cancel_event=cancel_event)
    executor = LocalExecutor(
        config.launcher,
        grace_period=config.kill_grace_period,
        cancel_event=cancel_event,
    )
    ground_truth = GroundTruthManager(
        trusted=config.ground_truth_compilation,
        pipeline=pipeline,
        executor=executor,
        artifacts=ArtifactManager(work_root / "ground-truth", delete=delete),
        run_args=config.run_args,
        timeout=config.timeout,
        jobs=jobs,
    )
    return BisectionEngine(
        config=config,
        pipeline=pipeline,
        executor=executor,
        comparator=get_comparator(config.comparator, config.tolerance),
        ground_truth=ground_truth,
        on_trial=on_trial,
    )
