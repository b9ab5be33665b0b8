# Copyright (c) Syntropy Systems
"""Automatic bisection of every divergent configuration in the results store."""
from __future__ import annotations

import logging
import threading
from collections import Counter
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import TYPE_CHECKING

from fpbisect.artifacts import next_run_dir
from fpbisect.db import get_results, record_bisection
from fpbisect.models.report import BisectReport, CombinedEntry, CombinedReport

if TYPE_CHECKING:
    import sqlite3
    from pathlib import Path
    from threading import Event

    from fpbisect.engine import BisectionEngine
    from fpbisect.models.bisect import BisectTarget, Compilation
    from fpbisect.models.db import ResultRecord

logger = logging.getLogger(__name__)


class AutoRunOrchestrator:
    """Runs the two-phase bisection for every row with a non-zero score.

    Two independent bounds apply: ``parallel`` bisections run at once, and
    each build compiles with ``jobs`` threads. A project that is not
    reentrant is always bisected one row at a time.
    """

    def __init__(
        self,
        engine: BisectionEngine,
        bisect_root: Path,
        reentrant: bool = True,
        cancel_event: Event | None = None,
        record: bool = True,
    ) -> None:
        self.engine = engine
        self.bisect_root = bisect_root
        self.reentrant = reentrant
        self.cancel_event = cancel_event
        self.record = record

        # Rows not yet finished, per variant compilation
        self._pending: Counter[Compilation] = Counter()
        self._pending_lock = threading.Lock()

    def select(
        self, conn: sqlite3.Connection, test: str | None = None
    ) -> tuple[list[ResultRecord], int]:
        """Rows worth bisecting, and how many were skipped."""
        rows = get_results(conn, test=test)
        selected = []
        for row in rows:
            if row.diverged:
                selected.append(row)
            else:
                logger.debug("Skipping result #%d: comparison is %s", row.id, row.comparison)
        return selected, len(rows) - len(selected)

    def run_all(
        self,
        conn: sqlite3.Connection,
        parallel: int = 1,
        jobs: int = 1,
        delete: bool = False,
        test: str | None = None,
    ) -> CombinedReport:
        """Bisect every divergent row and combine the reports."""
        selected, skipped = self.select(conn, test=test)
        combined = CombinedReport(skipped=skipped)
        logger.info("%d configurations to bisect, %d skipped", len(selected), skipped)
        if not selected:
            return combined

        parallel = max(1, parallel)
        if parallel > 1 and not self.reentrant:
            logger.warning("Test is not reentrant; running bisections one at a time")
            parallel = 1

        with self._pending_lock:
            self._pending = Counter(row.compilation for row in selected)

        with ThreadPoolExecutor(max_workers=parallel) as pool:
            futures = {pool.submit(self._bisect_row, row, jobs, delete): row for row in selected}
            for future in as_completed(futures):
                row = futures[future]
                report = future.result()
                combined.entries.append(
                    CombinedEntry(
                        result_id=row.id,
                        test=row.test,
                        precision=row.precision,
                        compiler=row.compiler,
                        optl=row.optl,
                        switches=row.switches,
                        recorded_score=row.comparison,
                        report=report,
                    )
                )
                if self.record:
                    record_bisection(conn, row.id, report)

        combined.entries.sort(key=lambda entry: entry.result_id)
        return combined

    def _bisect_row(self, row: ResultRecord, jobs: int, delete: bool) -> BisectReport:
        """Bisect one row; any failure stays confined to this row's report."""
        target = row.target
        try:
            if self.cancel_event is not None and self.cancel_event.is_set():
                return self._error_report(target, "Cancelled before start")
            run_dir = next_run_dir(self.bisect_root)
            logger.info("Result #%d -> %s", row.id, run_dir.name)
            return self.engine.run(target, run_dir, jobs=jobs, delete=delete)
        except Exception as e:  # noqa: BLE001
            logger.exception("Bisection of result #%d failed", row.id)
            return self._error_report(target, f"{type(e).__name__}: {e}")
        finally:
            self._release(target.compilation, delete)

    def _error_report(self, target: BisectTarget, message: str) -> BisectReport:
        return BisectReport(
            test=target.test,
            precision=target.precision,
            compilation=str(target.compilation),
            ground_truth=str(self.engine.trusted),
            status="error",
            message=message,
        )

    def _release(self, compilation: Compilation, delete: bool) -> None:
        """Drop variant objects once no remaining row uses the compilation."""
        with self._pending_lock:
            self._pending[compilation] -= 1
            if self._pending[compilation] > 0:
                return
            del self._pending[compilation]
            if delete and compilation != self.engine.trusted:
                logger.debug("Discarding objects of '%s'", compilation)
                self.engine.pipeline.discard(compilation)
