# Copyright (c) Syntropy Systems
"""Divide-and-conquer search for the elements that cause divergence.

The search keeps an explicit worklist (the frontier) of candidate sets, each
already shown to diverge when compiled entirely with the variant flags.
Every step splits a set in two and runs both halves as one batch:

=========  =========  ==========================================
half A     half B     next step
=========  =========  ==========================================
diverges   matches    continue with A
matches    diverges   continue with B
diverges   diverges   continue with both (independent culprits)
matches    matches    interaction; test every element alone
=========  =========  ==========================================

A set of one element is a finding, reported with the score that proved it.
A half whose trial fails is abandoned and recorded; its sibling carries on.
"""
from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from collections import deque
from typing import TYPE_CHECKING, Generic, TypeVar

from fpbisect.errors import InteractionDetected
from fpbisect.models.bisect import (
    BuildPlan,
    FrontierEntry,
    Partition,
    SearchOutcome,
    SymbolSite,
)

if TYPE_CHECKING:
    from collections.abc import Iterable, Sequence

    from fpbisect.models.bisect import TrialResult
    from fpbisect.models.report import Phase
    from fpbisect.trial import TrialRunner

logger = logging.getLogger(__name__)

T = TypeVar("T")


def split_halves(candidates: Sequence[T]) -> tuple[tuple[T, ...], tuple[T, ...]]:
    """Split into two near-equal halves, the first one larger when odd."""
    middle = (len(candidates) + 1) // 2
    return tuple(candidates[:middle]), tuple(candidates[middle:])


class Partitioner(ABC, Generic[T]):
    """Search over one kind of element; subclasses say how to build a group."""

    phase: Phase = "file"
    unit: str | None = None

    def __init__(self, trials: TrialRunner) -> None:
        self.trials = trials

    @abstractmethod
    def plan_for(self, variant: Sequence[T]) -> BuildPlan:
        """Plan with exactly the elements of variant taken from the variant build."""

    def label(self, element: T) -> str:
        return str(element)

    def sort_key(self, element: T) -> str:
        return self.label(element)

    def _run(self, groups: Sequence[Sequence[T]]) -> list[TrialResult]:
        return self.trials.run_batch(
            [self.plan_for(group) for group in groups], phase=self.phase, unit=self.unit
        )

    def search(
        self,
        candidates: Iterable[T],
        full_score: float | None = None,
    ) -> SearchOutcome[T]:
        """Find the minimal divergent elements among candidates.

        full_score is the score of every candidate compiled with the variant
        flags; it is measured first when not given.
        """
        ordered = tuple(sorted(set(candidates), key=self.sort_key))
        outcome: SearchOutcome[T] = SearchOutcome()
        if not ordered:
            return outcome
        started = self.trials.trials_run

        if full_score is None:
            (result,) = self._run([ordered])
            if result.failure is not None:
                outcome.failures.append((ordered, result.failure))
                outcome.trials = self.trials.trials_run - started
                return outcome
            full_score = result.score
        outcome.full_score = full_score

        if not full_score:
            logger.info("No divergence with all %d candidates variant", len(ordered))
            outcome.trials = self.trials.trials_run - started
            return outcome

        frontier: deque[FrontierEntry[T]] = deque([FrontierEntry(ordered, full_score)])
        while frontier:
            entry = frontier.popleft()
            if len(entry.candidates) == 1:
                logger.info("Found %s (score %s)", self.label(entry.candidates[0]), entry.score)
                outcome.found.append((entry.candidates[0], entry.score))
                continue
            try:
                frontier.extend(self._split(entry, outcome))
            except InteractionDetected:
                logger.warning(
                    "Neither half of %d candidates diverges alone; testing each one",
                    len(entry.candidates),
                )
                self._leave_one_out(entry, outcome)

        outcome.found.sort(key=lambda pair: self.sort_key(pair[0]))
        outcome.trials = self.trials.trials_run - started
        return outcome

    def _split(self, entry: FrontierEntry[T], outcome: SearchOutcome[T]) -> list[FrontierEntry[T]]:
        first, _ = split_halves(entry.candidates)
        partition = Partition.of(entry.candidates, first)
        halves = (partition.variant, partition.trusted)
        results = self._run(halves)

        depth = entry.depth + 1
        next_entries = []
        failed = False
        for half, result in zip(halves, results):
            if result.failure is not None:
                # Only this half is abandoned; its sibling is still searched
                logger.warning("Abandoning %d candidates: %s", len(half), result.failure)
                outcome.failures.append((half, result.failure))
                failed = True
            elif result.diverges:
                next_entries.append(FrontierEntry(half, result.score, depth))
        if not next_entries and not failed:
            raise InteractionDetected([self.label(c) for c in entry.candidates])
        return next_entries

    def _leave_one_out(self, entry: FrontierEntry[T], outcome: SearchOutcome[T]) -> None:
        results = self._run([(element,) for element in entry.candidates])
        attributed: list[T] = []
        for element, result in zip(entry.candidates, results):
            if result.failure is not None:
                outcome.failures.append(((element,), result.failure))
            elif result.diverges:
                attributed.append(element)
                outcome.found.append((element, result.score))
        outcome.interactions.append((entry.candidates, tuple(attributed)))


class CompilationUnitPartitioner(Partitioner[str]):
    """Finds the source files whose variant compilation diverges."""

    phase: Phase = "file"

    def plan_for(self, variant: Sequence[str]) -> BuildPlan:
        return BuildPlan.for_units(variant)


class SymbolPartitioner(Partitioner[SymbolSite]):
    """Finds the functions of one file whose variant compilation diverges."""

    phase: Phase = "symbol"

    def __init__(self, trials: TrialRunner, unit: str) -> None:
        super().__init__(trials)
        self.unit = unit

    def plan_for(self, variant: Sequence[SymbolSite]) -> BuildPlan:
        return BuildPlan.for_symbols(self.unit, (site.name for site in variant))

    def sort_key(self, element: SymbolSite) -> str:
        return element.name
