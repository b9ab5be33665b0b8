# Copyright (c) Syntropy Systems
"""Pydantic models for bisection reports."""

from __future__ import annotations

from typing import Literal, Optional

from pydantic import Field

from .base import FPBisectBaseModel

Phase = Literal["baseline", "file", "symbol", "verify"]
ReportStatus = Literal["ok", "no_divergence", "ground_truth_failed", "error"]


class TrialRecord(FPBisectBaseModel):
    """One executed (or memoized) trial."""

    index: int
    phase: Phase
    unit: Optional[str] = None
    description: str
    signature: str
    score: Optional[float] = None
    failure_kind: Optional[str] = None
    failure: Optional[str] = None
    cached: bool = False


class Finding(FPBisectBaseModel):
    """A minimal suspect: a file, or a symbol within a file."""

    kind: Literal["file", "symbol"]
    unit: str
    symbol: Optional[str] = None
    demangled: Optional[str] = None
    line: Optional[int] = None
    score: float

    @property
    def location(self) -> str:
        if self.line is None:
            return self.unit
        return f"{self.unit}:{self.line}"


class InteractionRecord(FPBisectBaseModel):
    """A split where neither half diverged alone.

    ``attributed`` lists the members that still diverge in isolation; the
    rest of the divergence cannot be pinned to single elements.
    """

    phase: Phase
    unit: Optional[str] = None
    members: list[str]
    attributed: list[str] = Field(default_factory=list)


class BranchFailureRecord(FPBisectBaseModel):
    """A search branch abandoned because a trial failed."""

    phase: Phase
    unit: Optional[str] = None
    members: list[str]
    kind: str
    message: str


class BisectReport(FPBisectBaseModel):
    """Result of bisecting one configuration."""

    test: str
    precision: str
    compilation: str
    ground_truth: str
    status: ReportStatus = "ok"
    message: Optional[str] = None
    run_dir: Optional[str] = None
    full_score: Optional[float] = None
    files: list[Finding] = Field(default_factory=list)
    symbols: list[Finding] = Field(default_factory=list)
    verification_score: Optional[float] = None
    symbol_verification_score: Optional[float] = None
    unattributed_files: list[str] = Field(default_factory=list)
    interactions: list[InteractionRecord] = Field(default_factory=list)
    failures: list[BranchFailureRecord] = Field(default_factory=list)
    trials: list[TrialRecord] = Field(default_factory=list)

    @property
    def trial_count(self) -> int:
        """Trials that actually ran (memo hits excluded)."""
        return sum(1 for t in self.trials if not t.cached)


class CombinedEntry(FPBisectBaseModel):
    """A report together with the store row that requested it."""

    result_id: int
    test: str
    precision: str
    compiler: str
    optl: str
    switches: str
    recorded_score: float
    report: BisectReport

    @property
    def key(self) -> str:
        return f"{self.result_id}:{self.test}:{self.precision}:{self.report.compilation}"


class CombinedReport(FPBisectBaseModel):
    """Reports of an automatic run over the results store."""

    entries: list[CombinedEntry] = Field(default_factory=list)
    skipped: int = 0

    def by_key(self) -> dict[str, BisectReport]:
        return {entry.key: entry.report for entry in self.entries}

    @property
    def failed(self) -> list[CombinedEntry]:
        return [e for e in self.entries if e.report.status in ("ground_truth_failed", "error")]
