# Copyright (c) Syntropy Systems
"""Error kinds raised while bisecting."""
from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import Sequence
    from pathlib import Path


class FPBisectError(Exception):
    """Base class for fpbisect errors."""


class GroundTruthFailure(FPBisectError):
    """The trusted build could not be compiled or run.

    Fatal for the configuration: without a baseline nothing can be compared.
    """


class TrialFailure(FPBisectError):
    """A single trial produced no score."""

    kind: str = "trial"

    def __init__(self, message: str, log_path: Path | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.log_path = log_path

    def __str__(self) -> str:
        if self.log_path is not None:
            return f"{self.message} (see {self.log_path})"
        return self.message


class BuildFailure(TrialFailure):
    """A generated build did not compile or link."""

    kind = "build"


class RuntimeFailure(TrialFailure):
    """The executable exited non-zero, timed out, or was cancelled."""

    kind = "runtime"


class InteractionDetected(FPBisectError):
    """Neither half of a split reproduces the divergence on its own.

    The elements of ``candidates`` interact across the split boundary, so
    halving cannot attribute the divergence.
    """

    def __init__(self, candidates: Sequence[str]) -> None:
        self.candidates = list(candidates)
        super().__init__(
            f"Non-additive interaction among {len(self.candidates)} candidates"
        )
