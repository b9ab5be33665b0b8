# Copyright (c) Syntropy Systems
"""Pydantic models for database records."""

from __future__ import annotations

from typing import Optional

from pydantic import field_validator

from fpbisect.models.bisect import BisectTarget, Compilation

from .base import FPBisectBaseModel


class ResultRecord(FPBisectBaseModel):
    """A recorded test result: one configuration and its comparison score."""

    id: int
    test: str
    precision: str
    compiler: str
    optl: str = ""
    switches: str = ""
    comparison: Optional[float] = None
    host: Optional[str] = None
    created_at: Optional[str] = None

    @field_validator("optl", "switches", mode="before")
    @classmethod
    def _none_to_empty(cls, value: object) -> object:
        return "" if value is None else value

    @property
    def compilation(self) -> Compilation:
        return Compilation(compiler=self.compiler, optl=self.optl, switches=self.switches)

    @property
    def target(self) -> BisectTarget:
        return BisectTarget(test=self.test, precision=self.precision, compilation=self.compilation)

    @property
    def diverged(self) -> bool:
        """True when the recorded comparison is non-zero."""
        return self.comparison is not None and self.comparison != 0
