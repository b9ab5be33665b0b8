# Copyright (c) Syntropy Systems
"""Value types for builds, partitions and trials."""
from __future__ import annotations

import hashlib
import re
import shlex
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Generic, TypeVar

if TYPE_CHECKING:
    from collections.abc import Iterable

    from fpbisect.errors import TrialFailure

T = TypeVar("T")

_OPT_LEVEL = re.compile(r"^-O(\d|s|z|fast|g)?$")
_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9_.+-]+")


@dataclass(frozen=True)
class Compilation:
    """A compiler with an optimization level and extra switches."""

    compiler: str
    optl: str = ""
    switches: str = ""

    @classmethod
    def parse(cls, text: str) -> Compilation:
        """Parse "g++ -O3 -ffast-math" into its parts.

        The first token is the compiler, the first -O flag is the
        optimization level and everything else is kept as switches.
        """
        tokens = shlex.split(text)
        if not tokens:
            msg = "Compilation must name a compiler"
            raise ValueError(msg)
        compiler, rest = tokens[0], tokens[1:]
        optl = ""
        switches: list[str] = []
        for token in rest:
            if not optl and _OPT_LEVEL.match(token):
                optl = token
            else:
                switches.append(token)
        return cls(compiler=compiler, optl=optl, switches=shlex.join(switches))

    def flags(self) -> list[str]:
        """Compiler flags contributed by this compilation."""
        flags: list[str] = []
        if self.optl:
            flags.append(self.optl)
        flags.extend(shlex.split(self.switches))
        return flags

    @property
    def key(self) -> str:
        """Filesystem-safe identifier, stable across runs."""
        digest = hashlib.sha1(str(self).encode()).hexdigest()[:10]  # noqa: S324
        name = _UNSAFE_CHARS.sub("_", self.compiler.rsplit("/", 1)[-1])
        return f"{name}-{digest}"

    def __str__(self) -> str:
        return " ".join(part for part in (self.compiler, self.optl, self.switches) if part)


@dataclass(frozen=True)
class SymbolSite:
    """A function defined in one compilation unit."""

    unit: str
    name: str  # linkable (mangled) name
    demangled: str = ""
    line: int | None = None

    @property
    def signature(self) -> str:
        return self.demangled or self.name

    @property
    def location(self) -> str:
        if self.line is None:
            return self.unit
        return f"{self.unit}:{self.line}"

    def __str__(self) -> str:
        return f"{self.location} {self.signature}"


@dataclass(frozen=True)
class BuildPlan:
    """Which units, and which symbols of spliced units, take the variant flags.

    Units absent from both fields are compiled with the trusted flags.
    """

    variant_units: frozenset[str] = frozenset()
    symbol_splits: tuple[tuple[str, frozenset[str]], ...] = ()

    def __post_init__(self) -> None:
        split_units = {unit for unit, _ in self.symbol_splits}
        if len(split_units) != len(self.symbol_splits):
            msg = "A unit may only be spliced once per plan"
            raise ValueError(msg)
        overlap = split_units & self.variant_units
        if overlap:
            msg = f"Units both variant and spliced: {sorted(overlap)}"
            raise ValueError(msg)
        # Canonical order so equal plans share a signature
        object.__setattr__(
            self, "symbol_splits", tuple(sorted(self.symbol_splits, key=lambda s: s[0]))
        )

    @classmethod
    def for_units(cls, units: Iterable[str]) -> BuildPlan:
        return cls(variant_units=frozenset(units))

    @classmethod
    def for_symbols(cls, unit: str, symbols: Iterable[str]) -> BuildPlan:
        return cls(symbol_splits=((unit, frozenset(symbols)),))

    @property
    def is_trusted(self) -> bool:
        """True when nothing is compiled with the variant flags."""
        return not self.variant_units and not self.symbol_splits

    @property
    def signature(self) -> str:
        """Deterministic identity used to memoize trials."""
        parts = ["units=" + ",".join(sorted(self.variant_units))]
        for unit, symbols in self.symbol_splits:
            parts.append(f"split={unit}:" + ",".join(sorted(symbols)))
        return ";".join(parts)

    @property
    def digest(self) -> str:
        return hashlib.sha1(self.signature.encode()).hexdigest()[:8]  # noqa: S324

    def describe(self) -> str:
        """Short human readable description of the variant side."""
        if self.is_trusted:
            return "all trusted"
        pieces: list[str] = []
        if self.variant_units:
            pieces.append("variant files: " + ", ".join(sorted(self.variant_units)))
        for unit, symbols in self.symbol_splits:
            pieces.append(f"variant symbols in {unit}: " + ", ".join(sorted(symbols)))
        return "; ".join(pieces)


@dataclass(frozen=True)
class Partition(Generic[T]):
    """A bipartition of a candidate set into variant and trusted groups."""

    variant: tuple[T, ...]
    trusted: tuple[T, ...]

    @classmethod
    def of(cls, candidates: Iterable[T], variant: Iterable[T]) -> Partition[T]:
        candidates = tuple(candidates)
        chosen = set(variant)
        unknown = chosen.difference(candidates)
        if unknown:
            msg = f"Variant group has elements outside the candidate set: {unknown}"
            raise ValueError(msg)
        return cls(
            variant=tuple(c for c in candidates if c in chosen),
            trusted=tuple(c for c in candidates if c not in chosen),
        )


@dataclass(frozen=True)
class BisectTarget:
    """One configuration to bisect: a test run at a precision under a variant."""

    test: str
    precision: str
    compilation: Compilation

    def __str__(self) -> str:
        return f"{self.test} [{self.precision}] {self.compilation}"


@dataclass
class TrialResult:
    """Outcome of one trial: a score or a failure, never both."""

    plan: BuildPlan
    score: float | None = None
    failure: TrialFailure | None = None
    cached: bool = False
    index: int = 0

    @property
    def ok(self) -> bool:
        return self.failure is None

    @property
    def diverges(self) -> bool:
        return self.score is not None and self.score != 0


@dataclass
class FrontierEntry(Generic[T]):
    """A candidate set still being subdivided, with the score proving it."""

    candidates: tuple[T, ...]
    score: float
    depth: int = 0


@dataclass
class SearchOutcome(Generic[T]):
    """What one partitioner search found."""

    found: list[tuple[T, float]] = field(default_factory=list)
    interactions: list[tuple[tuple[T, ...], tuple[T, ...]]] = field(default_factory=list)
    failures: list[tuple[tuple[T, ...], TrialFailure]] = field(default_factory=list)
    full_score: float | None = None
    trials: int = 0

    @property
    def diverged(self) -> bool:
        return self.full_score is not None and self.full_score != 0
