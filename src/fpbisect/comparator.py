# Copyright (c) Syntropy Systems
"""Comparison of a candidate run's output against the ground truth."""
from __future__ import annotations

import math
from typing import Protocol


class Comparator(Protocol):
    """Scores a candidate output against the baseline output.

    Must return 0 when the outputs are equivalent within the test's
    tolerance and a positive value otherwise. Only the sign is relied on.
    """

    def compare(self, baseline: str, candidate: str) -> float:
        ...


class ExactComparator:
    """Texts must match exactly, ignoring trailing whitespace."""

    def compare(self, baseline: str, candidate: str) -> float:
        return 0.0 if baseline.rstrip() == candidate.rstrip() else 1.0


def parse_floats(text: str) -> list[float]:
    """Parse every whitespace or comma separated token as a float.

    Raises ValueError on a token that is not a number.
    """
    return [float(token) for token in text.replace(",", " ").split()]


class L2Comparator:
    """L2 norm of the element-wise difference of the printed numbers."""

    def __init__(self, tolerance: float = 0.0) -> None:
        if tolerance < 0:
            msg = "tolerance must be non-negative"
            raise ValueError(msg)
        self.tolerance = tolerance

    def compare(self, baseline: str, candidate: str) -> float:
        try:
            expected = parse_floats(baseline)
            actual = parse_floats(candidate)
        except ValueError:
            # Not numeric; fall back to text equality
            return ExactComparator().compare(baseline, candidate)

        if len(expected) != len(actual):
            return math.inf

        diffs = []
        for a, b in zip(expected, actual):
            if math.isnan(a) and math.isnan(b):
                continue
            if math.isnan(a) or math.isnan(b):
                return math.inf
            if a == b:
                # Also covers matching infinities
                continue
            diffs.append(a - b)
        try:
            score = math.hypot(*diffs)
        except OverflowError:
            return math.inf
        return 0.0 if score <= self.tolerance else score


COMPARATORS = ("exact", "l2")


def get_comparator(name: str, tolerance: float = 0.0) -> Comparator:
    """Look up a comparator by its config name."""
    if name == "exact":
        return ExactComparator()
    if name == "l2":
        return L2Comparator(tolerance)
    msg = f"Unknown comparator '{name}' (choose from {', '.join(COMPARATORS)})"
    raise ValueError(msg)
