# Copyright (c) Syntropy Systems
"""Tests for value types and report models."""

import pytest

from fpbisect.errors import BuildFailure, InteractionDetected
from fpbisect.models.bisect import BuildPlan, Compilation, Partition, SymbolSite
from fpbisect.models.report import BisectReport, CombinedEntry, CombinedReport, TrialRecord


class TestCompilation:
    def test_parse(self):
        compilation = Compilation.parse("g++ -O3 -ffast-math -mavx2")

        assert compilation.compiler == "g++"
        assert compilation.optl == "-O3"
        assert compilation.switches == "-ffast-math -mavx2"
        assert compilation.flags() == ["-O3", "-ffast-math", "-mavx2"]
        assert str(compilation) == "g++ -O3 -ffast-math -mavx2"

    def test_parse_without_level(self):
        compilation = Compilation.parse("clang -funsafe-math-optimizations")

        assert compilation.optl == ""
        assert compilation.flags() == ["-funsafe-math-optimizations"]

    def test_parse_empty(self):
        with pytest.raises(ValueError):
            Compilation.parse("  ")

    def test_key_is_stable_and_safe(self):
        a = Compilation("/usr/bin/g++", "-O2")
        b = Compilation("/usr/bin/g++", "-O2")

        assert a.key == b.key
        assert a.key.startswith("g++-")
        assert "/" not in a.key
        assert a.key != Compilation("/usr/bin/g++", "-O3").key


class TestBuildPlan:
    def test_signature_ignores_order(self):
        a = BuildPlan.for_units(["b.c", "a.c"])
        b = BuildPlan.for_units(["a.c", "b.c"])

        assert a == b
        assert a.signature == b.signature == "units=a.c,b.c"

    def test_split_signature(self):
        plan = BuildPlan(
            variant_units=frozenset({"a.c"}),
            symbol_splits=(("z.c", frozenset({"g", "f"})), ("m.c", frozenset({"h"}))),
        )

        assert plan.signature == "units=a.c;split=m.c:h;split=z.c:f,g"
        assert plan.describe() == (
            "variant files: a.c; variant symbols in m.c: h; variant symbols in z.c: f, g"
        )

    def test_trusted(self):
        assert BuildPlan().is_trusted
        assert BuildPlan().describe() == "all trusted"
        assert not BuildPlan.for_units(["a.c"]).is_trusted

    def test_rejects_overlap(self):
        with pytest.raises(ValueError, match="both variant and spliced"):
            BuildPlan(
                variant_units=frozenset({"a.c"}),
                symbol_splits=(("a.c", frozenset({"f"})),),
            )

    def test_rejects_double_split(self):
        with pytest.raises(ValueError, match="once"):
            BuildPlan(symbol_splits=(("a.c", frozenset({"f"})), ("a.c", frozenset({"g"}))))


class TestPartition:
    def test_of(self):
        partition = Partition.of(["a", "b", "c"], ["c", "a"])

        assert partition.variant == ("a", "c")
        assert partition.trusted == ("b",)

    def test_unknown_elements(self):
        with pytest.raises(ValueError, match="outside"):
            Partition.of(["a"], ["z"])


def test_symbol_site_location():
    site = SymbolSite(unit="a.cpp", name="_Z1fv", demangled="f()", line=7)

    assert site.location == "a.cpp:7"
    assert site.signature == "f()"
    assert SymbolSite(unit="a.cpp", name="_Z1fv").signature == "_Z1fv"


class TestErrors:
    def test_trial_failure_mentions_log(self, temp_dir):
        failure = BuildFailure("compile failed", temp_dir / "a.err")

        assert failure.kind == "build"
        assert str(failure) == f"compile failed (see {temp_dir / 'a.err'})"

    def test_interaction_carries_candidates(self):
        error = InteractionDetected(["a.c", "b.c"])

        assert error.candidates == ["a.c", "b.c"]
        assert "2 candidates" in str(error)


class TestReports:
    def _report(self, status="ok", trials=()):
        return BisectReport(
            test="A",
            precision="double",
            compilation="g++ -O3",
            ground_truth="g++ -O0",
            status=status,
            trials=list(trials),
        )

    def test_trial_count_excludes_cached(self):
        trials = [
            TrialRecord(index=1, phase="file", description="x", signature="s1", score=1.0),
            TrialRecord(
                index=1, phase="verify", description="x", signature="s1", score=1.0, cached=True
            ),
        ]

        assert self._report(trials=trials).trial_count == 1

    def test_combined_lookup_and_failures(self):
        entries = [
            CombinedEntry(
                result_id=i,
                test="A",
                precision="double",
                compiler="g++",
                optl="-O3",
                switches="",
                recorded_score=1.0,
                report=self._report(status=status),
            )
            for i, status in [(1, "ok"), (2, "error"), (3, "ground_truth_failed")]
        ]
        combined = CombinedReport(entries=entries, skipped=4)

        assert set(combined.by_key()) == {
            "1:A:double:g++ -O3",
            "2:A:double:g++ -O3",
            "3:A:double:g++ -O3",
        }
        assert [e.result_id for e in combined.failed] == [2, 3]

    def test_json_round_trip(self):
        report = self._report()

        assert BisectReport.model_validate_json(report.model_dump_json()) == report
