# Copyright (c) Syntropy Systems
"""Tests for the results store."""

from fpbisect.db import (
    add_result,
    get_bisections,
    get_connection,
    get_result,
    get_results,
    init_db,
    record_bisection,
)
from fpbisect.models.bisect import Compilation
from fpbisect.models.report import BisectReport, Finding


class TestDatabase:
    def test_init_creates_tables(self, temp_dir):
        db_path = temp_dir / "results.db"
        init_db(db_path)

        conn = get_connection(db_path)
        tables = {
            row[0]
            for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
        conn.close()

        assert {"results", "bisections"} <= tables

    def test_wal_mode(self, db_connection):
        mode = db_connection.execute("PRAGMA journal_mode").fetchone()[0]
        assert mode.lower() == "wal"


class TestResults:
    def test_add_and_get(self, db_connection):
        result_id = add_result(
            db_connection, "Example", "double", "g++", "-O3", "-ffast-math", comparison=0.5
        )

        record = get_result(db_connection, result_id)

        assert record is not None
        assert record.test == "Example"
        assert record.compilation == Compilation("g++", "-O3", "-ffast-math")
        assert record.diverged
        assert record.target.precision == "double"

    def test_missing(self, db_connection):
        assert get_result(db_connection, 99) is None

    def test_filtering_and_order(self, db_connection):
        add_result(db_connection, "A", "double", "g++", comparison=1.0)
        add_result(db_connection, "B", "float", "g++", comparison=0.0)
        add_result(db_connection, "A", "float", "g++")

        assert [r.id for r in get_results(db_connection)] == [1, 2, 3]
        assert [r.id for r in get_results(db_connection, test="A")] == [1, 3]
        assert [r.id for r in get_results(db_connection, precision="float")] == [2, 3]

    def test_diverged(self, db_connection):
        add_result(db_connection, "A", "double", "g++", comparison=0.0)
        add_result(db_connection, "A", "double", "g++", comparison=None)
        add_result(db_connection, "A", "double", "g++", comparison=2.0)

        assert [r.diverged for r in get_results(db_connection)] == [False, False, True]

    def test_null_flags_read_as_empty(self, db_connection):
        db_connection.execute(
            "INSERT INTO results (test, precision, compiler, optl, switches) "
            "VALUES ('A', 'double', 'g++', NULL, NULL)"
        )

        record = get_results(db_connection)[0]

        assert record.optl == ""
        assert record.compilation == Compilation("g++")


class TestBisections:
    def test_record_and_read(self, db_connection):
        result_id = add_result(db_connection, "A", "double", "g++", "-O3", comparison=1.0)
        report = BisectReport(
            test="A",
            precision="double",
            compilation="g++ -O3",
            ground_truth="g++ -O0",
            files=[Finding(kind="file", unit="a.c", score=1.0)],
            symbols=[Finding(kind="symbol", unit="a.c", symbol="f", line=3, score=1.0)],
        )

        record_bisection(db_connection, result_id, report)
        stored = get_bisections(db_connection, result_id=result_id)

        assert len(stored) == 1
        assert stored[0]["status"] == "ok"
        assert stored[0]["files"] == ["a.c"]
        assert stored[0]["symbols"] == ["f"]
        assert BisectReport.model_validate_json(stored[0]["report"]) == report
