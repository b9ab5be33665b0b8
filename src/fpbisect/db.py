# Copyright (c) Syntropy Systems
"""SQLite results store with WAL mode."""

from __future__ import annotations

import json
import sqlite3
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Optional

from fpbisect.models.db import ResultRecord

if TYPE_CHECKING:
    from pathlib import Path

    from fpbisect.models.report import BisectReport

# SQL schema for the fpbisect database
SCHEMA = """
-- Recorded test results (read by automatic bisection)
CREATE TABLE IF NOT EXISTS results (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    test TEXT NOT NULL,
    precision TEXT NOT NULL,
    compiler TEXT NOT NULL,
    optl TEXT DEFAULT '',
    switches TEXT DEFAULT '',
    comparison REAL,  -- 0 means identical to ground truth
    host TEXT,
    created_at TEXT DEFAULT (datetime('now'))
);

-- Outcome of each bisection, one row per attempt
CREATE TABLE IF NOT EXISTS bisections (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    result_id INTEGER REFERENCES results(id),
    status TEXT NOT NULL,  -- ok, no_divergence, ground_truth_failed, error
    run_dir TEXT,
    files TEXT,    -- JSON array of unit paths
    symbols TEXT,  -- JSON array of linkable names
    report TEXT,   -- full JSON report
    created_at TEXT DEFAULT (datetime('now'))
);

CREATE INDEX IF NOT EXISTS idx_results_test ON results(test);
CREATE INDEX IF NOT EXISTS idx_bisections_result ON bisections(result_id);
"""


def get_connection(db_path: Path) -> sqlite3.Connection:
    """
    Get a database connection with proper settings for concurrent access.

    - isolation_level=None for explicit transaction control
    - WAL mode for concurrent readers/writers
    - busy_timeout to wait for locks instead of failing immediately
    - Row factory for dict-like access
    """
    conn = sqlite3.connect(str(db_path), timeout=5.0, isolation_level=None)
    conn.execute("PRAGMA journal_mode=WAL")
    conn.execute("PRAGMA busy_timeout=5000")
    conn.row_factory = sqlite3.Row
    return conn


def init_db(db_path: Path) -> None:
    """Initialize the database with the schema."""
    conn = get_connection(db_path)
    try:
        conn.executescript(SCHEMA)
    finally:
        conn.close()


def utcnow() -> str:
    """Get current UTC time as ISO format string."""
    return datetime.now(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")


# --- Result Operations ---

def add_result(
    conn: sqlite3.Connection,
    test: str,
    precision: str,
    compiler: str,
    optl: str = "",
    switches: str = "",
    comparison: Optional[float] = None,
    host: Optional[str] = None,
) -> int:
    """Insert a result row and return its ID."""
    cursor = conn.execute(
        """
        INSERT INTO results (test, precision, compiler, optl, switches, comparison, host, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?, ?)
        """,
        (test, precision, compiler, optl, switches, comparison, host, utcnow()),
    )
    return cursor.lastrowid


def get_result(conn: sqlite3.Connection, result_id: int) -> Optional[ResultRecord]:
    """Get a result by ID."""
    row = conn.execute(
        "SELECT * FROM results WHERE id = ?",
        (result_id,),
    ).fetchone()

    if row is None:
        return None

    return ResultRecord.model_validate(dict(row))


def get_results(
    conn: sqlite3.Connection,
    test: Optional[str] = None,
    precision: Optional[str] = None,
) -> list[ResultRecord]:
    """Get results in insertion order with optional filtering."""
    query = "SELECT * FROM results WHERE 1=1"
    params: list[Any] = []

    if test:
        query += " AND test = ?"
        params.append(test)

    if precision:
        query += " AND precision = ?"
        params.append(precision)

    query += " ORDER BY id"

    rows = conn.execute(query, params).fetchall()
    return [ResultRecord.model_validate(dict(row)) for row in rows]


# --- Bisection Operations ---

def record_bisection(
    conn: sqlite3.Connection,
    result_id: Optional[int],
    report: BisectReport,
) -> int:
    """Store the outcome of a bisection."""
    cursor = conn.execute(
        """
        INSERT INTO bisections (result_id, status, run_dir, files, symbols, report, created_at)
        VALUES (?, ?, ?, ?, ?, ?, ?)
        """,
        (
            result_id,
            report.status,
            report.run_dir,
            json.dumps([f.unit for f in report.files]),
            json.dumps([s.symbol for s in report.symbols]),
            report.model_dump_json(),
            utcnow(),
        ),
    )
    return cursor.lastrowid


def get_bisections(conn: sqlite3.Connection, result_id: Optional[int] = None) -> list[dict]:
    """Get stored bisection outcomes, newest first."""
    query = "SELECT * FROM bisections"
    params: list[Any] = []
    if result_id is not None:
        query += " WHERE result_id = ?"
        params.append(result_id)
    query += " ORDER BY id DESC"

    rows = conn.execute(query, params).fetchall()
    bisections = []
    for row in rows:
        record = dict(row)
        record["files"] = json.loads(record["files"]) if record["files"] else []
        record["symbols"] = json.loads(record["symbols"]) if record["symbols"] else []
        bisections.append(record)
    return bisections
