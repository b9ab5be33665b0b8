# Copyright (c) Syntropy Systems
"""Writing combined reports to JSON and CSV."""
from __future__ import annotations

import csv
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

    from fpbisect.models.report import CombinedReport

CSV_FIELDS = [
    "result_id",
    "test",
    "precision",
    "compilation",
    "status",
    "kind",
    "unit",
    "line",
    "symbol",
    "demangled",
    "score",
]


def write_json(report: CombinedReport, path: Path) -> None:
    """Write the full combined report as JSON."""
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(report.model_dump_json(indent=2))


def csv_rows(report: CombinedReport) -> list[dict[str, object]]:
    """One row per finding; configurations without findings get one empty row."""
    rows: list[dict[str, object]] = []
    for entry in report.entries:
        base = {
            "result_id": entry.result_id,
            "test": entry.test,
            "precision": entry.precision,
            "compilation": entry.report.compilation,
            "status": entry.report.status,
        }
        findings = [*entry.report.files, *entry.report.symbols]
        if not findings:
            rows.append({**base, "kind": "", "unit": "", "line": "", "symbol": "", "demangled": "", "score": ""})
            continue
        for finding in findings:
            rows.append(
                {
                    **base,
                    "kind": finding.kind,
                    "unit": finding.unit,
                    "line": finding.line if finding.line is not None else "",
                    "symbol": finding.symbol or "",
                    "demangled": finding.demangled or "",
                    "score": finding.score,
                }
            )
    return rows


def write_csv(report: CombinedReport, path: Path) -> None:
    """Write one line per finding."""
    path.parent.mkdir(parents=True, exist_ok=True)
    with path.open("w", newline="") as f:
        writer = csv.DictWriter(f, fieldnames=CSV_FIELDS)
        writer.writeheader()
        writer.writerows(csv_rows(report))
