# Copyright (c) Syntropy Systems
"""Function symbol extraction from object files with nm."""
from __future__ import annotations

import shutil
import subprocess
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from pathlib import Path

# Strong, global, text (code) symbols are the only ones that can be
# swapped between objects by weakening.
FUNCTION_TYPES = frozenset("T")


@dataclass(frozen=True)
class NmEntry:
    """One line of nm output."""

    name: str
    type: str
    file: str | None = None
    line: int | None = None


def parse_nm_output(text: str) -> list[NmEntry]:
    """Parse `nm --defined-only --line-numbers` output.

    Lines look like ``0000000000000010 T _Z3fooi\\t/src/foo.cpp:12``;
    the address and the location are both optional.
    """
    entries: list[NmEntry] = []
    for raw in text.splitlines():
        if not raw.strip():
            continue
        symbol_part, _, location = raw.partition("\t")
        fields = symbol_part.split(None, 1)
        if len(fields) != 2:
            continue
        if len(fields[0]) > 1:
            # Leading address; demangled names may contain spaces
            fields = fields[1].split(None, 1)
            if len(fields) != 2:
                continue
        sym_type, name = fields
        if len(sym_type) != 1:
            continue

        file = None
        line = None
        if location:
            path, sep, line_text = location.strip().rpartition(":")
            if sep and line_text.isdigit():
                file = path
                line = int(line_text)
            else:
                file = location.strip()
        entries.append(NmEntry(name=name.strip(), type=sym_type, file=file, line=line))
    return entries


def _nm(args: list[str], timeout: float) -> str:
    nm = shutil.which("nm")
    if nm is None:
        msg = "nm not found on PATH"
        raise FileNotFoundError(msg)
    result = subprocess.run(  # noqa: S603
        [nm, *args],
        capture_output=True,
        text=True,
        timeout=timeout,
        check=False,
    )
    if result.returncode != 0:
        msg = f"nm {' '.join(args)} failed: {result.stderr.strip()}"
        raise RuntimeError(msg)
    return result.stdout


def defined_globals(object_file: Path, timeout: float = 60.0) -> list[NmEntry]:
    """All externally visible symbols defined in object_file."""
    return parse_nm_output(
        _nm(["--defined-only", "--extern-only", str(object_file)], timeout)
    )


def function_symbols(object_file: Path, timeout: float = 60.0) -> list[tuple[NmEntry, str]]:
    """Strong global functions of object_file paired with demangled names."""
    raw = parse_nm_output(
        _nm(["--defined-only", "--extern-only", "--line-numbers", str(object_file)], timeout)
    )
    demangled = parse_nm_output(
        _nm(["--defined-only", "--extern-only", "--demangle", str(object_file)], timeout)
    )
    # Both listings come out in the same order
    if len(demangled) != len(raw):
        demangled = raw
    return [
        (entry, pretty.name)
        for entry, pretty in zip(raw, demangled)
        if entry.type in FUNCTION_TYPES
    ]
