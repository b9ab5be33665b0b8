# Copyright (c) Syntropy Systems
"""Lifetime of trial working directories and build outputs."""
from __future__ import annotations

import logging
import re
import shutil
import threading
from typing import TYPE_CHECKING

from typing_extensions import Self

if TYPE_CHECKING:
    from pathlib import Path
    from types import TracebackType

logger = logging.getLogger(__name__)

_RUN_DIR_PATTERN = re.compile(r"^bisect-(\d+)$")
_run_dir_lock = threading.Lock()


def next_run_dir(root: Path) -> Path:
    """Create and return the next free bisect-NN directory under root.

    Safe to call from concurrent threads.
    """
    with _run_dir_lock:
        root.mkdir(parents=True, exist_ok=True)
        numbers: list[int] = []
        for child in root.iterdir():
            match = _RUN_DIR_PATTERN.match(child.name)
            if match:
                numbers.append(int(match.group(1)))
        number = max(numbers, default=0) + 1
        while True:
            run_dir = root / f"bisect-{number:02d}"
            try:
                run_dir.mkdir()
            except FileExistsError:
                number += 1
                continue
            return run_dir


def directory_size(path: Path) -> int:
    """Total size in bytes of the files below path."""
    if not path.exists():
        return 0
    return sum(f.stat().st_size for f in path.rglob("*") if f.is_file())


class ArtifactLease:
    """A working directory owned by one trial until released."""

    def __init__(self, manager: ArtifactManager, path: Path) -> None:
        self.manager = manager
        self.path = path
        self.released = False

    def release(self) -> None:
        """Give the directory back, deleting it if the manager says so.

        Idempotent.
        """
        if self.released:
            return
        self.released = True
        self.manager._release(self)

    def __enter__(self) -> Self:
        return self

    def __exit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        tb: TracebackType | None,
    ) -> None:
        self.release()


class ArtifactManager:
    """Hands out uniquely named directories under a root.

    With delete=True every directory is removed when its lease is released,
    so a long batch only ever holds the directories of its active trials.
    """

    def __init__(self, root: Path, delete: bool = False) -> None:
        self.root = root
        self.delete = delete
        self._lock = threading.Lock()
        self._counter = 0
        self._active: set[Path] = set()
        self.peak_active = 0

    def acquire(self, name: str) -> ArtifactLease:
        """Create a fresh directory and lease it.

        The directory name is made unique with a running counter.
        """
        with self._lock:
            self._counter += 1
            path = self.root / f"{self._counter:03d}-{name}"
            path.mkdir(parents=True, exist_ok=False)
            self._active.add(path)
            self.peak_active = max(self.peak_active, len(self._active))
        return ArtifactLease(self, path)

    def _release(self, lease: ArtifactLease) -> None:
        with self._lock:
            self._active.discard(lease.path)
        if self.delete:
            logger.debug("Removing %s", lease.path)
            shutil.rmtree(lease.path, ignore_errors=True)

    @property
    def active(self) -> list[Path]:
        with self._lock:
            return sorted(self._active)

    def cleanup(self) -> None:
        """Remove the root itself when deleting is enabled."""
        if self.delete:
            shutil.rmtree(self.root, ignore_errors=True)
