# Copyright (c) Syntropy Systems
"""Build pipeline: per-unit compilation, symbol splicing and linking."""
from __future__ import annotations

import contextvars
import logging
import os
import shutil
import subprocess
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, Protocol

from fpbisect.errors import BuildFailure
from fpbisect.models.bisect import SymbolSite
from fpbisect.runner import run_process
from fpbisect.symbols import defined_globals, function_symbols

if TYPE_CHECKING:
    from pathlib import Path
    from threading import Event

    from fpbisect.config import ProjectConfig
    from fpbisect.models.bisect import BuildPlan, Compilation

logger = logging.getLogger(__name__)

EXECUTABLE_NAME = "fpbisect-test"


class BuildPipeline(Protocol):
    """Produces executables for build plans."""

    def units(self) -> list[str]:
        """All compilation units of the target, sorted."""
        ...

    def symbols(
        self, unit: str, trusted: Compilation, variant: Compilation
    ) -> list[SymbolSite]:
        """Functions of unit that can be taken from either compilation."""
        ...

    def build(
        self,
        plan: BuildPlan,
        trusted: Compilation,
        variant: Compilation,
        workdir: Path,
        jobs: int,
    ) -> Path:
        """Build the executable for plan in workdir, raising BuildFailure."""
        ...

    def discard(self, compilation: Compilation) -> None:
        """Forget cached outputs of a compilation."""
        ...


def _unit_slug(unit: str) -> str:
    return unit.replace("/", "__").replace("\\", "__")


class CompilerPipeline:
    """Compiles units one by one and links them with the trusted compiler.

    Objects are cached per (compilation, unit) and shared by every trial, so
    each unit is compiled at most once per compilation. All units are built
    with -fPIC so calls between functions of one file go through symbol
    resolution and a weakened definition can be overridden at link time.
    """

    def __init__(
        self,
        config: ProjectConfig,
        object_dir: Path,
        cancel_event: Event | None = None,
    ) -> None:
        self.config = config
        self.object_dir = object_dir
        self.cancel_event = cancel_event
        self._locks: dict[tuple[str, str], threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._units: list[str] | None = None

    # --- Units ---

    def units(self) -> list[str]:
        if self._units is None:
            source_dir = self.config.source_path
            found: set[str] = set()
            for pattern in self.config.sources:
                for path in source_dir.glob(pattern):
                    if path.is_file():
                        found.add(path.relative_to(source_dir).as_posix())
            self._units = sorted(found)
        return list(self._units)

    # --- Compilation ---

    def object_path(self, unit: str, compilation: Compilation) -> Path:
        return self.object_dir / compilation.key / f"{_unit_slug(unit)}.o"

    def _lock_for(self, unit: str, compilation: Compilation) -> threading.Lock:
        key = (compilation.key, unit)
        with self._locks_guard:
            if key not in self._locks:
                self._locks[key] = threading.Lock()
            return self._locks[key]

    def compile(self, unit: str, compilation: Compilation) -> Path:
        """Compile unit with compilation, reusing a cached object."""
        target = self.object_path(unit, compilation)
        with self._lock_for(unit, compilation):
            if target.exists():
                return target

            target.parent.mkdir(parents=True, exist_ok=True)
            tmp = target.with_suffix(f".{threading.get_ident()}.tmp.o")
            argv = [
                compilation.compiler,
                *compilation.flags(),
                "-fPIC",
                *self.config.cflags,
                *[f"-I{inc}" for inc in self.config.include_dirs],
                "-c",
                str(self.config.source_path / unit),
                "-o",
                str(tmp),
            ]
            log_dir = target.parent / "logs"
            logger.debug("Compiling %s: %s", unit, " ".join(argv))
            result = run_process(
                argv,
                self.config.source_path,
                log_dir,
                name=_unit_slug(unit),
                timeout=self.config.timeout,
                cancel_event=self.cancel_event,
                grace_period=self.config.kill_grace_period,
            )
            if not result.ok:
                tmp.unlink(missing_ok=True)
                msg = f"Compiling {unit} with '{compilation}' failed: {result.describe_failure()}"
                raise BuildFailure(msg, log_dir / f"{_unit_slug(unit)}.err")
            os.replace(tmp, target)
            return target

    def discard(self, compilation: Compilation) -> None:
        shutil.rmtree(self.object_dir / compilation.key, ignore_errors=True)
        with self._locks_guard:
            for key in [k for k in self._locks if k[0] == compilation.key]:
                del self._locks[key]

    # --- Symbols ---

    def symbols(
        self, unit: str, trusted: Compilation, variant: Compilation
    ) -> list[SymbolSite]:
        trusted_obj = self.compile(unit, trusted)
        variant_obj = self.compile(unit, variant)
        try:
            trusted_funcs = function_symbols(trusted_obj)
            variant_names = {entry.name for entry, _ in function_symbols(variant_obj)}
        except (OSError, RuntimeError, subprocess.SubprocessError) as e:
            msg = f"Cannot list symbols of {unit}: {e}"
            raise BuildFailure(msg) from e

        sites = [
            SymbolSite(unit=unit, name=entry.name, demangled=pretty, line=entry.line)
            for entry, pretty in trusted_funcs
            if entry.name in variant_names
        ]
        return sorted(sites, key=lambda s: s.name)

    # --- Linking ---

    def _objcopy(self, source: Path, target: Path, weaken: list[str], log_dir: Path) -> None:
        objcopy = shutil.which("objcopy")
        if objcopy is None:
            msg = "objcopy not found on PATH"
            raise BuildFailure(msg)
        argv = [objcopy, *[f"--weaken-symbol={name}" for name in weaken], str(source), str(target)]
        result = run_process(
            argv,
            log_dir,
            log_dir,
            name=f"objcopy-{target.stem}",
            timeout=self.config.timeout,
            cancel_event=self.cancel_event,
            grace_period=self.config.kill_grace_period,
        )
        if not result.ok:
            msg = f"objcopy of {source.name} failed: {result.describe_failure()}"
            raise BuildFailure(msg, log_dir / f"objcopy-{target.stem}.err")

    def _splice(
        self,
        unit: str,
        symbols: frozenset[str],
        trusted: Compilation,
        variant: Compilation,
        workdir: Path,
    ) -> list[Path]:
        """Objects for unit where only `symbols` come from the variant build.

        The trusted copy weakens the selected symbols; the variant copy weakens
        every other global it defines. The linker keeps the strong definition.
        """
        trusted_obj = self.object_path(unit, trusted)
        variant_obj = self.object_path(unit, variant)
        split_dir = workdir / "split"
        split_dir.mkdir(parents=True, exist_ok=True)

        try:
            variant_globals = [e.name for e in defined_globals(variant_obj)]
        except (OSError, RuntimeError, subprocess.SubprocessError) as e:
            msg = f"Cannot list symbols of {unit}: {e}"
            raise BuildFailure(msg) from e

        slug = _unit_slug(unit)
        trusted_split = split_dir / f"{slug}.trusted.o"
        variant_split = split_dir / f"{slug}.variant.o"
        self._objcopy(trusted_obj, trusted_split, sorted(symbols), split_dir)
        self._objcopy(
            variant_obj,
            variant_split,
            sorted(name for name in variant_globals if name not in symbols),
            split_dir,
        )
        return [variant_split, trusted_split]

    def build(
        self,
        plan: BuildPlan,
        trusted: Compilation,
        variant: Compilation,
        workdir: Path,
        jobs: int,
    ) -> Path:
        units = self.units()
        if not units:
            msg = f"No sources match {self.config.sources} in {self.config.source_path}"
            raise BuildFailure(msg)

        split = dict(plan.symbol_splits)
        unknown = (set(plan.variant_units) | set(split)) - set(units)
        if unknown:
            msg = f"Plan names unknown units: {sorted(unknown)}"
            raise ValueError(msg)

        needed: list[tuple[str, Compilation]] = []
        for unit in units:
            if unit in split:
                needed.extend([(unit, trusted), (unit, variant)])
            elif unit in plan.variant_units:
                needed.append((unit, variant))
            else:
                needed.append((unit, trusted))

        # Compile everything, then report the first failure
        with ThreadPoolExecutor(max_workers=max(1, jobs)) as pool:
            futures = [
                pool.submit(contextvars.copy_context().run, self.compile, unit, comp)
                for unit, comp in needed
            ]
        errors = [f.exception() for f in futures if f.exception() is not None]
        if errors:
            raise errors[0]

        objects: list[Path] = []
        for unit in units:
            if unit in split:
                objects.extend(self._splice(unit, split[unit], trusted, variant, workdir))
            elif unit in plan.variant_units:
                objects.append(self.object_path(unit, variant))
            else:
                objects.append(self.object_path(unit, trusted))

        executable = workdir / EXECUTABLE_NAME
        argv = [trusted.compiler, *[str(o) for o in objects], "-o", str(executable), *self.config.ldflags]
        result = run_process(
            argv,
            workdir,
            workdir,
            name="link",
            timeout=self.config.timeout,
            cancel_event=self.cancel_event,
            grace_period=self.config.kill_grace_period,
        )
        if not result.ok or not executable.exists():
            msg = f"Linking failed: {result.describe_failure()}"
            raise BuildFailure(msg, workdir / "link.err")
        return executable
