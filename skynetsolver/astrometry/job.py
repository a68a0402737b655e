"""Per-instance temp-file namespace."""

from __future__ import annotations

import itertools
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger("ssolver")

_instance_counter = itertools.count(1)

# Every suffix a solver instance may write under its base name.
TEMP_SUFFIXES = ("fits", "xyls", "wcs", "ini", "cancel", "solved", "cfg", "param", "conv")


@dataclass(frozen=True)
class SolverJob:
    """Base path and name that namespace one instance's temp files.

    Child solvers append ``.n`` to the parent's name, so children of one
    parent never share a path.
    """

    base_path: Path
    base_name: str
    index: int | None = None

    @classmethod
    def create(cls, base_path: str | Path, base_name: str = "") -> SolverJob:
        """Namespace for a top-level solver.

        Without an explicit *base_name* a unique one is generated per
        instance and process.
        """
        if not base_name:
            base_name = f"ssolver_{os.getpid()}_{next(_instance_counter)}"
        return cls(base_path=Path(base_path), base_name=base_name)

    def child(self, index: int) -> SolverJob:
        return SolverJob(base_path=self.base_path, base_name=self.stem, index=index)

    @property
    def stem(self) -> str:
        if self.index is None:
            return self.base_name
        return f"{self.base_name}.{self.index}"

    def path(self, suffix: str) -> Path:
        return self.base_path / f"{self.stem}.{suffix}"

    @property
    def image_path(self) -> Path:
        return self.path("fits")

    @property
    def xyls_path(self) -> Path:
        return self.path("xyls")

    @property
    def wcs_path(self) -> Path:
        return self.path("wcs")

    @property
    def ini_path(self) -> Path:
        return self.path("ini")

    @property
    def cancel_path(self) -> Path:
        return self.path("cancel")

    @property
    def solved_path(self) -> Path:
        return self.path("solved")

    @property
    def config_path(self) -> Path:
        return self.path("cfg")

    @property
    def param_path(self) -> Path:
        return self.path("param")

    @property
    def conv_path(self) -> Path:
        return self.path("conv")

    def temp_paths(self) -> list[Path]:
        return [self.path(suffix) for suffix in TEMP_SUFFIXES]

    def remove(self, *paths: Path) -> None:
        """Delete *paths*, ignoring ones that were never created."""
        for p in paths:
            try:
                p.unlink()
                logger.debug("Removed %s", p)
            except FileNotFoundError:
                pass

    def remove_all(self) -> None:
        self.remove(*self.temp_paths())
