"""Protocol definition for extraction/solving backends."""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol, runtime_checkable

from astropy.io import fits

from ..core.result import Solution, Star
from ..extraction.extractor import ExtractionResult

if TYPE_CHECKING:
    from ..config.loader import SolverConfig
    from .job import SolverJob


@dataclass
class SolveResult:
    """What a backend hands back after a successful solve.

    ``header`` is the coordinate-system description the WCS loader
    parses; it may be None when the engine gave a solution but no usable
    WCS.
    """

    solution: Solution
    header: fits.Header | None = None


@runtime_checkable
class SolverBackend(Protocol):
    """Interface that every extraction/solving backend must satisfy.

    One backend object belongs to exactly one solver instance; it holds
    that instance's temp-file identity and any running engine.
    """

    name: str
    supports_depth: bool
    job: SolverJob

    def extract(self, calculate_hfr: bool = False) -> ExtractionResult:
        """Detect stars in the shared image buffer."""
        ...

    def solve(self, stars: list[Star]) -> SolveResult:
        """Plate solve, using *stars* when the engine accepts a star list.

        Raises one of the ``SolverError`` subclasses on failure and
        ``SolveCancelled`` once aborted.
        """
        ...

    def abort(self) -> None:
        """Signal any running work to stop; must not block."""
        ...

    def spawn(self, index: int, config: SolverConfig) -> SolverBackend:
        """Return an independent backend of the same kind for child *index*."""
        ...

    def cleanup_temp_files(self) -> None:
        """Remove every temp file this backend may have created."""
        ...
