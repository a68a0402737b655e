"""In-process backend: sep extraction and the astrometry package solver."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import astrometry
import numpy as np

from ..config.loader import SolverConfig
from ..core.coordinates import scale_to_arcsec_per_pixel
from ..core.errors import ConfigError, ProcessRuntimeError, SolveCancelled
from ..core.image import ImageStatistic, prepare_image
from ..core.result import Parity, Star
from ..extraction.extractor import ExtractionOptions, ExtractionResult, extract_stars
from .job import SolverJob
from .protocols import SolveResult
from .wcs_utils import WCSHandle, header_from_fields, index_ids_from_path, solution_from_wcs

logger = logging.getLogger("ssolver")

# solve-field semantics: "pos" is astrometry.net's normal parity, "neg" its flip.
_ENGINE_PARITY = {
    Parity.BOTH: astrometry.Parity.BOTH,
    Parity.POSITIVE: astrometry.Parity.NORMAL,
    Parity.NEGATIVE: astrometry.Parity.FLIP,
}


def find_index_files(folders: list[str], files: list[str]) -> list[Path]:
    """Explicit index files followed by every ``index-*.fits`` in *folders*."""
    found = [Path(f) for f in files]
    for folder in folders:
        found.extend(sorted(Path(folder).glob("index-*.fits")))
    return found


def select_depth(stars: list[Star], depth: tuple[int, int] | None) -> list[Star]:
    """Brightest-first slice ``[lo, hi)`` of *stars*; all of them if no depth."""
    ordered = sorted(stars, key=lambda s: s.mag)
    if depth is None:
        return ordered
    lo, hi = depth
    return ordered[lo:hi]


class InternalBackend:
    """``SolverBackend`` that runs everything inside the calling process.

    Extraction uses sep on the shared image buffer; solving passes the
    star list to ``astrometry.Solver`` with the configured index files.
    The library call cannot be interrupted, so ``abort()`` takes effect
    at the next log-odds callback or when the call returns.
    """

    name = "internal"
    supports_depth = True

    def __init__(
        self,
        config: SolverConfig,
        buffer: np.ndarray,
        stats: ImageStatistic,
        job: SolverJob | None = None,
    ):
        self.config = config
        self.buffer = buffer
        self.stats = stats
        self.job = job or SolverJob.create(config.base_path, config.base_name)
        self._aborted = threading.Event()

    @property
    def aborted(self) -> bool:
        return self._aborted.is_set()

    def check_aborted(self) -> None:
        if self._aborted.is_set():
            raise SolveCancelled(f"{self.job.stem}: aborted")

    # -- extraction ------------------------------------------------------

    def extract(self, calculate_hfr: bool = False) -> ExtractionResult:
        self.check_aborted()
        data = prepare_image(self.buffer, self.stats, self.config.subframe)
        result = extract_stars(
            data,
            ExtractionOptions.from_config(self.config, calculate_hfr=calculate_hfr),
            subframe=self.config.subframe,
        )
        self.check_aborted()
        return result

    # -- solving ---------------------------------------------------------

    def depth_range(self) -> tuple[int, int] | None:
        if not self.config.uses_depth_range:
            return None
        return self.config.depth_low, self.config.depth_high

    def _size_hint(self):
        cfg = self.config
        if not cfg.use_scale:
            return None
        low = scale_to_arcsec_per_pixel(cfg.scale_low, cfg.scale_units, self.stats.width)
        high = scale_to_arcsec_per_pixel(cfg.scale_high, cfg.scale_units, self.stats.width)
        return astrometry.SizeHint(
            lower_arcsec_per_pixel=min(low, high),
            upper_arcsec_per_pixel=max(low, high),
        )

    def _position_hint(self):
        cfg = self.config
        if not cfg.use_position:
            return None
        return astrometry.PositionHint(
            ra_deg=cfg.search_ra,
            dec_deg=cfg.search_dec,
            radius_deg=cfg.search_radius,
        )

    def _logodds_callback(self, logodds_list: list[float]):
        if self._aborted.is_set():
            return astrometry.Action.STOP
        return astrometry.Action.CONTINUE

    def _solution_parameters(self):
        cfg = self.config
        return astrometry.SolutionParameters(
            sip_order=cfg.solver_sip_order,
            parity=_ENGINE_PARITY[cfg.solver_parity],
            tune_up_logodds_threshold=cfg.solver_logratio_to_keep,
            output_logodds_threshold=cfg.solver_logratio_to_solve,
            logodds_callback=self._logodds_callback,
        )

    def _open_solver(self, index_files: list[Path]):
        return astrometry.Solver(index_files)

    def solve(self, stars: list[Star]) -> SolveResult:
        self.check_aborted()
        index_files = find_index_files(self.config.index_folder_paths, self.config.index_files)
        if not index_files:
            raise ConfigError("No astrometry index files configured or found")

        depth = self.depth_range()
        selected = select_depth(stars, depth)
        if not selected:
            raise ProcessRuntimeError(f"{self.job.stem}: no stars in depth range {depth}")

        logger.info(
            "%s: solving with %d stars against %d index files",
            self.job.stem, len(selected), len(index_files),
        )
        with self._open_solver(index_files) as solver:
            # The engine works in the 1-based FITS pixel convention.
            result = solver.solve(
                stars=[[s.x + 1.0, s.y + 1.0] for s in selected],
                size_hint=self._size_hint(),
                position_hint=self._position_hint(),
                solution_parameters=self._solution_parameters(),
            )
        self.check_aborted()

        if not result.has_match():
            raise ProcessRuntimeError(f"{self.job.stem}: no match found")

        match = result.best_match()
        header = header_from_fields(match.wcs_fields)
        index_number, healpix = index_ids_from_path(match.index_path)
        handle = WCSHandle.from_header(header)
        solution = solution_from_wcs(handle.wcs, self.stats, index_number, healpix)
        handle.release()
        logger.info("%s: %s", self.job.stem, solution.summary())
        return SolveResult(solution=solution, header=header)

    # -- lifecycle -------------------------------------------------------

    def abort(self) -> None:
        self._aborted.set()

    def spawn(self, index: int, config: SolverConfig) -> InternalBackend:
        return InternalBackend(config, self.buffer, self.stats, self.job.child(index))

    def cleanup_temp_files(self) -> None:
        """Nothing to remove; this backend writes no files."""
