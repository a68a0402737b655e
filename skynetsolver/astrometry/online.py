"""Astrometry.net web-service backend via astroquery."""

from __future__ import annotations

import logging
import threading

import numpy as np

from ..config.loader import SolverConfig
from ..core.errors import ProcessRuntimeError, SolveCancelled
from ..core.image import ImageStatistic
from ..core.result import Parity, Star
from ..extraction.extractor import ExtractionResult
from .internal import InternalBackend, select_depth
from .job import SolverJob
from .protocols import SolveResult
from .wcs_utils import WCSHandle, solution_from_wcs, validate_wcs

logger = logging.getLogger("ssolver")

_PARITY_CODES = {Parity.POSITIVE: 0, Parity.NEGATIVE: 1, Parity.BOTH: 2}


class OnlineBackend:
    """``SolverBackend`` that uploads the star list to nova.astrometry.net.

    Requires an API key set via the ``ASTROMETRY_NET_API_KEY`` environment
    variable or the ``[online]`` config table. The upload cannot be
    interrupted; ``abort()`` discards a late result.
    """

    name = "online"
    supports_depth = False

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
        self._internal = InternalBackend(config, buffer, stats, self.job)
        self._aborted = threading.Event()
        self._solver = None

    def _get_solver(self):
        if self._solver is None:
            from astroquery.astrometry_net import AstrometryNet
            solver = AstrometryNet()
            if self.config.online_api_key:
                solver.api_key = self.config.online_api_key
            self._solver = solver
        return self._solver

    def extract(self, calculate_hfr: bool = False) -> ExtractionResult:
        return self._internal.extract(calculate_hfr)

    def settings(self) -> dict:
        """Search hints in astrometry.net's upload vocabulary."""
        cfg = self.config
        settings: dict = {"parity": _PARITY_CODES[cfg.solver_parity], "crpix_center": True}
        if cfg.use_scale:
            settings.update(
                scale_units=cfg.scale_units.value,
                scale_type="ul",
                scale_lower=cfg.scale_low,
                scale_upper=cfg.scale_high,
            )
        if cfg.use_position:
            settings.update(
                center_ra=cfg.search_ra,
                center_dec=cfg.search_dec,
                radius=cfg.search_radius,
            )
        if cfg.solver_downsample > 1:
            settings["downsample_factor"] = cfg.solver_downsample
        return settings

    def solve(self, stars: list[Star]) -> SolveResult:
        if self._aborted.is_set():
            raise SolveCancelled(f"{self.job.stem}: aborted")
        selected = select_depth(stars, None)
        if not selected:
            raise ProcessRuntimeError(f"{self.job.stem}: no stars to upload")

        solver = self._get_solver()
        logger.info("Submitting %d stars to astrometry.net...", len(selected))
        try:
            wcs_header = solver.solve_from_source_list(
                np.array([s.x + 1.0 for s in selected]),
                np.array([s.y + 1.0 for s in selected]),
                self.stats.width,
                self.stats.height,
                solve_timeout=self.config.online_timeout,
                **self.settings(),
            )
        except TimeoutError as e:
            raise ProcessRuntimeError(f"astrometry.net timed out: {e}") from e

        if self._aborted.is_set():
            raise SolveCancelled(f"{self.job.stem}: aborted while waiting for astrometry.net")
        if not wcs_header or not validate_wcs(wcs_header):
            raise ProcessRuntimeError("astrometry.net found no solution")

        handle = WCSHandle.from_header(wcs_header)
        solution = solution_from_wcs(handle.wcs, self.stats)
        handle.release()
        logger.info("Solved online: %s", solution.summary())
        return SolveResult(solution=solution, header=wcs_header)

    def abort(self) -> None:
        self._aborted.set()
        self._internal.abort()

    def spawn(self, index: int, config: SolverConfig) -> OnlineBackend:
        return OnlineBackend(config, self.buffer, self.stats, self.job.child(index))

    def cleanup_temp_files(self) -> None:
        """Nothing to remove; uploads go straight from memory."""
