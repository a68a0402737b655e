from __future__ import annotations

import logging
from dataclasses import replace
from pathlib import Path

import numpy as np

from .astrometry.extractor_solver import ExtractorSolver, FinishedCallback
from .config.enums import ProcessType
from .config.loader import SolverConfig, load_config
from .core.coordinates import ScaleUnits, search_position_degrees
from .core.image import ImageStatistic
from .core.result import Background, Solution, Star, WCSPoint
from .core.state import SolverState
from .utils.logging import setup_logging_from_config

logger = logging.getLogger("ssolver")


class PlateSolver:
    """Extract stars from an image and plate solve it.

    Every call to ``extract``, ``solve`` or ``start`` runs a fresh
    ``ExtractorSolver``; the most recent one backs the result properties.

    Parameters
    ----------
    image : ndarray
        (H, W) or (C, H, W) pixel buffer. Not copied.
    config : SolverConfig, optional
        Ready-made configuration; otherwise loaded from *config_path*
        and *overrides* on top of the packaged defaults.
    config_path : path, optional
    overrides : dict, optional
    """

    def __init__(
        self,
        image: np.ndarray,
        config: SolverConfig | None = None,
        config_path: str | Path | None = None,
        overrides: dict | None = None,
    ):
        self.config = config or load_config(config_path, overrides)
        setup_logging_from_config(self.config)
        self.image = image
        self.stats = ImageStatistic.from_array(image)
        self.solver: ExtractorSolver | None = None

    def set_search_position(self, ra, dec, radius: float | None = None, ra_in_hours: bool = False):
        """Search near (*ra*, *dec*); strings are parsed as sexagesimal."""
        ra_deg, dec_deg = search_position_degrees(ra, dec, ra_in_hours=ra_in_hours)
        self.config.set_search_position(ra_deg, dec_deg, radius)

    def set_search_scale(self, low: float, high: float, units: ScaleUnits | str = ScaleUnits.ARCSEC_PER_PIX):
        self.config.set_search_scale(low, high, units)

    def create_solver(self, process_type: ProcessType | None = None) -> ExtractorSolver:
        """New solver holding its own copy of the current configuration."""
        changes = {} if process_type is None else {"process_type": process_type}
        config = replace(self.config, **changes)
        self.solver = ExtractorSolver(config, self.image, self.stats)
        return self.solver

    def start(
        self,
        process_type: ProcessType | None = None,
        callback: FinishedCallback | None = None,
    ) -> ExtractorSolver:
        """Run in the background; *callback* gets ``(solver, success)``."""
        solver = self.create_solver(process_type)
        if callback is not None:
            solver.on_finished(callback)
        solver.start()
        return solver

    def extract(self, calculate_hfr: bool = False) -> list[Star]:
        """Blocking extraction; returns the (possibly empty) star list."""
        process = ProcessType.EXTRACT_WITH_HFR if calculate_hfr else ProcessType.EXTRACT
        solver = self.create_solver(process)
        if not solver.execute():
            logger.warning("Extraction failed: %s", solver.last_error)
        return solver.stars

    def solve(self) -> Solution | None:
        """Blocking solve; returns the solution or None."""
        solver = self.create_solver(ProcessType.SOLVE)
        if solver.execute():
            logger.info(solver.solution.summary())
            return solver.solution
        logger.warning("Solve did not succeed (%s): %s", solver.state.value, solver.last_error)
        return None

    def abort(self) -> None:
        if self.solver is not None:
            self.solver.abort()

    @property
    def state(self) -> SolverState | None:
        return self.solver.state if self.solver is not None else None

    @property
    def stars(self) -> list[Star]:
        return self.solver.stars if self.solver is not None else []

    @property
    def background(self) -> Background | None:
        return self.solver.background if self.solver is not None else None

    @property
    def solution(self) -> Solution | None:
        return self.solver.solution if self.solver is not None else None

    def pixel_to_wcs(self, x: float, y: float) -> WCSPoint | None:
        return self.solver.pixel_to_wcs(x, y) if self.solver is not None else None

    def wcs_to_pixel(self, point: WCSPoint) -> tuple[float, float] | None:
        return self.solver.wcs_to_pixel(point) if self.solver is not None else None

    def append_stars_ra_dec(self, stars: list[Star] | None = None) -> bool:
        return self.solver.append_stars_ra_dec(stars) if self.solver is not None else False
