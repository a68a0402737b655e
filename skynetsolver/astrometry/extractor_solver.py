"""A single solver instance: state, worker thread and result slots."""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from typing import Callable

import numpy as np
from astropy.io import fits

from ..config.enums import ExtractorType, MultiAlgorithm, ProcessType, SolverType
from ..config.loader import SolverConfig
from ..core.errors import SolutionParseError, SolveCancelled, SolverError, SolverStateError
from ..core.image import ImageStatistic
from ..core.result import Background, Solution, Star, WCSPoint
from ..core.state import SolverState, StateMachine
from .external import ExternalBackend
from .internal import InternalBackend
from .online import OnlineBackend
from .protocols import SolverBackend
from .scheduler import DepthParallelScheduler
from .wcs_utils import WCSHandle

logger = logging.getLogger("ssolver")

FinishedCallback = Callable[["ExtractorSolver", bool], None]


def create_backend(
    config: SolverConfig, buffer: np.ndarray, stats: ImageStatistic
) -> SolverBackend:
    """Pick the backend variant for the configured extractor and solver."""
    if config.solver_type is SolverType.ONLINE:
        return OnlineBackend(config, buffer, stats)
    if config.solver_type.is_external or config.extractor_type is not ExtractorType.INTERNAL:
        return ExternalBackend(config, buffer, stats)
    return InternalBackend(config, buffer, stats)


class ExtractorSolver:
    """One extraction/solve run over a shared image buffer.

    The instance moves ``IDLE -> EXTRACTING -> EXTRACTED -> SOLVING`` and
    ends in ``SOLVED``, ``FAILED`` or ``ABORTED`` (extract-only runs end in
    ``EXTRACTED``). A finished instance cannot be run again; create a new
    one to retry.

    Parameters
    ----------
    config : SolverConfig
    buffer : ndarray
        Image pixels; shared read-only with child solvers.
    stats : ImageStatistic
    backend : SolverBackend, optional
        Defaults to the variant chosen by ``create_backend``.
    """

    def __init__(
        self,
        config: SolverConfig,
        buffer: np.ndarray,
        stats: ImageStatistic,
        backend: SolverBackend | None = None,
    ):
        self.config = config
        self.buffer = buffer
        self.stats = stats
        self.backend = backend or create_backend(config, buffer, stats)
        self.name = self.backend.job.stem

        self.stars: list[Star] = []
        self.background: Background | None = None
        self.solution: Solution | None = None
        self.last_error: Exception | None = None
        self.solve_gate: Callable[[ExtractorSolver], bool] | None = None

        self._state = StateMachine(self.name)
        self._has_stars = False
        self._solution_header: fits.Header | None = None
        self._wcs: WCSHandle | None = None

        self._start_lock = threading.Lock()
        self._started = False
        self._thread: threading.Thread | None = None
        self._finish_lock = threading.Lock()
        self._finish_reported = False
        self._finished = threading.Event()
        self._callbacks: list[FinishedCallback] = []
        self._succeeded = False

        self.scheduler: DepthParallelScheduler | None = None
        if (
            config.multi_algorithm is MultiAlgorithm.DEPTHS
            and config.process_type is ProcessType.SOLVE
            and self.backend.supports_depth
        ):
            self.scheduler = DepthParallelScheduler(self)

    def __repr__(self) -> str:
        return f"ExtractorSolver({self.name!r}, {self.state.value})"

    # ------------------------------------------------------------------
    # State and completion
    # ------------------------------------------------------------------

    @property
    def state(self) -> SolverState:
        return self._state.state

    @property
    def is_finished(self) -> bool:
        return self._finished.is_set()

    @property
    def succeeded(self) -> bool:
        return self._succeeded

    @property
    def has_wcs(self) -> bool:
        return self._wcs is not None and self._wcs.is_loaded

    def on_finished(self, callback: FinishedCallback) -> None:
        """Register ``callback(solver, success)``.

        Called once, from the thread that finishes the run; immediately if
        the run has already finished.
        """
        with self._finish_lock:
            if not self._finish_reported:
                self._callbacks.append(callback)
                return
        callback(self, self._succeeded)

    def wait(self, timeout: float | None = None) -> bool:
        """Block until finished; return False on timeout."""
        return self._finished.wait(timeout)

    def join(self, timeout: float | None = None) -> bool:
        """Wait for the worker thread, including its temp-file cleanup.

        Returns False if the worker is still running after *timeout*.
        """
        if self._thread is None:
            return True
        self._thread.join(timeout)
        return not self._thread.is_alive()

    def _finish(self, target: SolverState) -> None:
        self._state.transition(target)
        with self._finish_lock:
            if self._finish_reported:
                return
            self._finish_reported = True
            state = self._state.state
            self._succeeded = state in (SolverState.SOLVED, SolverState.EXTRACTED)
            callbacks = list(self._callbacks)
        logger.debug("%s: finished in state %s", self.name, state.value)
        self._finished.set()
        for callback in callbacks:
            try:
                callback(self, self._succeeded)
            except Exception:
                logger.exception("%s: finished callback raised", self.name)

    def _enter(self, target: SolverState) -> None:
        if self._state.transition(target):
            return
        if self._state.state is SolverState.ABORTED:
            raise SolveCancelled(f"{self.name}: aborted")
        raise SolverStateError(
            f"{self.name}: cannot move from {self._state.state.value} to {target.value}"
        )

    # ------------------------------------------------------------------
    # Running
    # ------------------------------------------------------------------

    def _claim_start(self) -> None:
        with self._start_lock:
            if self._started or self._state.is_terminal:
                raise SolverStateError(
                    f"{self.name} already ran (state {self.state.value}); create a new solver"
                )
            self._started = True

    def start(self) -> None:
        """Run in a background thread and return immediately."""
        self._claim_start()
        self._thread = threading.Thread(target=self._run, name=self.name, daemon=True)
        self._thread.start()

    def execute(self) -> bool:
        """Run in the calling thread; return True on success."""
        self._claim_start()
        self._run()
        return self._succeeded

    def use_stars(self, stars: list[Star]) -> None:
        """Solve from *stars* instead of extracting; must precede ``start``."""
        if self._started:
            raise SolverStateError(f"{self.name}: stars must be set before starting")
        self.stars = [replace(s) for s in stars]
        self._has_stars = True

    def _run(self) -> None:
        target = SolverState.FAILED
        try:
            self.config.validate()
            process = self.config.process_type
            builtin = (
                process is ProcessType.SOLVE
                and self.config.extractor_type is ExtractorType.BUILTIN
            )
            if not self._has_stars and not builtin:
                self._extract(calculate_hfr=process is ProcessType.EXTRACT_WITH_HFR)
            if process is not ProcessType.SOLVE:
                target = SolverState.EXTRACTED
            else:
                self._solve()
                target = SolverState.SOLVED
        except SolveCancelled as e:
            logger.info("%s", e)
            target = SolverState.ABORTED
        except SolverError as e:
            logger.error("%s: %s", self.name, e)
            self.last_error = e
        except Exception as e:
            logger.exception("%s: unexpected error", self.name)
            self.last_error = e
        finally:
            if self.config.cleanup_temp_files:
                self.backend.cleanup_temp_files()
        self._finish(target)

    def _extract(self, calculate_hfr: bool) -> None:
        self._enter(SolverState.EXTRACTING)
        result = self.backend.extract(calculate_hfr)
        self.stars = result.stars
        self.background = result.background
        self._has_stars = True
        self._enter(SolverState.EXTRACTED)

    def _solve(self) -> None:
        self._enter(SolverState.SOLVING)
        if self.scheduler is not None:
            result, stars = self.scheduler.run(self.stars)
            self.stars = stars
        else:
            result = self.backend.solve(self.stars)

        if self.solve_gate is not None and not self.solve_gate(self):
            raise SolveCancelled(f"{self.name}: another solver already succeeded")
        self._enter(SolverState.SOLVED)

        solution = result.solution
        if self.config.use_position:
            solution = solution.with_search_errors(self.config.search_ra, self.config.search_dec)
        self.solution = solution
        self._solution_header = result.header
        self.load_wcs()

    # ------------------------------------------------------------------
    # Abort and children
    # ------------------------------------------------------------------

    def abort(self) -> None:
        """Stop this run; safe to call repeatedly and from any thread.

        The instance reaches ``ABORTED`` immediately unless it has already
        solved. Running engines get the cancel file and a terminate request,
        then a kill once ``abort_grace_seconds`` has elapsed.
        """
        if self._finished.is_set():
            return
        if not self._state.transition(SolverState.ABORTED):
            # already terminal; the worker reports once its results are in place
            return
        logger.info("%s: abort requested", self.name)
        self.backend.abort()
        if self.scheduler is not None:
            self.scheduler.abort()
        self._finish(SolverState.ABORTED)

    def spawn_child_solver(
        self,
        index: int,
        depth_low: int | None = None,
        depth_high: int | None = None,
    ) -> ExtractorSolver:
        """New solver sharing this image, with its own state and temp files."""
        config = replace(
            self.config,
            multi_algorithm=MultiAlgorithm.NONE,
            depth_low=self.config.depth_low if depth_low is None else depth_low,
            depth_high=self.config.depth_high if depth_high is None else depth_high,
        )
        backend = self.backend.spawn(index, config)
        return ExtractorSolver(config, self.buffer, self.stats, backend=backend)

    # ------------------------------------------------------------------
    # WCS
    # ------------------------------------------------------------------

    def load_wcs(self) -> bool:
        """Load the transform from the solution; False if unavailable."""
        if self.state is not SolverState.SOLVED:
            logger.warning("%s: no solution to load a WCS from", self.name)
            return False
        self.release_wcs()
        try:
            self._wcs = WCSHandle.from_header(self._solution_header)
        except SolutionParseError as e:
            logger.warning("%s: could not load WCS: %s", self.name, e)
            return False
        return True

    def release_wcs(self) -> None:
        if self._wcs is not None:
            self._wcs.release()
            self._wcs = None

    def pixel_to_wcs(self, x: float, y: float) -> WCSPoint | None:
        if self._wcs is None:
            return None
        return self._wcs.pixel_to_wcs(x, y)

    def wcs_to_pixel(self, point: WCSPoint) -> tuple[float, float] | None:
        if self._wcs is None:
            return None
        return self._wcs.wcs_to_pixel(point)

    def append_stars_ra_dec(self, stars: list[Star] | None = None) -> bool:
        """Fill ``ra``/``dec`` on every star; False if any conversion fails."""
        if self._wcs is None:
            logger.warning("%s: no WCS loaded, cannot compute star positions", self.name)
            return False
        stars = self.stars if stars is None else stars
        for star in stars:
            point = self._wcs.pixel_to_wcs(star.x, star.y)
            if point is None:
                return False
            star.ra = point.ra
            star.dec = point.dec
        return True

    @property
    def solution_header(self) -> fits.Header | None:
        return self._solution_header
