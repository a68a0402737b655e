"""Integration tests for the extraction and solving pipeline."""

from __future__ import annotations

import threading
from unittest.mock import MagicMock, patch

import numpy as np
import pytest

from skynetsolver import PlateSolver
from skynetsolver.astrometry.internal import InternalBackend
from skynetsolver.config import ProcessType
from skynetsolver.core.state import SolverState


# ---------------------------------------------------------------------------
# Mock engine
# ---------------------------------------------------------------------------
class MockEngine:
    """Stands in for ``astrometry.Solver``; matches only deep enough star lists."""

    def __init__(self, wcs_header, min_stars: int = 1):
        self.wcs_header = wcs_header
        self.min_stars = min_stars
        self.calls: list[int] = []
        self._lock = threading.Lock()

    def open(self, index_files):
        engine = self

        class _Session:
            def __enter__(self):
                return self

            def __exit__(self, *exc):
                return False

            def solve(self, stars, size_hint, position_hint, solution_parameters):
                with engine._lock:
                    engine.calls.append(len(stars))
                result = MagicMock()
                result.has_match.return_value = len(stars) >= engine.min_stars
                match = MagicMock()
                match.wcs_fields = {
                    k: (v, engine.wcs_header.comments[k]) for k, v in engine.wcs_header.items()
                }
                match.index_path = "/indexes/index-4110.fits"
                result.best_match.return_value = match
                return result

        return _Session()


@pytest.fixture()
def index_dir(tmp_path):
    folder = tmp_path / "indexes"
    folder.mkdir()
    (folder / "index-4110.fits").write_bytes(b"")
    return folder


def _overrides(tmp_path, index_dir, **extra):
    overrides = {
        "files": {"base_path": str(tmp_path), "base_name": "pipe"},
        "index": {"folders": [str(index_dir)]},
        "logging": {"solver_level": "off"},
    }
    overrides.update(extra)
    return overrides


# ---------------------------------------------------------------------------
# Tests
# ---------------------------------------------------------------------------


class TestPipelineEndToEnd:
    """PlateSolver on a synthetic image with a mocked in-process engine."""

    def test_extract(self, star_field, tmp_path, index_dir, known_sources):
        ps = PlateSolver(star_field, overrides=_overrides(tmp_path, index_dir))

        stars = ps.extract()

        assert len(stars) >= len(known_sources.x)
        assert ps.state is SolverState.EXTRACTED
        assert ps.background.width == 256

    def test_extract_with_hfr(self, star_field, tmp_path, index_dir):
        ps = PlateSolver(star_field, overrides=_overrides(tmp_path, index_dir))
        stars = ps.extract(calculate_hfr=True)
        assert stars[0].hfr > 0

    def test_solve(self, star_field, tmp_path, index_dir, wcs_header):
        engine = MockEngine(wcs_header)
        ps = PlateSolver(star_field, overrides=_overrides(tmp_path, index_dir))
        ps.set_search_position("03:27:48", "+74:39:36", radius=2.0)
        ps.set_search_scale(0.5, 2.0)

        with patch.object(InternalBackend, "_open_solver", side_effect=engine.open):
            solution = ps.solve()

        assert solution is not None
        assert solution.index_number == 4110
        assert solution.pixscale == pytest.approx(1.0, rel=1e-6)
        assert abs(solution.dec_error) < 5.0
        assert ps.config.search_ra == pytest.approx(51.95)
        assert ps.append_stars_ra_dec()
        assert all(s.has_sky_position for s in ps.stars)
        x, y = ps.wcs_to_pixel(ps.pixel_to_wcs(10.0, 20.0))
        assert (x, y) == pytest.approx((10.0, 20.0), abs=1e-6)

    def test_solve_fails_without_match(self, star_field, tmp_path, index_dir, wcs_header):
        engine = MockEngine(wcs_header, min_stars=10_000)
        ps = PlateSolver(star_field, overrides=_overrides(tmp_path, index_dir))

        with patch.object(InternalBackend, "_open_solver", side_effect=engine.open):
            assert ps.solve() is None

        assert ps.state is SolverState.FAILED
        assert ps.stars

    def test_depth_race(self, star_field, tmp_path, index_dir, wcs_header):
        """Only the deepest partition sees enough stars to match."""
        engine = MockEngine(wcs_header, min_stars=4)
        overrides = _overrides(
            tmp_path,
            index_dir,
            parallel={"multi_algorithm": "depths", "parallelism": 3, "depth_low": 0, "depth_high": 10},
        )
        ps = PlateSolver(star_field, overrides=overrides)

        with patch.object(InternalBackend, "_open_solver", side_effect=engine.open):
            solution = ps.solve()

        assert solution is not None
        scheduler = ps.solver.scheduler
        assert [(c.config.depth_low, c.config.depth_high) for c in scheduler.children] == [
            (0, 3), (3, 6), (6, 10),
        ]
        assert scheduler.winner.name == "pipe.3"
        assert scheduler.winner.state is SolverState.SOLVED
        assert 4 in engine.calls

    def test_background_start(self, star_field, tmp_path, index_dir):
        ps = PlateSolver(star_field, overrides=_overrides(tmp_path, index_dir))
        done = threading.Event()
        outcome = []

        def _callback(solver, success):
            outcome.append(success)
            done.set()

        solver = ps.start(ProcessType.EXTRACT, callback=_callback)

        assert done.wait(30)
        solver.join(30)
        assert outcome == [True]
        assert ps.stars

    def test_colour_buffer_uses_first_channel(self, star_field, tmp_path, index_dir):
        cube = np.stack([star_field, np.zeros_like(star_field), np.zeros_like(star_field)])
        ps = PlateSolver(cube, overrides=_overrides(tmp_path, index_dir))
        assert ps.stats.channels == 3
        assert len(ps.extract()) >= 10

    def test_setters_do_not_reach_a_created_solver(self, star_field, tmp_path, index_dir):
        """Each solver gets its own copy of the configuration."""
        ps = PlateSolver(star_field, overrides=_overrides(tmp_path, index_dir))
        solver = ps.create_solver()

        ps.set_search_position(10.0, 20.0, radius=1.0)
        ps.set_search_scale(0.5, 2.0)

        assert solver.config is not ps.config
        assert not solver.config.use_position
        assert not solver.config.use_scale
        assert ps.create_solver().config.search_dec == 20.0
