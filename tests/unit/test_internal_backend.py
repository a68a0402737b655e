"""Unit tests for skynetsolver.astrometry.internal."""

from unittest.mock import MagicMock, patch

import astrometry
import pytest

from skynetsolver.astrometry.internal import InternalBackend, find_index_files, select_depth
from skynetsolver.core.errors import ConfigError, ProcessRuntimeError, SolveCancelled
from skynetsolver.core.result import Parity


def _mock_solver(wcs_header, has_match=True, index_path="/data/index-5206-03.fits"):
    """Return (context manager, solver) mocks standing in for astrometry.Solver."""
    match = MagicMock()
    match.wcs_fields = {
        key: (value, wcs_header.comments[key]) for key, value in wcs_header.items()
    }
    match.index_path = index_path

    result = MagicMock()
    result.has_match.return_value = has_match
    result.best_match.return_value = match

    solver = MagicMock()
    solver.solve.return_value = result
    cm = MagicMock()
    cm.__enter__.return_value = solver
    cm.__exit__.return_value = False
    return cm, solver


@pytest.fixture()
def backend(solver_config, star_field, image_stats, tmp_path):
    index = tmp_path / "index-5206-03.fits"
    index.write_bytes(b"")
    solver_config.index_files = [str(index)]
    return InternalBackend(solver_config, star_field, image_stats)


class TestHelpers:
    """Tests for index discovery and depth selection."""

    def test_find_index_files(self, tmp_path):
        folder = tmp_path / "indexes"
        folder.mkdir()
        for name in ("index-4208.fits", "index-4107.fits", "readme.txt"):
            (folder / name).write_bytes(b"")
        extra = tmp_path / "custom.fits"

        found = find_index_files([str(folder)], [str(extra)])

        assert [p.name for p in found] == ["custom.fits", "index-4107.fits", "index-4208.fits"]

    def test_select_depth(self, sample_stars):
        shuffled = list(reversed(sample_stars))
        selected = select_depth(shuffled, (2, 5))
        assert selected == sample_stars[2:5]

    def test_select_depth_none(self, sample_stars):
        assert select_depth(list(reversed(sample_stars)), None) == sample_stars


class TestInternalExtract:
    """Tests for in-process extraction."""

    def test_extract(self, backend):
        result = backend.extract()
        assert result.n_sources >= 10
        assert result.background.width == 256

    def test_extract_after_abort(self, backend):
        backend.abort()
        with pytest.raises(SolveCancelled):
            backend.extract()


class TestInternalSolve:
    """Tests for in-process solving with a mocked astrometry.Solver."""

    def test_solve(self, backend, sample_stars, wcs_header):
        cm, solver = _mock_solver(wcs_header)
        with patch.object(InternalBackend, "_open_solver", return_value=cm) as open_solver:
            result = backend.solve(sample_stars)

        open_solver.assert_called_once()
        sol = result.solution
        assert sol.pixscale == pytest.approx(1.0, rel=1e-6)
        assert sol.parity is Parity.NEGATIVE
        assert sol.index_number == 5206
        assert sol.healpix == 3
        assert result.header["CTYPE1"] == "RA---TAN"

    def test_stars_are_one_based(self, backend, sample_stars, wcs_header):
        cm, solver = _mock_solver(wcs_header)
        with patch.object(InternalBackend, "_open_solver", return_value=cm):
            backend.solve(sample_stars)

        submitted = solver.solve.call_args.kwargs["stars"]
        assert submitted[0] == [sample_stars[0].x + 1.0, sample_stars[0].y + 1.0]
        assert len(submitted) == len(sample_stars)

    def test_depth_slice(self, backend, sample_stars, wcs_header):
        backend.config.depth_low = 2
        backend.config.depth_high = 5
        cm, solver = _mock_solver(wcs_header)
        with patch.object(InternalBackend, "_open_solver", return_value=cm):
            backend.solve(list(reversed(sample_stars)))

        submitted = solver.solve.call_args.kwargs["stars"]
        assert submitted == [[s.x + 1.0, s.y + 1.0] for s in sample_stars[2:5]]

    def test_hints(self, backend, sample_stars, wcs_header):
        backend.config.set_search_scale(0.5, 2.0, "arcsecperpix")
        backend.config.set_search_position(51.9, 74.6, 2.0)
        backend.config.solver_parity = Parity.POSITIVE
        cm, solver = _mock_solver(wcs_header)
        with patch.object(InternalBackend, "_open_solver", return_value=cm):
            backend.solve(sample_stars)

        kwargs = solver.solve.call_args.kwargs
        assert kwargs["size_hint"].lower_arcsec_per_pixel == pytest.approx(0.5)
        assert kwargs["size_hint"].upper_arcsec_per_pixel == pytest.approx(2.0)
        assert kwargs["position_hint"].radius_deg == pytest.approx(2.0)
        assert kwargs["solution_parameters"].parity == astrometry.Parity.NORMAL

    def test_no_hints_by_default(self, backend, sample_stars, wcs_header):
        cm, solver = _mock_solver(wcs_header)
        with patch.object(InternalBackend, "_open_solver", return_value=cm):
            backend.solve(sample_stars)

        kwargs = solver.solve.call_args.kwargs
        assert kwargs["size_hint"] is None
        assert kwargs["position_hint"] is None

    def test_no_match(self, backend, sample_stars, wcs_header):
        cm, _ = _mock_solver(wcs_header, has_match=False)
        with patch.object(InternalBackend, "_open_solver", return_value=cm):
            with pytest.raises(ProcessRuntimeError, match="no match"):
                backend.solve(sample_stars)

    def test_no_index_files(self, backend, sample_stars):
        backend.config.index_files = []
        with pytest.raises(ConfigError, match="index files"):
            backend.solve(sample_stars)

    def test_empty_depth_range(self, backend, sample_stars):
        backend.config.depth_low = 50
        backend.config.depth_high = 60
        with pytest.raises(ProcessRuntimeError, match="no stars"):
            backend.solve(sample_stars)

    def test_abort_during_solve_discards_result(self, backend, sample_stars, wcs_header):
        cm, solver = _mock_solver(wcs_header)
        result = solver.solve.return_value

        def _solve(**kwargs):
            backend.abort()
            return result

        solver.solve.side_effect = _solve
        with patch.object(InternalBackend, "_open_solver", return_value=cm):
            with pytest.raises(SolveCancelled):
                backend.solve(sample_stars)

    def test_logodds_callback_stops_after_abort(self, backend):
        assert backend._logodds_callback([5.0]) == astrometry.Action.CONTINUE
        backend.abort()
        assert backend._logodds_callback([5.0]) == astrometry.Action.STOP


class TestInternalSpawn:
    """Tests for child backends."""

    def test_spawn_uses_child_namespace(self, backend, solver_config):
        child = backend.spawn(2, solver_config)
        assert child.job.stem == "job.2"
        assert child.buffer is backend.buffer
        assert child.stats is backend.stats
        assert not child.aborted
