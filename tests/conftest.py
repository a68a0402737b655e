"""Shared pytest fixtures for the plate-solver test suite."""

from __future__ import annotations

import stat
import sys
import threading
from dataclasses import dataclass, replace
from pathlib import Path

import numpy as np
import pytest
from astropy.io import fits
from astropy.wcs import WCS

from skynetsolver.astrometry.job import SolverJob
from skynetsolver.astrometry.protocols import SolveResult
from skynetsolver.config import SolverConfig, load_config
from skynetsolver.core.errors import SolveCancelled
from skynetsolver.core.image import ImageStatistic
from skynetsolver.core.result import Background, Star
from skynetsolver.extraction.extractor import ExtractionResult

# ---------------------------------------------------------------------------
# Constants
# ---------------------------------------------------------------------------
_RNG_SEED = 42
_IMAGE_SIZE = 256
_BACKGROUND_MEAN = 100.0
_BACKGROUND_STD = 5.0
_CENTER_RA = 51.95  # degrees
_CENTER_DEC = 74.66  # degrees
_PIXEL_SCALE = 1.0 / 3600.0  # 1 arcsec/pixel in degrees

# Injected source definitions: (x, y, peak_flux, sigma)
_INJECTED_SOURCES = [
    (50.0, 50.0, 5000.0, 2.5),
    (200.0, 30.0, 3000.0, 2.2),
    (128.0, 128.0, 8000.0, 3.0),
    (80.0, 200.0, 2000.0, 2.0),
    (180.0, 180.0, 6000.0, 2.8),
    (30.0, 150.0, 1500.0, 2.3),
    (220.0, 100.0, 4000.0, 2.6),
    (100.0, 60.0, 3500.0, 2.4),
    (160.0, 220.0, 2500.0, 2.1),
    (240.0, 240.0, 7000.0, 3.2),
]


# ---------------------------------------------------------------------------
# Helper: 2-D Gaussian
# ---------------------------------------------------------------------------
def _gaussian_2d(
    shape: tuple[int, int],
    x0: float,
    y0: float,
    peak: float,
    sigma: float,
) -> np.ndarray:
    """Generate a 2-D Gaussian on a grid of the given *shape*."""
    y, x = np.mgrid[0 : shape[0], 0 : shape[1]]
    return peak * np.exp(-((x - x0) ** 2 + (y - y0) ** 2) / (2.0 * sigma**2))


# ---------------------------------------------------------------------------
# Helper: build a WCS header
# ---------------------------------------------------------------------------
def make_wcs_header(nx: int = _IMAGE_SIZE, ny: int = _IMAGE_SIZE, rotation: float = 0.0) -> fits.Header:
    """Return a FITS header with a valid TAN WCS (~1 arcsec/pixel).

    *rotation* turns the field by that many degrees east of north.
    """
    theta = np.radians(rotation)
    w = WCS(naxis=2)
    w.wcs.crpix = [nx / 2.0, ny / 2.0]
    w.wcs.crval = [_CENTER_RA, _CENTER_DEC]
    w.wcs.cd = _PIXEL_SCALE * np.array(
        [[-np.cos(theta), np.sin(theta)], [np.sin(theta), np.cos(theta)]]
    )
    w.wcs.ctype = ["RA---TAN", "DEC--TAN"]
    w.wcs.cunit = ["deg", "deg"]
    return w.to_header()


# ---------------------------------------------------------------------------
# Helper: build the image data array
# ---------------------------------------------------------------------------
def _make_image_data(rng: np.random.Generator, with_sources: bool = True) -> np.ndarray:
    """Return a float32 image with background noise and injected sources."""
    data = rng.normal(
        _BACKGROUND_MEAN, _BACKGROUND_STD, (_IMAGE_SIZE, _IMAGE_SIZE)
    ).astype(np.float32)
    if with_sources:
        for x0, y0, peak, sigma in _INJECTED_SOURCES:
            data += _gaussian_2d((_IMAGE_SIZE, _IMAGE_SIZE), x0, y0, peak, sigma).astype(
                np.float32
            )
    return data


# ---------------------------------------------------------------------------
# Fake backend for orchestration tests
# ---------------------------------------------------------------------------
class FakeBackend:
    """In-memory ``SolverBackend`` whose solve step is a test-supplied callable.

    ``behaviour(backend, stars)`` returns a ``SolveResult`` or raises.
    """

    name = "fake"
    supports_depth = True

    def __init__(self, config, job, behaviour=None, stars=None):
        self.config = config
        self.job = job
        self.behaviour = behaviour
        self.stars = stars or []
        self.aborted = threading.Event()
        self.solving = threading.Event()
        self.children: dict[int, FakeBackend] = {}
        self.cleaned = False
        self.solve_calls = 0

    def extract(self, calculate_hfr=False):
        if self.aborted.is_set():
            raise SolveCancelled("aborted")
        return ExtractionResult(
            stars=[replace(s) for s in self.stars],
            background=Background(
                width=_IMAGE_SIZE, height=_IMAGE_SIZE, num_stars_detected=len(self.stars)
            ),
        )

    def solve(self, stars):
        self.solve_calls += 1
        self.solving.set()
        return self.behaviour(self, stars)

    def abort(self):
        self.aborted.set()

    def spawn(self, index, config):
        child = FakeBackend(config, self.job.child(index), self.behaviour, self.stars)
        self.children[index] = child
        return child

    def cleanup_temp_files(self):
        self.cleaned = True


# ===================================================================
# Fixtures
# ===================================================================


@dataclass
class InjectedSources:
    """Container for injected source metadata."""

    x: np.ndarray
    y: np.ndarray
    peak_flux: np.ndarray


@pytest.fixture()
def known_sources() -> InjectedSources:
    """Return pixel positions and peaks of injected sources."""
    return InjectedSources(
        x=np.array([s[0] for s in _INJECTED_SOURCES]),
        y=np.array([s[1] for s in _INJECTED_SOURCES]),
        peak_flux=np.array([s[2] for s in _INJECTED_SOURCES]),
    )


@pytest.fixture()
def star_field() -> np.ndarray:
    """Synthetic 256x256 float32 image with ten Gaussian stars."""
    return _make_image_data(np.random.default_rng(_RNG_SEED))


@pytest.fixture()
def blank_field() -> np.ndarray:
    """Synthetic 256x256 float32 image containing only background noise."""
    return _make_image_data(np.random.default_rng(_RNG_SEED), with_sources=False)


@pytest.fixture()
def image_stats(star_field) -> ImageStatistic:
    return ImageStatistic.from_array(star_field)


@pytest.fixture()
def wcs_header() -> fits.Header:
    return make_wcs_header()


@pytest.fixture()
def rotated_wcs_header():
    """Build a synthetic WCS header turned by the given angle."""
    return lambda rotation: make_wcs_header(rotation=rotation)


@pytest.fixture()
def sample_stars() -> list[Star]:
    """Stars at the injected positions, brightest first."""
    ordered = sorted(_INJECTED_SOURCES, key=lambda s: -s[2])
    return [
        Star(x=x, y=y, mag=20.0 - 2.5 * np.log10(peak), flux=peak, peak=peak, a=sigma, b=sigma)
        for x, y, peak, sigma in ordered
    ]


@pytest.fixture()
def solver_config(tmp_path: Path) -> SolverConfig:
    """Default config writing temp files under *tmp_path*."""
    return load_config(
        overrides={"files": {"base_path": str(tmp_path), "base_name": "job"}}
    )


@pytest.fixture()
def fake_backend_factory(tmp_path: Path):
    """Build ``FakeBackend`` instances rooted in *tmp_path*."""

    def _make(config, behaviour=None, stars=None, base_name="job"):
        return FakeBackend(config, SolverJob.create(tmp_path, base_name), behaviour, stars)

    return _make


@pytest.fixture()
def solved_result(wcs_header) -> SolveResult:
    """A SolveResult for the default synthetic WCS."""
    from skynetsolver.astrometry.wcs_utils import solution_from_wcs

    stats = ImageStatistic(width=_IMAGE_SIZE, height=_IMAGE_SIZE)
    solution = solution_from_wcs(WCS(wcs_header), stats, index_number=5206, healpix=3)
    return SolveResult(solution=solution, header=wcs_header)


@pytest.fixture()
def make_script(tmp_path: Path):
    """Write an executable Python script standing in for an external engine."""
    bin_dir = tmp_path / "bin"
    bin_dir.mkdir()

    def _make(name: str, body: str) -> Path:
        path = bin_dir / name
        path.write_text(f"#!{sys.executable}\n" + body)
        path.chmod(path.stat().st_mode | stat.S_IXUSR | stat.S_IXGRP | stat.S_IXOTH)
        return path

    return _make


# ---------------------------------------------------------------------------
# Fixture aliases
# ---------------------------------------------------------------------------
@pytest.fixture
def default_config(solver_config):
    """Alias for solver_config."""
    return solver_config
