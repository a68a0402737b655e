"""WCS loading, validation and pixel <-> sky transforms."""

from __future__ import annotations

import logging
import math
import re
from pathlib import Path

import numpy as np
from astropy.io import fits
from astropy.wcs import WCS, NoConvergence

from ..core.errors import SolutionParseError
from ..core.image import ImageStatistic
from ..core.result import UNKNOWN_INDEX, Parity, Solution, WCSPoint

logger = logging.getLogger("ssolver")

_INDEX_ID_RE = re.compile(r"index\s+id:\s*(-?\d+)", re.IGNORECASE)
_HEALPIX_RE = re.compile(r"index\s+healpix:\s*(-?\d+)", re.IGNORECASE)
_INDEX_NAME_RE = re.compile(r"index-(\d+)(?:-(\d+))?\.fits", re.IGNORECASE)


def validate_wcs(header) -> bool:
    """Check whether a FITS header contains a valid WCS.

    Looks for CTYPE1 and CTYPE2 keywords.
    """
    return header.get("CTYPE1") is not None and header.get("CTYPE2") is not None


# ---------------------------------------------------------------------------
# Reading solution artifacts
# ---------------------------------------------------------------------------


def read_wcs_file(path: str | Path) -> fits.Header:
    """Read the header written by solve-field's ``--wcs`` option."""
    try:
        with fits.open(path) as hdul:
            return hdul[0].header.copy()
    except (OSError, ValueError) as e:
        raise SolutionParseError(f"Cannot read WCS file {path}: {e}") from e


def read_ini(path: str | Path) -> dict[str, str]:
    """Parse a ``KEY=value`` solution file (ASTAP and Watney)."""
    values = {}
    try:
        text = Path(path).read_text(errors="replace")
    except OSError as e:
        raise SolutionParseError(f"Cannot read solution file {path}: {e}") from e
    for line in text.splitlines():
        key, sep_, value = line.partition("=")
        if not sep_:
            continue
        values[key.strip()] = value.strip()
    return values


def _float(values: dict[str, str], *keys: str) -> float:
    for key in keys:
        if key in values:
            try:
                return float(values[key])
            except ValueError as e:
                raise SolutionParseError(f"Bad value for {key}: {values[key]!r}") from e
    raise SolutionParseError(f"Missing key {keys[0]} in solution file")


def tan_header(
    crval: tuple[float, float],
    crpix: tuple[float, float],
    cd: np.ndarray,
) -> fits.Header:
    """Build a minimal TAN projection header."""
    header = fits.Header()
    header["CTYPE1"] = "RA---TAN"
    header["CTYPE2"] = "DEC--TAN"
    header["CRVAL1"] = float(crval[0])
    header["CRVAL2"] = float(crval[1])
    header["CRPIX1"] = float(crpix[0])
    header["CRPIX2"] = float(crpix[1])
    header["CD1_1"] = float(cd[0, 0])
    header["CD1_2"] = float(cd[0, 1])
    header["CD2_1"] = float(cd[1, 0])
    header["CD2_2"] = float(cd[1, 1])
    return header


def _cd_from_cdelt(cdelt1: float, cdelt2: float, crota2: float) -> np.ndarray:
    rot = math.radians(crota2)
    return np.array(
        [
            [cdelt1 * math.cos(rot), -cdelt2 * math.sin(rot)],
            [cdelt1 * math.sin(rot), cdelt2 * math.cos(rot)],
        ]
    )


def header_from_astap_ini(values: dict[str, str]) -> fits.Header:
    """Convert an ASTAP ``.ini`` solution into a TAN header.

    Raises
    ------
    SolutionParseError
        If the file reports no solution or lacks the WCS keys.
    """
    if values.get("PLTSOLVD", "F").upper() != "T":
        raise SolutionParseError("ASTAP did not report a solution (PLTSOLVD != T)")
    crval = (_float(values, "CRVAL1"), _float(values, "CRVAL2"))
    crpix = (_float(values, "CRPIX1"), _float(values, "CRPIX2"))
    if "CD1_1" in values:
        cd = np.array(
            [
                [_float(values, "CD1_1"), _float(values, "CD1_2")],
                [_float(values, "CD2_1"), _float(values, "CD2_2")],
            ]
        )
    else:
        cd = _cd_from_cdelt(
            _float(values, "CDELT1"), _float(values, "CDELT2"), _float(values, "CROTA2", "CROTA1")
        )
    return tan_header(crval, crpix, cd)


def header_from_watney_ini(values: dict[str, str]) -> fits.Header:
    """Convert a Watney ``--out-format ini`` solution into a TAN header."""
    if values.get("success", "false").lower() != "true":
        raise SolutionParseError("Watney did not report a solution (success != true)")
    crval = (_float(values, "fits_crval1", "ra"), _float(values, "fits_crval2", "dec"))
    crpix = (_float(values, "fits_crpix1"), _float(values, "fits_crpix2"))
    if "fits_cd1_1" in values:
        cd = np.array(
            [
                [_float(values, "fits_cd1_1"), _float(values, "fits_cd1_2")],
                [_float(values, "fits_cd2_1"), _float(values, "fits_cd2_2")],
            ]
        )
    else:
        cd = _cd_from_cdelt(
            _float(values, "fits_cdelt1"),
            _float(values, "fits_cdelt2"),
            _float(values, "fits_crota2", "fits_crota1"),
        )
    return tan_header(crval, crpix, cd)


def header_from_fields(fields: dict) -> fits.Header:
    """Build a header from ``{keyword: (value, comment)}`` pairs."""
    header = fits.Header()
    for key, entry in fields.items():
        header[key] = entry
    return header


def index_ids_from_header(header: fits.Header) -> tuple[int, int]:
    """Return ``(index_number, healpix)`` recorded in the header comments.

    solve-field writes these as COMMENT cards; either value is
    ``UNKNOWN_INDEX`` when absent.
    """
    text = "\n".join(str(c) for key in ("COMMENT", "HISTORY") for c in header.get(key, []))
    index_number = healpix = UNKNOWN_INDEX
    m = _INDEX_ID_RE.search(text)
    if m:
        index_number = int(m.group(1))
    m = _HEALPIX_RE.search(text)
    if m:
        healpix = int(m.group(1))
    if index_number == UNKNOWN_INDEX:
        index_number, name_healpix = index_ids_from_path(text)
        if healpix == UNKNOWN_INDEX:
            healpix = name_healpix
    return index_number, healpix


def index_ids_from_path(path: str | Path) -> tuple[int, int]:
    """Parse ``index-5206-03.fits`` style names into ``(5206, 3)``."""
    m = _INDEX_NAME_RE.search(str(path))
    if not m:
        return UNKNOWN_INDEX, UNKNOWN_INDEX
    healpix = int(m.group(2)) if m.group(2) is not None else UNKNOWN_INDEX
    return int(m.group(1)), healpix


# ---------------------------------------------------------------------------
# Solution from WCS
# ---------------------------------------------------------------------------


def _cd_matrix(wcs: WCS) -> np.ndarray:
    if wcs.wcs.has_cd():
        return np.array(wcs.wcs.cd, dtype=float)
    return np.array(wcs.pixel_scale_matrix, dtype=float)


def solution_from_wcs(
    wcs: WCS,
    stats: ImageStatistic,
    index_number: int = UNKNOWN_INDEX,
    healpix: int = UNKNOWN_INDEX,
) -> Solution:
    """Derive the field center, size, scale, orientation and parity.

    Orientation is measured as "up is N degrees E of N", matching
    astrometry.net's reporting.
    """
    cd = _cd_matrix(wcs)
    det = float(np.linalg.det(cd))
    if det == 0.0 or not np.isfinite(det):
        raise SolutionParseError("Singular CD matrix in solution")
    parity_sign = 1.0 if det >= 0 else -1.0
    t = parity_sign * cd[0, 0] + cd[1, 1]
    a = parity_sign * cd[1, 0] - cd[0, 1]
    orientation = -math.degrees(math.atan2(a, t))
    pixscale = math.sqrt(abs(det)) * 3600.0

    cx = (stats.width - 1) / 2.0
    cy = (stats.height - 1) / 2.0
    ra, dec = wcs.all_pix2world([[cx, cy]], 0)[0]

    return Solution(
        ra=float(ra) % 360.0,
        dec=float(dec),
        field_width=stats.width * pixscale / 60.0,
        field_height=stats.height * pixscale / 60.0,
        pixscale=pixscale,
        orientation=orientation,
        parity=Parity.from_determinant(det),
        index_number=index_number,
        healpix=healpix,
    )


# ---------------------------------------------------------------------------
# Instance-owned transform handle
# ---------------------------------------------------------------------------


class WCSHandle:
    """Coordinate transform loaded from one solution.

    Owned by a single solver instance; ``release()`` drops the
    underlying transform and makes every later conversion fail.
    """

    def __init__(self, wcs: WCS):
        self._wcs: WCS | None = wcs

    @classmethod
    def from_header(cls, header: fits.Header) -> WCSHandle:
        if header is None or not validate_wcs(header):
            raise SolutionParseError("Header has no celestial WCS")
        try:
            wcs = WCS(header, relax=True)
        except Exception as e:
            raise SolutionParseError(f"Cannot build WCS: {e}") from e
        if not wcs.has_celestial:
            raise SolutionParseError("Header has no celestial WCS")
        return cls(wcs.celestial)

    @property
    def wcs(self) -> WCS | None:
        return self._wcs

    @property
    def is_loaded(self) -> bool:
        return self._wcs is not None

    def pixel_to_wcs(self, x: float, y: float) -> WCSPoint | None:
        """0-based pixel position to sky position in degrees."""
        if self._wcs is None:
            return None
        ra, dec = self._wcs.all_pix2world([[x, y]], 0)[0]
        if not (np.isfinite(ra) and np.isfinite(dec)):
            return None
        return WCSPoint(ra=float(ra) % 360.0, dec=float(dec))

    def wcs_to_pixel(self, point: WCSPoint) -> tuple[float, float] | None:
        """Sky position in degrees to 0-based pixel position."""
        if self._wcs is None:
            return None
        try:
            x, y = self._wcs.all_world2pix([[point.ra, point.dec]], 0)[0]
        except NoConvergence as e:
            logger.debug("wcs_to_pixel failed for %s: %s", point, e)
            return None
        if not (np.isfinite(x) and np.isfinite(y)):
            return None
        return float(x), float(y)

    def release(self) -> None:
        self._wcs = None
