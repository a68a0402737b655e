"""Value types exchanged between extraction, solving and the scheduler."""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from enum import Enum
from pathlib import Path

import numpy as np
import astropy.units as u
from astropy.table import Table

logger = logging.getLogger("ssolver")

# Sentinel for numeric fields an engine does not report.
UNKNOWN_INDEX = -1

# Column names shared with SExtractor catalogs and solve-field xylists.
XCOL = "X_IMAGE"
YCOL = "Y_IMAGE"
MAGCOL = "MAG_AUTO"


class Parity(Enum):
    """Image parity as reported by astrometry.net style solvers."""

    BOTH = "both"
    POSITIVE = "pos"
    NEGATIVE = "neg"

    @classmethod
    def from_determinant(cls, det: float) -> Parity:
        """Parity from the determinant of the CD matrix.

        A normal sky image (north up, east left) has ``det < 0``.
        """
        return cls.POSITIVE if det > 0 else cls.NEGATIVE

    @property
    def text(self) -> str:
        return self.value


@dataclass
class Star:
    """A single extracted source.

    ``ra``/``dec`` stay ``None`` until a WCS has been loaded and
    ``append_stars_ra_dec`` has run.
    """

    x: float
    y: float
    mag: float
    flux: float
    peak: float = 0.0
    hfr: float = 0.0
    a: float = 0.0
    b: float = 0.0
    theta: float = 0.0
    ra: float | None = None
    dec: float | None = None

    @property
    def has_sky_position(self) -> bool:
        return self.ra is not None and self.dec is not None


@dataclass(frozen=True)
class Background:
    """Scalar summary of the background found during extraction."""

    width: int = 0
    height: int = 0
    bw: int = 0
    bh: int = 0
    global_back: float = 0.0
    global_rms: float = 0.0
    num_stars_detected: int = 0


@dataclass(frozen=True)
class WCSPoint:
    """A sky position in decimal degrees."""

    ra: float
    dec: float


@dataclass(frozen=True)
class Solution:
    """Plate-solve result normalised across all engines.

    Field sizes are in arcminutes, ``pixscale`` in arcsec/pixel and
    ``orientation`` in degrees east of north.
    """

    ra: float
    dec: float
    field_width: float
    field_height: float
    pixscale: float
    orientation: float
    parity: Parity
    index_number: int = UNKNOWN_INDEX
    healpix: int = UNKNOWN_INDEX
    ra_error: float | None = None
    dec_error: float | None = None

    def with_search_errors(self, search_ra: float, search_dec: float) -> Solution:
        """Return a copy carrying the offset from the search position in arcsec."""
        dra = (self.ra - search_ra + 180.0) % 360.0 - 180.0
        return replace(
            self,
            ra_error=float(dra * 3600.0),
            dec_error=float((self.dec - search_dec) * 3600.0),
        )

    def summary(self) -> str:
        return (
            f"Field center: (RA,Dec) = ({self.ra:.6f}, {self.dec:.6f}) deg; "
            f"size {self.field_width:.3f} x {self.field_height:.3f} arcmin; "
            f"scale {self.pixscale:.4f}\"/px; up is {self.orientation:.2f} deg E of N; "
            f"parity {self.parity.text}"
        )


# ---------------------------------------------------------------------------
# Star list <-> xylist table
# ---------------------------------------------------------------------------


def stars_to_table(stars: list[Star]) -> Table:
    """Build an xylist table (X_IMAGE, Y_IMAGE, MAG_AUTO) from *stars*.

    Star positions are 0-based; xylists use the 1-based FITS convention.
    """
    t = Table()
    t[XCOL] = np.array([s.x + 1.0 for s in stars], dtype=np.float32) * u.pix
    t[YCOL] = np.array([s.y + 1.0 for s in stars], dtype=np.float32) * u.pix
    t[MAGCOL] = np.array([s.mag for s in stars], dtype=np.float32) * u.mag
    return t


def write_xylist(stars: list[Star], path: str | Path) -> Path:
    """Write *stars* to a FITS binary table readable by the solving engines."""
    path = Path(path)
    stars_to_table(stars).write(path, format="fits", overwrite=True)
    logger.debug("Wrote %d stars to %s", len(stars), path)
    return path


def read_xylist(path: str | Path, hdu: int = 1) -> list[Star]:
    """Read stars back from a FITS xylist or SExtractor FITS_1.0 catalog."""
    t = Table.read(path, hdu=hdu)
    has_flux = "FLUX_AUTO" in t.colnames
    has_peak = "FLUX_MAX" in t.colnames
    stars = []
    for row in t:
        stars.append(
            Star(
                x=float(row[XCOL]) - 1.0,
                y=float(row[YCOL]) - 1.0,
                mag=float(row[MAGCOL]) if MAGCOL in t.colnames else 0.0,
                flux=float(row["FLUX_AUTO"]) if has_flux else 0.0,
                peak=float(row["FLUX_MAX"]) if has_peak else 0.0,
                hfr=float(row["FLUX_RADIUS"]) if "FLUX_RADIUS" in t.colnames else 0.0,
                a=float(row["A_IMAGE"]) if "A_IMAGE" in t.colnames else 0.0,
                b=float(row["B_IMAGE"]) if "B_IMAGE" in t.colnames else 0.0,
                theta=float(row["THETA_IMAGE"]) if "THETA_IMAGE" in t.colnames else 0.0,
            )
        )
    return stars
