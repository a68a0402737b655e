"""Search position parsing and scale-unit conversions."""

from __future__ import annotations

import math
from enum import Enum

from astropy.coordinates import SkyCoord
import astropy.units as u


class ScaleUnits(Enum):
    """Units for the search-scale bounds, with the engine spelling as value."""

    DEG_WIDTH = "degwidth"
    ARCMIN_WIDTH = "arcminwidth"
    ARCSEC_PER_PIX = "arcsecperpix"
    FOCAL_MM = "focalmm"


def parse_coordinates(ra, dec) -> SkyCoord:
    """Parse RA/Dec into a SkyCoord.

    Accepts:
    - SkyCoord (returned as-is)
    - Two strings (interpreted as hourangle, deg)
    - Two floats (interpreted as degrees)
    """
    if isinstance(ra, SkyCoord):
        return ra

    if isinstance(ra, str) and isinstance(dec, str):
        return SkyCoord(ra=ra, dec=dec, unit=(u.hourangle, u.deg), frame="icrs")

    if isinstance(ra, (int, float)) and isinstance(dec, (int, float)):
        return SkyCoord(ra=float(ra) * u.deg, dec=float(dec) * u.deg, frame="icrs")

    raise TypeError(f"Cannot parse coordinates from ra={ra!r}, dec={dec!r}")


def search_position_degrees(ra, dec, ra_in_hours: bool = False) -> tuple[float, float]:
    """Return the search position as decimal degrees.

    Numeric RA is taken as hours when *ra_in_hours* is set.
    """
    if ra_in_hours and isinstance(ra, (int, float)):
        ra = float(ra) * 15.0
    coord = parse_coordinates(ra, dec)
    return float(coord.ra.deg), float(coord.dec.deg)


def focal_length_fov(focal_mm: float) -> float:
    """Full field angle in degrees of a 35mm-equivalent lens across the 36 mm frame."""
    return math.degrees(2.0 * math.atan(36.0 / (2.0 * focal_mm)))


def scale_to_degree_height(scale: float, units: ScaleUnits, image_height: int) -> float:
    """Convert a scale bound to the field height in degrees.

    ASTAP and Watney take a field of view instead of astrometry.net
    scale bounds.
    """
    if units is ScaleUnits.DEG_WIDTH:
        return scale
    if units is ScaleUnits.ARCMIN_WIDTH:
        return scale / 60.0
    if units is ScaleUnits.ARCSEC_PER_PIX:
        return scale / 3600.0 * float(image_height)
    if units is ScaleUnits.FOCAL_MM:
        return focal_length_fov(scale)
    return scale


def scale_to_arcsec_per_pixel(
    scale: float, units: ScaleUnits, image_width: int
) -> float:
    """Convert a scale bound to arcsec/pixel for the in-process solver."""
    if units is ScaleUnits.ARCSEC_PER_PIX:
        return scale
    if units is ScaleUnits.DEG_WIDTH:
        return scale * 3600.0 / float(image_width)
    if units is ScaleUnits.ARCMIN_WIDTH:
        return scale * 60.0 / float(image_width)
    if units is ScaleUnits.FOCAL_MM:
        return focal_length_fov(scale) * 3600.0 / float(image_width)
    return scale
