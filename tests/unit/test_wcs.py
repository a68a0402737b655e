"""Unit tests for skynetsolver.astrometry.wcs_utils."""

import numpy as np
import pytest
from astropy.io import fits
from astropy.wcs import WCS

from skynetsolver.astrometry.wcs_utils import (
    WCSHandle,
    header_from_astap_ini,
    header_from_fields,
    header_from_watney_ini,
    index_ids_from_header,
    index_ids_from_path,
    read_ini,
    read_wcs_file,
    solution_from_wcs,
    validate_wcs,
)
from skynetsolver.core.errors import SolutionParseError
from skynetsolver.core.image import ImageStatistic
from skynetsolver.core.result import UNKNOWN_INDEX, Parity, WCSPoint

_STATS = ImageStatistic(width=256, height=256)


def _wcs(cd):
    w = WCS(naxis=2)
    w.wcs.crpix = [128.0, 128.0]
    w.wcs.crval = [51.95, 74.66]
    w.wcs.cd = np.asarray(cd, dtype=float)
    w.wcs.ctype = ["RA---TAN", "DEC--TAN"]
    return w


class TestValidateWcs:
    """Tests for validate_wcs."""

    def test_valid_header(self, wcs_header):
        assert validate_wcs(wcs_header) is True

    def test_missing_ctype(self):
        assert validate_wcs(fits.Header()) is False


class TestSolutionFromWcs:
    """Tests for deriving a Solution from a WCS."""

    def test_north_up_east_left(self, wcs_header):
        sol = solution_from_wcs(WCS(wcs_header), _STATS, index_number=5206, healpix=3)

        assert sol.pixscale == pytest.approx(1.0, rel=1e-6)
        assert sol.parity is Parity.NEGATIVE
        assert sol.orientation == pytest.approx(0.0, abs=1e-6)
        assert sol.field_width == pytest.approx(256 / 60.0, rel=1e-6)
        assert sol.ra == pytest.approx(51.95, abs=1e-3)
        assert sol.dec == pytest.approx(74.66, abs=1e-3)
        assert sol.index_number == 5206
        assert sol.healpix == 3

    def test_rotated_field(self, rotated_wcs_header):
        sol = solution_from_wcs(WCS(rotated_wcs_header(30.0)), _STATS)
        assert sol.orientation == pytest.approx(30.0, abs=1e-6)
        assert sol.index_number == UNKNOWN_INDEX

    def test_flipped_field_has_positive_parity(self):
        w = _wcs(np.eye(2) / 3600.0)
        assert solution_from_wcs(w, _STATS).parity is Parity.POSITIVE

    def test_singular_matrix(self):
        w = _wcs(np.zeros((2, 2)))
        with pytest.raises(SolutionParseError, match="Singular"):
            solution_from_wcs(w, _STATS)


class TestWCSHandle:
    """Tests for the instance-owned transform handle."""

    def test_round_trip(self, wcs_header):
        handle = WCSHandle.from_header(wcs_header)
        for x in (0.0, 37.5, 128.0, 255.0):
            for y in (0.0, 90.25, 200.0):
                point = handle.pixel_to_wcs(x, y)
                assert point is not None
                px, py = handle.wcs_to_pixel(point)
                assert px == pytest.approx(x, abs=1e-6)
                assert py == pytest.approx(y, abs=1e-6)

    def test_reference_pixel_maps_to_crval(self, wcs_header):
        handle = WCSHandle.from_header(wcs_header)
        # CRPIX is 1-based; the handle works in 0-based pixels
        point = handle.pixel_to_wcs(127.0, 127.0)
        assert point.ra == pytest.approx(51.95, abs=1e-9)
        assert point.dec == pytest.approx(74.66, abs=1e-9)

    def test_released_handle_returns_none(self, wcs_header):
        handle = WCSHandle.from_header(wcs_header)
        handle.release()
        assert not handle.is_loaded
        assert handle.pixel_to_wcs(10.0, 10.0) is None
        assert handle.wcs_to_pixel(WCSPoint(51.95, 74.66)) is None

    def test_header_without_wcs(self):
        with pytest.raises(SolutionParseError):
            WCSHandle.from_header(fits.Header())


class TestSolutionFiles:
    """Tests for reading engine result artifacts."""

    def test_read_wcs_file(self, tmp_path, wcs_header):
        path = tmp_path / "job.wcs"
        fits.PrimaryHDU(header=wcs_header).writeto(path)
        header = read_wcs_file(path)
        assert header["CTYPE1"] == "RA---TAN"

    def test_read_wcs_file_garbage(self, tmp_path):
        path = tmp_path / "job.wcs"
        path.write_bytes(b"not a fits file")
        with pytest.raises(SolutionParseError):
            read_wcs_file(path)

    def test_astap_ini_with_cdelt(self, tmp_path):
        path = tmp_path / "job.ini"
        path.write_text(
            "PLTSOLVD=T\n"
            "CRPIX1= 1.2800000000000E+002\n"
            "CRPIX2= 1.2800000000000E+002\n"
            "CRVAL1= 5.1950000000000E+001\n"
            "CRVAL2= 7.4660000000000E+001\n"
            "CDELT1=-2.7777777777778E-004\n"
            "CDELT2= 2.7777777777778E-004\n"
            "CROTA1= 0.0\n"
            "CROTA2= 0.0\n"
            "WARNING=\n"
        )

        header = header_from_astap_ini(read_ini(path))
        sol = solution_from_wcs(WCS(header), _STATS)

        assert header["CRVAL1"] == pytest.approx(51.95)
        assert sol.pixscale == pytest.approx(1.0, rel=1e-6)
        assert sol.parity is Parity.NEGATIVE
        assert sol.orientation == pytest.approx(0.0, abs=1e-6)

    def test_astap_ini_not_solved(self):
        with pytest.raises(SolutionParseError, match="PLTSOLVD"):
            header_from_astap_ini({"PLTSOLVD": "F", "ERROR": "No solution found!"})

    def test_astap_ini_missing_key(self):
        with pytest.raises(SolutionParseError, match="CRVAL1"):
            header_from_astap_ini({"PLTSOLVD": "T"})

    def test_watney_ini(self):
        values = {
            "success": "true",
            "ra": "51.95",
            "dec": "74.66",
            "fits_crpix1": "128",
            "fits_crpix2": "128",
            "fits_cd1_1": str(-1 / 3600.0),
            "fits_cd1_2": "0",
            "fits_cd2_1": "0",
            "fits_cd2_2": str(1 / 3600.0),
        }
        header = header_from_watney_ini(values)
        assert header["CRVAL2"] == pytest.approx(74.66)
        assert header["CD1_1"] == pytest.approx(-1 / 3600.0)

    def test_watney_not_solved(self):
        with pytest.raises(SolutionParseError, match="success"):
            header_from_watney_ini({"success": "false"})

    def test_header_from_fields(self):
        header = header_from_fields({"CTYPE1": ("RA---TAN", "TAN"), "CRPIX1": (12.0, "")})
        assert header["CTYPE1"] == "RA---TAN"
        assert header.comments["CTYPE1"] == "TAN"


class TestIndexIds:
    """Tests for index number and healpix lookup."""

    def test_from_path(self):
        assert index_ids_from_path("/data/index-5206-03.fits") == (5206, 3)
        assert index_ids_from_path("index-4110.fits") == (4110, UNKNOWN_INDEX)
        assert index_ids_from_path("stars.fits") == (UNKNOWN_INDEX, UNKNOWN_INDEX)

    def test_from_header_comments(self, wcs_header):
        wcs_header.add_comment("index id: 4107")
        wcs_header.add_comment("index healpix: 11")
        assert index_ids_from_header(wcs_header) == (4107, 11)

    def test_from_header_file_name(self, wcs_header):
        wcs_header.add_history("Index name: /usr/share/astrometry/index-4208-07.fits")
        assert index_ids_from_header(wcs_header) == (4208, 7)

    def test_from_header_absent(self, wcs_header):
        assert index_ids_from_header(wcs_header) == (UNKNOWN_INDEX, UNKNOWN_INDEX)
