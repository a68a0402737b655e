"""Image statistics shared by every solver instance, and temp FITS output."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path

import numpy as np
from astropy.io import fits

logger = logging.getLogger("ssolver")


@dataclass(frozen=True)
class Subframe:
    """Pixel rectangle used to restrict extraction."""

    x: int
    y: int
    width: int
    height: int


@dataclass(frozen=True)
class ImageStatistic:
    """Read-only description of the image buffer being solved.

    Owned by the caller and shared (not copied) with every backend
    instance for the lifetime of a solve.
    """

    width: int
    height: int
    channels: int = 1
    data_type: str = "float32"
    bytes_per_pixel: int = 4

    @property
    def samples_per_channel(self) -> int:
        return self.width * self.height

    @classmethod
    def from_array(cls, data: np.ndarray) -> ImageStatistic:
        """Describe a (H, W) or (C, H, W) numpy buffer."""
        if data.ndim == 2:
            channels = 1
            height, width = data.shape
        elif data.ndim == 3:
            channels, height, width = data.shape
        else:
            raise ValueError(f"Unsupported image shape {data.shape!r}")
        return cls(
            width=int(width),
            height=int(height),
            channels=int(channels),
            data_type=str(data.dtype),
            bytes_per_pixel=int(data.dtype.itemsize),
        )


def prepare_image(
    buffer: np.ndarray,
    stats: ImageStatistic,
    subframe: Subframe | None = None,
) -> np.ndarray:
    """Return a float32, C-contiguous, single-channel view for extraction.

    The shared buffer is never modified. Colour images use the first
    channel, which is what the extractors expect.
    """
    data = np.asarray(buffer)
    if data.ndim == 3:
        data = data[0]
    if data.shape != (stats.height, stats.width):
        raise ValueError(
            f"Buffer shape {data.shape} does not match statistics "
            f"({stats.height}, {stats.width})"
        )
    if subframe is not None:
        data = data[
            subframe.y : subframe.y + subframe.height,
            subframe.x : subframe.x + subframe.width,
        ]
    return np.ascontiguousarray(data, dtype=np.float32)


def write_fits_image(
    buffer: np.ndarray,
    stats: ImageStatistic,
    path: str | Path,
) -> Path:
    """Write the image buffer to *path* as a primary-HDU FITS file."""
    path = Path(path)
    data = np.asarray(buffer)
    if data.ndim == 3 and stats.channels == 1:
        data = data[0]
    header = fits.Header()
    header["IMAGEW"] = (stats.width, "Image width in pixels")
    header["IMAGEH"] = (stats.height, "Image height in pixels")
    fits.PrimaryHDU(data=data, header=header).writeto(path, overwrite=True)
    logger.debug("Saved image buffer to %s", path)
    return path
