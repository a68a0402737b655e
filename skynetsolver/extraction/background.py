"""Background estimation using sep."""

from __future__ import annotations

from dataclasses import dataclass

import numpy as np
import sep

from ..core.result import Background


@dataclass
class BackgroundResult:
    """Result of background estimation."""

    background: np.ndarray
    rms: np.ndarray
    global_back: float
    global_rms: float
    bw: int
    bh: int

    def summary(self, num_stars_detected: int = 0) -> Background:
        """Collapse to the scalar ``Background`` reported to callers."""
        height, width = self.background.shape
        return Background(
            width=int(width),
            height=int(height),
            bw=self.bw,
            bh=self.bh,
            global_back=float(self.global_back),
            global_rms=float(self.global_rms),
            num_stars_detected=int(num_stars_detected),
        )


def estimate_background(data: np.ndarray, bw: int = 64, bh: int = 64, **kwargs) -> BackgroundResult:
    """Estimate and return the background for a 2D image.

    Parameters
    ----------
    data : ndarray
        2D image array (float32).
    bw, bh : int
        Background mesh size, clamped to the image size.
    **kwargs
        Passed through to ``sep.Background``.

    Returns
    -------
    BackgroundResult
    """
    bw = max(1, min(bw, data.shape[1]))
    bh = max(1, min(bh, data.shape[0]))
    bkg = sep.Background(data, bw=bw, bh=bh, **kwargs)
    return BackgroundResult(
        background=bkg.back(),
        rms=bkg.rms(),
        global_back=bkg.globalback,
        global_rms=bkg.globalrms,
        bw=bw,
        bh=bh,
    )
