"""Star extraction using sep."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

import numpy as np
import sep

from ..core.errors import ExtractionError
from ..core.image import Subframe
from ..core.result import Background, Star
from .background import estimate_background

logger = logging.getLogger("ssolver")


@dataclass
class ExtractionOptions:
    """Knobs for ``extract_stars``; mirrors the ``[extraction]`` config table."""

    threshold: float = 2.0
    min_area: int = 10
    deblend_nthresh: int = 32
    deblend_cont: float = 0.005
    clean: bool = True
    clean_param: float = 1.0
    conv_filter: list[float] = field(
        default_factory=lambda: [1.0, 2.0, 1.0, 2.0, 4.0, 2.0, 1.0, 2.0, 1.0]
    )
    kron_fact: float = 2.5
    subpix: int = 5
    r_min: float = 3.5
    magzero: float = 20.0
    max_ellipse: float = 1.5
    saturation_limit: float = 0.0
    keep_num: int = 0
    remove_brightest: float = 0.0
    remove_dimmest: float = 0.0
    hfr_fraction: float = 0.5
    calculate_hfr: bool = False

    @classmethod
    def from_config(cls, cfg, calculate_hfr: bool = False) -> ExtractionOptions:
        return cls(
            threshold=cfg.extraction_threshold,
            min_area=cfg.extraction_min_area,
            deblend_nthresh=cfg.extraction_deblend_nthresh,
            deblend_cont=cfg.extraction_deblend_cont,
            clean=cfg.extraction_clean,
            clean_param=cfg.extraction_clean_param,
            conv_filter=list(cfg.extraction_conv_filter),
            kron_fact=cfg.extraction_kron_fact,
            subpix=cfg.extraction_subpix,
            r_min=cfg.extraction_r_min,
            magzero=cfg.extraction_magzero,
            max_ellipse=cfg.extraction_max_ellipse,
            saturation_limit=cfg.extraction_saturation_limit,
            keep_num=cfg.extraction_keep_num,
            remove_brightest=cfg.extraction_remove_brightest,
            remove_dimmest=cfg.extraction_remove_dimmest,
            hfr_fraction=cfg.extraction_hfr_fraction,
            calculate_hfr=calculate_hfr,
        )


@dataclass
class ExtractionResult:
    """Result of star extraction."""

    stars: list[Star]
    background: Background

    @property
    def n_sources(self) -> int:
        return len(self.stars)


def _filter_kernel(conv_filter: list[float]) -> np.ndarray | None:
    if not conv_filter:
        return None
    n = int(round(np.sqrt(len(conv_filter))))
    if n * n != len(conv_filter):
        raise ExtractionError(f"Convolution filter must be square, got {len(conv_filter)} values")
    return np.asarray(conv_filter, dtype=np.float32).reshape(n, n)


def filter_stars(stars: list[Star], opts: ExtractionOptions) -> list[Star]:
    """Drop elongated and saturated stars, sort brightest first and apply
    the remove/keep cuts."""
    stars = [
        s for s in stars
        if not (s.b > 0 and s.a / s.b > opts.max_ellipse)
        and not (opts.saturation_limit > 0 and s.peak >= opts.saturation_limit)
    ]
    stars = sorted(stars, key=lambda s: s.mag)
    n = len(stars)
    if opts.remove_brightest > 0:
        stars = stars[int(n * opts.remove_brightest / 100.0):]
    if opts.remove_dimmest > 0:
        stars = stars[: len(stars) - int(n * opts.remove_dimmest / 100.0)]
    if opts.keep_num > 0:
        stars = stars[: opts.keep_num]
    return stars


def extract_stars(
    data: np.ndarray,
    opts: ExtractionOptions | None = None,
    subframe: Subframe | None = None,
) -> ExtractionResult:
    """Detect and measure stars in a float32 image.

    Parameters
    ----------
    data : ndarray
        2D float32 image, already cut to *subframe* if one is used.
    opts : ExtractionOptions
    subframe : Subframe, optional
        Offset added back to star positions so they refer to the full image.

    Returns
    -------
    ExtractionResult
        An image without sources yields an empty star list, not an error.
    """
    opts = opts or ExtractionOptions()

    bkg = estimate_background(data)
    data_sub = data - bkg.background

    try:
        objects = sep.extract(
            data_sub,
            opts.threshold,
            err=bkg.global_rms,
            minarea=opts.min_area,
            filter_kernel=_filter_kernel(opts.conv_filter),
            deblend_nthresh=opts.deblend_nthresh,
            deblend_cont=opts.deblend_cont,
            clean=opts.clean,
            clean_param=opts.clean_param,
        )
    except Exception as e:
        raise ExtractionError(f"sep extraction failed: {e}") from e

    if len(objects) == 0:
        logger.info("No stars detected")
        return ExtractionResult(stars=[], background=bkg.summary(0))

    x, y = objects["x"], objects["y"]
    a, b, theta = objects["a"], objects["b"], objects["theta"]

    kronrad, _ = sep.kron_radius(data_sub, x, y, a, b, theta, 6.0)
    kron_ok = np.isfinite(kronrad)
    flux, _, _ = sep.sum_ellipse(
        data_sub, x, y, a, b, theta, opts.kron_fact * np.where(kron_ok, kronrad, 0.0),
        subpix=opts.subpix,
    )
    # Small or undefined Kron radii fall back to a circular aperture.
    use_circle = ~kron_ok | (kronrad * np.sqrt(a * b) < opts.r_min)
    if np.any(use_circle):
        cflux, _, _ = sep.sum_circle(
            data_sub, x[use_circle], y[use_circle], opts.r_min, subpix=opts.subpix
        )
        flux[use_circle] = cflux

    hfr = np.zeros(len(objects))
    if opts.calculate_hfr:
        hfr, _ = sep.flux_radius(
            data_sub, x, y, 6.0 * a, opts.hfr_fraction, normflux=flux, subpix=opts.subpix
        )

    dx = subframe.x if subframe is not None else 0
    dy = subframe.y if subframe is not None else 0

    stars = []
    for i in range(len(objects)):
        if flux[i] <= 0 or not np.isfinite(flux[i]):
            continue
        stars.append(
            Star(
                x=float(x[i]) + dx,
                y=float(y[i]) + dy,
                mag=float(opts.magzero - 2.5 * np.log10(flux[i])),
                flux=float(flux[i]),
                peak=float(objects["peak"][i]),
                hfr=float(hfr[i]),
                a=float(a[i]),
                b=float(b[i]),
                theta=float(np.degrees(theta[i])),
            )
        )

    stars = filter_stars(stars, opts)
    logger.info("Extracted %d stars (%d detections)", len(stars), len(objects))
    return ExtractionResult(stars=stars, background=bkg.summary(len(objects)))
