"""External-process backend: SExtractor, solve-field, ASTAP and Watney."""

from __future__ import annotations

import logging
import threading
from pathlib import Path

import numpy as np

from ..config.enums import ExtractorType, SolverType
from ..config.loader import SolverConfig
from ..config.paths import resolve_executable
from ..core.coordinates import scale_to_degree_height
from ..core.errors import ConfigError, ProcessRuntimeError, SolveCancelled
from ..core.image import ImageStatistic, prepare_image, write_fits_image
from ..core.result import (
    MAGCOL,
    UNKNOWN_INDEX,
    XCOL,
    YCOL,
    Background,
    Parity,
    Star,
    read_xylist,
    write_xylist,
)
from ..extraction.extractor import ExtractionOptions, ExtractionResult, filter_stars
from .internal import InternalBackend
from .job import SolverJob
from .process import ExternalProcess
from .protocols import SolveResult
from .wcs_utils import (
    WCSHandle,
    header_from_astap_ini,
    header_from_watney_ini,
    index_ids_from_header,
    read_ini,
    read_wcs_file,
    solution_from_wcs,
)

logger = logging.getLogger("ssolver")

_SEXTRACTOR_COLUMNS = [
    XCOL, YCOL, MAGCOL, "FLUX_AUTO", "FLUX_MAX", "A_IMAGE", "B_IMAGE", "THETA_IMAGE",
]


class ExternalBackend:
    """``SolverBackend`` that delegates work to external programs.

    Extraction runs through SExtractor when ``extractor_type`` is
    ``EXTERNAL`` and through sep otherwise. Solving runs the engine named
    by ``solver_type``; an ``INTERNAL`` solver falls back to the
    in-process backend.

    Every engine gets its input from, and writes its result to, temp files
    namespaced by ``job``. ``abort()`` creates the cancel file, terminates
    the running program and kills it after ``abort_grace_seconds``.
    """

    supports_depth = True

    def __init__(
        self,
        config: SolverConfig,
        buffer: np.ndarray,
        stats: ImageStatistic,
        job: SolverJob | None = None,
    ):
        self.config = config
        self.buffer = buffer
        self.stats = stats
        self.job = job or SolverJob.create(config.base_path, config.base_name)
        self.name = config.solver_type.value
        self._internal = InternalBackend(config, buffer, stats, self.job)
        self._aborted = threading.Event()
        self._lock = threading.Lock()
        self._process: ExternalProcess | None = None

    # -- process handling ------------------------------------------------

    def _run(self, program: str, label: str, args: list[str]) -> int:
        """Run *program* with *args*; raise ``SolveCancelled`` if cancelled."""
        proc = ExternalProcess(
            [program, *args], label=f"{label}:{self.job.stem}", cwd=str(self.job.base_path)
        )
        with self._lock:
            if self._aborted.is_set():
                raise SolveCancelled(f"{self.job.stem}: aborted before {label} started")
            self._process = proc
            proc.start()
        try:
            returncode = proc.wait(timeout=self.config.solver_time_limit or None)
        finally:
            with self._lock:
                self._process = None
        if self._aborted.is_set() or self.job.cancel_path.exists():
            raise SolveCancelled(f"{self.job.stem}: {label} cancelled")
        return returncode

    def abort(self) -> None:
        self._internal.abort()
        with self._lock:
            self._aborted.set()
            proc = self._process
            # the worker clears _process before it removes temp files
            if proc is None or not proc.running:
                return
            self.job.cancel_path.touch()
            proc.terminate(self.config.abort_grace_seconds)

    def spawn(self, index: int, config: SolverConfig) -> ExternalBackend:
        return ExternalBackend(config, self.buffer, self.stats, self.job.child(index))

    def cleanup_temp_files(self) -> None:
        self.job.remove_all()

    def remove_stale_artifacts(self) -> None:
        """Remove result and flag files left behind by an earlier run."""
        self.job.remove(
            self.job.cancel_path, self.job.solved_path, self.job.wcs_path, self.job.ini_path
        )

    # -- extraction ------------------------------------------------------

    def extract(self, calculate_hfr: bool = False) -> ExtractionResult:
        extractor = self.config.extractor_type
        if extractor is ExtractorType.INTERNAL:
            return self._internal.extract(calculate_hfr)
        if extractor is ExtractorType.BUILTIN:
            raise ConfigError("The builtin extractor only runs as part of an external solve")
        return self.run_sextractor(calculate_hfr)

    def write_sextractor_files(self, calculate_hfr: bool) -> None:
        columns = list(_SEXTRACTOR_COLUMNS)
        if calculate_hfr:
            columns.append("FLUX_RADIUS")
        self.job.param_path.write_text("\n".join(columns) + "\n")

        conv = self.config.extraction_conv_filter
        n = int(round(len(conv) ** 0.5))
        rows = [" ".join(f"{v:g}" for v in conv[i * n:(i + 1) * n]) for i in range(n)]
        self.job.conv_path.write_text(
            "CONV NORM\n"
            f"# {n}x{n} convolution mask\n" + "\n".join(rows) + "\n"
        )

    def sextractor_args(self, calculate_hfr: bool) -> list[str]:
        cfg = self.config
        args = [
            str(self.job.image_path),
            "-CATALOG_NAME", str(self.job.xyls_path),
            "-CATALOG_TYPE", "FITS_1.0",
            "-PARAMETERS_NAME", str(self.job.param_path),
            "-FILTER", "Y" if cfg.extraction_conv_filter else "N",
            "-FILTER_NAME", str(self.job.conv_path),
            "-DETECT_THRESH", str(cfg.extraction_threshold),
            "-DETECT_MINAREA", str(cfg.extraction_min_area),
            "-DEBLEND_NTHRESH", str(cfg.extraction_deblend_nthresh),
            "-DEBLEND_MINCONT", str(cfg.extraction_deblend_cont),
            "-CLEAN", "Y" if cfg.extraction_clean else "N",
            "-CLEAN_PARAM", str(cfg.extraction_clean_param),
            "-PHOT_AUTOPARAMS", f"{cfg.extraction_kron_fact},{cfg.extraction_r_min}",
            "-MAG_ZEROPOINT", str(cfg.extraction_magzero),
            "-VERBOSE_TYPE", "NORMAL" if cfg.engine_log_level.verbosity else "QUIET",
        ]
        if cfg.extraction_saturation_limit > 0:
            args += ["-SATUR_LEVEL", str(cfg.extraction_saturation_limit)]
        if calculate_hfr:
            args += ["-PHOT_FLUXFRAC", str(cfg.extraction_hfr_fraction)]
        return args

    def run_sextractor(self, calculate_hfr: bool = False) -> ExtractionResult:
        program = resolve_executable(self.config.programs.sextractor_binary_path, "SExtractor")
        subframe = self.config.subframe
        data = prepare_image(self.buffer, self.stats, subframe)
        height, width = data.shape
        write_fits_image(data, ImageStatistic.from_array(data), self.job.image_path)
        self.write_sextractor_files(calculate_hfr)
        self.job.remove(self.job.xyls_path)

        returncode = self._run(program, "sextractor", self.sextractor_args(calculate_hfr))
        if returncode != 0:
            raise ProcessRuntimeError(f"SExtractor exited with status {returncode}", returncode)
        if not self.job.xyls_path.exists():
            raise ProcessRuntimeError("SExtractor produced no catalog")

        stars = read_xylist(self.job.xyls_path)
        dx = subframe.x if subframe is not None else 0
        dy = subframe.y if subframe is not None else 0
        for s in stars:
            s.x += dx
            s.y += dy
        n_detected = len(stars)
        stars = filter_stars(stars, ExtractionOptions.from_config(self.config, calculate_hfr))
        logger.info("%s: SExtractor found %d stars, kept %d", self.job.stem, n_detected, len(stars))
        background = Background(width=width, height=height, num_stars_detected=n_detected)
        return ExtractionResult(stars=stars, background=background)

    # -- solving ---------------------------------------------------------

    def solve(self, stars: list[Star]) -> SolveResult:
        solver = self.config.solver_type
        if not solver.is_external:
            return self._internal.solve(stars)

        self.remove_stale_artifacts()
        use_image = self.config.extractor_type is ExtractorType.BUILTIN
        if use_image:
            write_fits_image(self.buffer, self.stats, self.job.image_path)
            input_path = self.job.image_path
        else:
            if not stars:
                raise ProcessRuntimeError(f"{self.job.stem}: no stars to solve")
            input_path = write_xylist(stars, self.job.xyls_path)

        if solver is SolverType.LOCAL_ASTROMETRY:
            return self.run_solve_field(input_path, use_image)
        if solver is SolverType.ASTAP:
            return self.run_astap(input_path, len(stars))
        return self.run_watney(input_path, use_image, len(stars))

    def depth_range(self) -> tuple[int, int] | None:
        return self._internal.depth_range()

    # solve-field

    def generate_astrometry_config(self) -> Path:
        """Write the solve-field config file for this run."""
        cfg = self.config
        lines = [
            f"cpulimit {cfg.solver_time_limit}",
            f"minwidth {cfg.solver_min_width}",
            f"maxwidth {cfg.solver_max_width}",
        ]
        if cfg.solver_in_parallel:
            lines.append("inparallel")
        lines.append("autoindex")
        lines += [f"add_path {folder}" for folder in cfg.index_folder_paths]
        lines += [f"index {index_file}" for index_file in cfg.index_files]
        self.job.config_path.write_text("\n".join(lines) + "\n")
        return self.job.config_path

    def solve_field_args(self, use_image: bool) -> list[str]:
        cfg = self.config
        args = [
            "-O", "--no-plots", "--no-verify", "--crpix-center", "--resort",
            "--temp-axy", "--index-xyls", "none", "--match", "none", "--corr", "none",
            "--new-fits", "none", "--rdls", "none",
            "--dir", str(self.job.base_path),
            "--cancel", str(self.job.cancel_path),
            "--solved", str(self.job.solved_path),
            "--wcs", str(self.job.wcs_path),
            "--cpulimit", str(cfg.solver_time_limit),
        ]
        if cfg.solver_auto_generate_config:
            args += ["--config", str(self.job.config_path)]
        elif cfg.programs.config_file_path:
            args += ["--config", cfg.programs.config_file_path]
        if cfg.use_scale:
            args += [
                "--scale-low", str(cfg.scale_low),
                "--scale-high", str(cfg.scale_high),
                "--scale-units", cfg.scale_units.value,
            ]
        if cfg.use_position:
            args += [
                "--ra", str(cfg.search_ra),
                "--dec", str(cfg.search_dec),
                "--radius", str(cfg.search_radius),
            ]
        depth = self.depth_range()
        if depth is not None:
            # solve-field depths are 1-based and inclusive
            args += ["--depth", f"{depth[0] + 1}-{depth[1]}"]
        if cfg.solver_downsample > 1:
            args += ["--downsample", str(cfg.solver_downsample)]
        if cfg.solver_parity is not Parity.BOTH:
            args += ["--parity", cfg.solver_parity.value]
        args += ["-v"] * cfg.engine_log_level.verbosity
        if not use_image:
            args += [
                "--x-column", XCOL,
                "--y-column", YCOL,
                "--sort-column", MAGCOL,
                "--sort-ascending",
                "--width", str(self.stats.width),
                "--height", str(self.stats.height),
            ]
        return args

    def run_solve_field(self, input_path: Path, use_image: bool) -> SolveResult:
        program = resolve_executable(self.config.programs.solver_path, "solve-field")
        if self.config.solver_auto_generate_config:
            self.generate_astrometry_config()
        args = self.solve_field_args(use_image) + [str(input_path)]

        returncode = self._run(program, "solve-field", args)
        if returncode != 0:
            raise ProcessRuntimeError(f"solve-field exited with status {returncode}", returncode)
        if not self.job.wcs_path.exists():
            raise ProcessRuntimeError(f"{self.job.stem}: solve-field found no solution")

        header = read_wcs_file(self.job.wcs_path)
        index_number, healpix = index_ids_from_header(header)
        return self._result_from_header(header, index_number, healpix)

    # ASTAP

    def astap_args(self, input_path: Path, n_stars: int) -> list[str]:
        cfg = self.config
        args = [
            "-f", str(input_path),
            "-o", str(self.job.base_path / self.job.stem),
            "-wcs",
            "-z", str(cfg.solver_downsample),
        ]
        if cfg.use_scale:
            fov = scale_to_degree_height(cfg.scale_high, cfg.scale_units, self.stats.height)
            args += ["-fov", f"{fov:.4f}"]
        else:
            args += ["-fov", "0"]
        if cfg.use_position:
            args += [
                "-r", str(cfg.search_radius),
                "-ra", f"{cfg.search_ra / 15.0:.6f}",
                "-spd", f"{cfg.search_dec + 90.0:.6f}",
            ]
        else:
            args += ["-r", "180"]
        depth = self.depth_range()
        if depth is not None:
            args += ["-s", str(depth[1])]
        elif n_stars:
            args += ["-s", str(n_stars)]
        return args

    def run_astap(self, input_path: Path, n_stars: int) -> SolveResult:
        program = resolve_executable(self.config.programs.astap_binary_path, "ASTAP")
        returncode = self._run(program, "astap", self.astap_args(input_path, n_stars))
        if not self.job.ini_path.exists():
            raise ProcessRuntimeError(
                f"{self.job.stem}: ASTAP left no solution file (status {returncode})", returncode
            )
        header = header_from_astap_ini(read_ini(self.job.ini_path))
        return self._result_from_header(header)

    # Watney

    def watney_args(self, input_path: Path, use_image: bool, n_stars: int) -> list[str]:
        cfg = self.config
        args = ["nearby" if cfg.use_position else "blind"]
        if use_image:
            args += ["--image", str(input_path)]
        else:
            args += [
                "--xyls", str(input_path),
                "--xyls-imagesize", f"{self.stats.width}x{self.stats.height}",
            ]
        args += ["--out", str(self.job.ini_path), "--out-format", "ini"]

        if cfg.use_scale:
            low = scale_to_degree_height(cfg.scale_low, cfg.scale_units, self.stats.height)
            high = scale_to_degree_height(cfg.scale_high, cfg.scale_units, self.stats.height)
        else:
            low, high = cfg.solver_min_width, cfg.solver_max_width
        if cfg.use_position:
            args += [
                "--ra", str(cfg.search_ra),
                "--dec", str(cfg.search_dec),
                "--search-radius", str(cfg.search_radius),
                "--field-radius", f"{high / 2.0:.4f}",
            ]
        else:
            args += ["--min-radius", f"{low / 2.0:.4f}", "--max-radius", f"{high / 2.0:.4f}"]

        depth = self.depth_range()
        max_stars = depth[1] if depth is not None else n_stars
        if max_stars:
            args += ["--max-stars", str(max_stars)]
        if cfg.solver_downsample > 1:
            args += ["--sampling", str(cfg.solver_downsample)]
        return args

    def run_watney(self, input_path: Path, use_image: bool, n_stars: int) -> SolveResult:
        program = resolve_executable(self.config.programs.watney_binary_path, "Watney")
        returncode = self._run(program, "watney", self.watney_args(input_path, use_image, n_stars))
        if not self.job.ini_path.exists():
            raise ProcessRuntimeError(
                f"{self.job.stem}: Watney left no solution file (status {returncode})", returncode
            )
        header = header_from_watney_ini(read_ini(self.job.ini_path))
        return self._result_from_header(header)

    def _result_from_header(
        self, header, index_number: int = UNKNOWN_INDEX, healpix: int = UNKNOWN_INDEX
    ) -> SolveResult:
        handle = WCSHandle.from_header(header)
        solution = solution_from_wcs(handle.wcs, self.stats, index_number, healpix)
        handle.release()
        logger.info("%s: %s", self.job.stem, solution.summary())
        return SolveResult(solution=solution, header=header)
