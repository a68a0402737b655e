"""Configuration loading and validation for the solver."""

from __future__ import annotations

import os
import tempfile
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from ..core.coordinates import ScaleUnits
from ..core.errors import ConfigError
from ..core.image import Subframe
from ..core.result import Parity
from .enums import (
    EngineLogLevel,
    ExtractorType,
    LogLevel,
    MultiAlgorithm,
    ProcessType,
    SolverType,
    parse_enum,
)
from .paths import ExternalProgramPaths

_CONFIG_DIR = Path(__file__).parent


def _load_toml(path: Path) -> dict:
    with open(path, "rb") as f:
        return tomllib.load(f)


def _deep_merge(base: dict, override: dict) -> dict:
    """Recursively merge *override* into *base*, returning a new dict."""
    merged = base.copy()
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class SolverConfig:
    """Holds all solver configuration."""

    # Process
    process_type: ProcessType = ProcessType.SOLVE
    extractor_type: ExtractorType = ExtractorType.INTERNAL
    solver_type: SolverType = SolverType.INTERNAL

    # Extraction
    extraction_threshold: float = 2.0
    extraction_min_area: int = 10
    extraction_deblend_nthresh: int = 32
    extraction_deblend_cont: float = 0.005
    extraction_clean: bool = True
    extraction_clean_param: float = 1.0
    extraction_conv_filter: list[float] = field(
        default_factory=lambda: [1.0, 2.0, 1.0, 2.0, 4.0, 2.0, 1.0, 2.0, 1.0]
    )
    extraction_kron_fact: float = 2.5
    extraction_subpix: int = 5
    extraction_r_min: float = 3.5
    extraction_magzero: float = 20.0
    extraction_max_ellipse: float = 1.5
    extraction_saturation_limit: float = 0.0
    extraction_keep_num: int = 0
    extraction_remove_brightest: float = 0.0
    extraction_remove_dimmest: float = 0.0
    extraction_hfr_fraction: float = 0.5
    subframe: Subframe | None = None

    # Solver
    solver_min_width: float = 0.1
    solver_max_width: float = 180.0
    solver_time_limit: int = 600
    solver_downsample: int = 1
    solver_in_parallel: bool = False
    solver_auto_generate_config: bool = True
    solver_parity: Parity = Parity.BOTH
    solver_logratio_to_solve: float = 20.72
    solver_logratio_to_keep: float = 13.82
    solver_sip_order: int = 0

    # Search hints
    use_scale: bool = False
    scale_low: float = 0.0
    scale_high: float = 0.0
    scale_units: ScaleUnits = ScaleUnits.ARCSEC_PER_PIX
    use_position: bool = False
    search_ra: float = 0.0
    search_dec: float = 0.0
    search_radius: float = 15.0

    # Depth partitioning
    depth_low: int = 0
    depth_high: int = 0
    multi_algorithm: MultiAlgorithm = MultiAlgorithm.NONE
    parallelism: int = 0

    # Temporary files
    base_path: str = field(default_factory=tempfile.gettempdir)
    base_name: str = ""
    cleanup_temp_files: bool = True

    # External programs and index data
    programs: ExternalProgramPaths = field(default_factory=ExternalProgramPaths.default_for)
    index_folder_paths: list[str] = field(default_factory=list)
    index_files: list[str] = field(default_factory=list)

    # Online service
    online_api_key: str | None = None
    online_timeout: int = 120

    # Abort escalation
    abort_grace_seconds: float = 2.0

    # Logging
    log_level: str = "WARNING"
    ss_log_level: LogLevel = LogLevel.NORMAL
    engine_log_level: EngineLogLevel = EngineLogLevel.NONE
    log_to_file: bool = False
    log_file_name: str = ""

    @property
    def effective_parallelism(self) -> int:
        return self.parallelism if self.parallelism > 0 else (os.cpu_count() or 1)

    @property
    def uses_depth_range(self) -> bool:
        return self.depth_high > self.depth_low

    def set_search_scale(self, low: float, high: float, units: ScaleUnits | str) -> None:
        self.use_scale = True
        self.scale_low = float(low)
        self.scale_high = float(high)
        self.scale_units = parse_enum(ScaleUnits, units, "scale_units")

    def set_search_position(self, ra: float, dec: float, radius: float | None = None) -> None:
        """Set the search center in decimal degrees."""
        self.use_position = True
        self.search_ra = float(ra)
        self.search_dec = float(dec)
        if radius is not None:
            self.search_radius = float(radius)

    def validate(self) -> None:
        """Check the configuration before any process is spawned.

        Raises
        ------
        ConfigError
        """
        if self.parallelism < 0:
            raise ConfigError(f"parallelism must be >= 0, got {self.parallelism}")
        if self.depth_low < 0 or (self.depth_high and self.depth_high <= self.depth_low):
            raise ConfigError(
                f"Invalid depth range [{self.depth_low}, {self.depth_high})"
            )
        if self.use_scale and not 0 < self.scale_low <= self.scale_high:
            raise ConfigError(
                f"Invalid search scale [{self.scale_low}, {self.scale_high}]"
            )
        if self.use_position and not -90.0 <= self.search_dec <= 90.0:
            raise ConfigError(f"Search declination out of range: {self.search_dec}")
        if self.extractor_type is ExtractorType.BUILTIN and not self.solver_type.is_external:
            raise ConfigError("The builtin extractor requires an external solver")
        if (
            self.extractor_type is ExtractorType.BUILTIN
            and self.multi_algorithm is MultiAlgorithm.DEPTHS
            and self.process_type is ProcessType.SOLVE
            and not self.uses_depth_range
        ):
            # no star list exists before the solve to size the partitions from
            raise ConfigError(
                "Depth-parallel solving with the builtin extractor needs depth_low and depth_high"
            )
        for folder in self.index_folder_paths:
            if not Path(folder).is_dir():
                raise ConfigError(f"Index folder not found: {folder}")
        for index_file in self.index_files:
            if not Path(index_file).is_file():
                raise ConfigError(f"Index file not found: {index_file}")
        if not Path(self.base_path).is_dir():
            raise ConfigError(f"Temporary file directory not found: {self.base_path}")

    @classmethod
    def from_dict(cls, d: dict) -> SolverConfig:
        """Create a SolverConfig from a nested dictionary."""
        cfg = cls()

        proc = d.get("process", {})
        cfg.process_type = parse_enum(ProcessType, proc.get("type", cfg.process_type), "process type")
        cfg.extractor_type = parse_enum(
            ExtractorType, proc.get("extractor", cfg.extractor_type), "extractor type"
        )
        cfg.solver_type = parse_enum(SolverType, proc.get("solver", cfg.solver_type), "solver type")

        ext = d.get("extraction", {})
        cfg.extraction_threshold = ext.get("threshold", cfg.extraction_threshold)
        cfg.extraction_min_area = ext.get("min_area", cfg.extraction_min_area)
        cfg.extraction_deblend_nthresh = ext.get("deblend_nthresh", cfg.extraction_deblend_nthresh)
        cfg.extraction_deblend_cont = ext.get("deblend_cont", cfg.extraction_deblend_cont)
        cfg.extraction_clean = ext.get("clean", cfg.extraction_clean)
        cfg.extraction_clean_param = ext.get("clean_param", cfg.extraction_clean_param)
        cfg.extraction_conv_filter = ext.get("conv_filter", cfg.extraction_conv_filter)
        cfg.extraction_kron_fact = ext.get("kron_fact", cfg.extraction_kron_fact)
        cfg.extraction_subpix = ext.get("subpix", cfg.extraction_subpix)
        cfg.extraction_r_min = ext.get("r_min", cfg.extraction_r_min)
        cfg.extraction_magzero = ext.get("magzero", cfg.extraction_magzero)
        cfg.extraction_max_ellipse = ext.get("max_ellipse", cfg.extraction_max_ellipse)
        cfg.extraction_saturation_limit = ext.get(
            "saturation_limit", cfg.extraction_saturation_limit
        )
        cfg.extraction_keep_num = ext.get("keep_num", cfg.extraction_keep_num)
        cfg.extraction_remove_brightest = ext.get(
            "remove_brightest", cfg.extraction_remove_brightest
        )
        cfg.extraction_remove_dimmest = ext.get("remove_dimmest", cfg.extraction_remove_dimmest)
        cfg.extraction_hfr_fraction = ext.get("hfr_fraction", cfg.extraction_hfr_fraction)
        sub = ext.get("subframe")
        if sub:
            cfg.subframe = Subframe(int(sub[0]), int(sub[1]), int(sub[2]), int(sub[3]))

        sol = d.get("solver", {})
        cfg.solver_min_width = sol.get("min_width", cfg.solver_min_width)
        cfg.solver_max_width = sol.get("max_width", cfg.solver_max_width)
        cfg.solver_time_limit = sol.get("time_limit", cfg.solver_time_limit)
        cfg.solver_downsample = sol.get("downsample", cfg.solver_downsample)
        cfg.solver_in_parallel = sol.get("in_parallel", cfg.solver_in_parallel)
        cfg.solver_auto_generate_config = sol.get(
            "auto_generate_config", cfg.solver_auto_generate_config
        )
        cfg.solver_parity = parse_enum(Parity, sol.get("parity", cfg.solver_parity), "parity")
        cfg.solver_logratio_to_solve = sol.get("logratio_to_solve", cfg.solver_logratio_to_solve)
        cfg.solver_logratio_to_keep = sol.get("logratio_to_keep", cfg.solver_logratio_to_keep)
        cfg.solver_sip_order = sol.get("sip_order", cfg.solver_sip_order)

        search = d.get("search", {})
        if search.get("use_scale", False):
            cfg.set_search_scale(
                search.get("scale_low", cfg.scale_low),
                search.get("scale_high", cfg.scale_high),
                search.get("scale_units", cfg.scale_units),
            )
        if search.get("use_position", False):
            cfg.set_search_position(
                search.get("ra", cfg.search_ra),
                search.get("dec", cfg.search_dec),
                search.get("radius", cfg.search_radius),
            )
        else:
            cfg.search_radius = search.get("radius", cfg.search_radius)

        par = d.get("parallel", {})
        cfg.depth_low = par.get("depth_low", cfg.depth_low)
        cfg.depth_high = par.get("depth_high", cfg.depth_high)
        cfg.multi_algorithm = parse_enum(
            MultiAlgorithm, par.get("multi_algorithm", cfg.multi_algorithm), "multi_algorithm"
        )
        cfg.parallelism = par.get("parallelism", cfg.parallelism)

        files = d.get("files", {})
        cfg.base_path = files.get("base_path") or cfg.base_path
        cfg.base_name = files.get("base_name", cfg.base_name)
        cfg.cleanup_temp_files = files.get("cleanup_temp_files", cfg.cleanup_temp_files)

        cfg.programs = ExternalProgramPaths.from_dict(d.get("programs", {}))

        idx = d.get("index", {})
        cfg.index_folder_paths = [str(Path(p).expanduser()) for p in idx.get("folders", [])]
        cfg.index_files = [str(Path(p).expanduser()) for p in idx.get("files", [])]

        online = d.get("online", {})
        cfg.online_api_key = online.get("api_key") or os.environ.get("ASTROMETRY_NET_API_KEY")
        cfg.online_timeout = online.get("timeout", cfg.online_timeout)

        cfg.abort_grace_seconds = d.get("abort", {}).get("grace_seconds", cfg.abort_grace_seconds)

        log = d.get("logging", {})
        cfg.log_level = log.get("level", cfg.log_level)
        cfg.ss_log_level = parse_enum(LogLevel, log.get("solver_level", cfg.ss_log_level), "solver_level")
        cfg.engine_log_level = parse_enum(
            EngineLogLevel, log.get("engine_level", cfg.engine_log_level), "engine_level"
        )
        cfg.log_to_file = log.get("to_file", cfg.log_to_file)
        cfg.log_file_name = log.get("file_name", cfg.log_file_name)

        return cfg


def load_config(
    user_config_path: str | Path | None = None, overrides: dict[str, Any] | None = None
) -> SolverConfig:
    """Load default config, merge with user config and overrides.

    Parameters
    ----------
    user_config_path : path, optional
        Path to a user TOML file that overrides defaults.
    overrides : dict, optional
        Additional overrides applied last.

    Returns
    -------
    SolverConfig
    """
    merged = _load_toml(_CONFIG_DIR / "defaults.toml")

    if user_config_path is not None:
        user = _load_toml(Path(user_config_path))
        merged = _deep_merge(merged, user)

    if overrides is not None:
        merged = _deep_merge(merged, overrides)

    return SolverConfig.from_dict(merged)
