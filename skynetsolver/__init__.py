from .solver import PlateSolver
from .astrometry.extractor_solver import ExtractorSolver
from .config.loader import SolverConfig, load_config
from .core.result import Solution, Star

__all__ = ["PlateSolver", "ExtractorSolver", "SolverConfig", "load_config", "Solution", "Star"]
