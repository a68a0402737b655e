from .protocols import SolverBackend, SolveResult
from .job import SolverJob
from .process import ExternalProcess
from .internal import InternalBackend
from .external import ExternalBackend
from .online import OnlineBackend
from .scheduler import DepthParallelScheduler, partition_depths
from .extractor_solver import ExtractorSolver, create_backend
from .wcs_utils import WCSHandle, solution_from_wcs, validate_wcs

__all__ = [
    "SolverBackend",
    "SolveResult",
    "SolverJob",
    "ExternalProcess",
    "InternalBackend",
    "ExternalBackend",
    "OnlineBackend",
    "DepthParallelScheduler",
    "partition_depths",
    "ExtractorSolver",
    "create_backend",
    "WCSHandle",
    "solution_from_wcs",
    "validate_wcs",
]
