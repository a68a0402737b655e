from .coordinates import parse_coordinates, ScaleUnits
from .image import ImageStatistic, Subframe
from .result import Background, Parity, Solution, Star, WCSPoint
from .state import SolverState

__all__ = [
    "parse_coordinates",
    "ScaleUnits",
    "ImageStatistic",
    "Subframe",
    "Background",
    "Parity",
    "Solution",
    "Star",
    "WCSPoint",
    "SolverState",
]
