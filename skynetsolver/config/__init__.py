from .enums import (
    EngineLogLevel,
    ExtractorType,
    LogLevel,
    MultiAlgorithm,
    ProcessType,
    SolverType,
)
from .loader import SolverConfig, load_config
from .paths import ExternalProgramPaths, resolve_executable

__all__ = [
    "EngineLogLevel",
    "ExtractorType",
    "LogLevel",
    "MultiAlgorithm",
    "ProcessType",
    "SolverType",
    "SolverConfig",
    "load_config",
    "ExternalProgramPaths",
    "resolve_executable",
]
