"""Enumerations selecting what a solver instance does and with which engine."""

from __future__ import annotations

import logging
from enum import Enum

from ..core.errors import ConfigError


class ProcessType(Enum):
    EXTRACT = "extract"
    EXTRACT_WITH_HFR = "extract_with_hfr"
    SOLVE = "solve"


class ExtractorType(Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    BUILTIN = "builtin"


class SolverType(Enum):
    INTERNAL = "internal"
    LOCAL_ASTROMETRY = "local_astrometry"
    ASTAP = "astap"
    WATNEY = "watney"
    ONLINE = "online"

    @property
    def is_external(self) -> bool:
        return self in (SolverType.LOCAL_ASTROMETRY, SolverType.ASTAP, SolverType.WATNEY)


class MultiAlgorithm(Enum):
    NONE = "none"
    DEPTHS = "depths"


class LogLevel(Enum):
    """Verbosity of the solver's own messages."""

    OFF = "off"
    NORMAL = "normal"
    VERBOSE = "verbose"

    @property
    def logging_level(self) -> int:
        return {
            LogLevel.OFF: logging.CRITICAL + 10,
            LogLevel.NORMAL: logging.INFO,
            LogLevel.VERBOSE: logging.DEBUG,
        }[self]


class EngineLogLevel(Enum):
    """Verbosity requested from the solving engines (astrometry.net levels)."""

    NONE = "none"
    ERROR = "error"
    MSG = "msg"
    VERB = "verb"
    ALL = "all"

    @property
    def verbosity(self) -> int:
        """Number of ``-v`` flags to pass to solve-field."""
        return list(EngineLogLevel).index(self) - 1 if self is not EngineLogLevel.NONE else 0


def parse_enum(enum_cls: type[Enum], value, field_name: str):
    """Look up *value* in *enum_cls* by value or name."""
    if isinstance(value, enum_cls):
        return value
    if isinstance(value, str):
        for member in enum_cls:
            if value.lower() in (member.value, member.name.lower()):
                return member
    choices = ", ".join(m.value for m in enum_cls)
    raise ConfigError(f"Invalid {field_name} '{value}'. Must be one of {choices}")
