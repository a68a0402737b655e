"""Exception hierarchy for the solver orchestration layer."""

from __future__ import annotations


# ---------------------------------------------------------------------------
# Custom exception hierarchy
# ---------------------------------------------------------------------------


class SolverError(Exception):
    """Base exception for the solver pipeline."""


class ConfigError(SolverError):
    """Raised for configuration validation errors.

    Detected before any external process is spawned.
    """


class ExtractionError(SolverError):
    """Raised when star extraction fails."""


class ProcessSpawnError(SolverError):
    """Raised when an external program cannot be started."""


class ProcessRuntimeError(SolverError):
    """Raised when an external program exits abnormally or leaves no result."""

    def __init__(self, message: str, returncode: int | None = None):
        super().__init__(message)
        self.returncode = returncode


class SolutionParseError(SolverError):
    """Raised when a result artifact exists but cannot be read.

    Kept distinct from ``ProcessRuntimeError`` so callers can tell
    "engine ran but found nothing" from "output unreadable".
    """


class SolverStateError(SolverError):
    """Raised for operations that are invalid in the current solver state."""


class SolveCancelled(SolverError):
    """Raised inside a worker when the instance was aborted.

    Never surfaced as a failure; it maps to the ``ABORTED`` state.
    """
