"""Locations of the external extraction and solving programs."""

from __future__ import annotations

import os
import shutil
import sys
from dataclasses import dataclass, replace

from ..core.errors import ConfigError

# Default install locations per computer system.
_DEFAULTS: dict[str, dict[str, str]] = {
    "linux": {
        "sextractor_binary_path": "/usr/bin/source-extractor",
        "config_file_path": "/etc/astrometry.cfg",
        "solver_path": "/usr/bin/solve-field",
        "astap_binary_path": "/opt/astap/astap",
        "watney_binary_path": "/opt/watney/watney-solve",
    },
    "linux_flatpak": {
        "sextractor_binary_path": "/app/bin/sex",
        "config_file_path": "/app/etc/astrometry.cfg",
        "solver_path": "/app/bin/solve-field",
        "astap_binary_path": "/app/bin/astap",
        "watney_binary_path": "/app/bin/watney-solve",
    },
    "macos_homebrew": {
        "sextractor_binary_path": "/usr/local/bin/sex",
        "config_file_path": "/usr/local/etc/astrometry.cfg",
        "solver_path": "/usr/local/bin/solve-field",
        "astap_binary_path": "/Applications/ASTAP.app/Contents/MacOS/astap",
        "watney_binary_path": "/Applications/watney-solve/watney-solve",
    },
    "windows": {
        "sextractor_binary_path": "",
        "config_file_path": "C:/cygwin64/usr/etc/astrometry.cfg",
        "solver_path": "C:/cygwin64/bin/solve-field",
        "astap_binary_path": "C:/Program Files/astap/astap.exe",
        "watney_binary_path": "C:/Program Files/watney-solve/watney-solve.exe",
    },
}

# Keys accepted in the [programs] table of the config file.
_TOML_KEYS = {
    "sextractor": "sextractor_binary_path",
    "config_file": "config_file_path",
    "solver": "solver_path",
    "astap": "astap_binary_path",
    "watney": "watney_binary_path",
}


def _current_system() -> str:
    if sys.platform.startswith("win"):
        return "windows"
    if sys.platform == "darwin":
        return "macos_homebrew"
    if os.environ.get("FLATPAK_ID"):
        return "linux_flatpak"
    return "linux"


@dataclass(frozen=True)
class ExternalProgramPaths:
    """Executable and support-file locations per external engine."""

    sextractor_binary_path: str = ""
    config_file_path: str = ""
    solver_path: str = ""
    astap_binary_path: str = ""
    watney_binary_path: str = ""

    @classmethod
    def default_for(cls, system: str | None = None) -> ExternalProgramPaths:
        """Default paths for *system* (``linux``, ``linux_flatpak``,
        ``macos_homebrew``, ``windows``); the running system if omitted."""
        system = system or _current_system()
        if system not in _DEFAULTS:
            raise ConfigError(
                f"Unknown computer system '{system}'. Must be one of {tuple(_DEFAULTS)}"
            )
        return cls(**_DEFAULTS[system])

    @classmethod
    def from_dict(cls, d: dict) -> ExternalProgramPaths:
        """Build from a ``[programs]`` table; unset keys use the system defaults."""
        base = cls.default_for(d.get("system") or None)
        return replace(
            base,
            **{
                field_name: str(d[key])
                for key, field_name in _TOML_KEYS.items()
                if d.get(key)
            },
        )


def resolve_executable(path: str, label: str) -> str:
    """Locate an executable given as an absolute path or a command name.

    Raises
    ------
    ConfigError
        If the program cannot be found or is not executable.
    """
    if not path:
        raise ConfigError(f"No path configured for {label}")

    if os.path.isabs(path):
        if not os.path.isfile(path):
            raise ConfigError(f"{label} not found at {path}")
        if not os.access(path, os.X_OK):
            raise ConfigError(f"{label} at {path} is not executable")
        return path

    found = shutil.which(path)
    if found is None:
        raise ConfigError(f"{label} not found in PATH (searched for '{path}')")
    return found
