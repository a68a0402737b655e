"""Logging configuration for the solver."""

from __future__ import annotations

import logging

from tqdm import tqdm

from ..config.enums import LogLevel

_LOGGER_NAME = "ssolver"
_FORMAT = "[%(levelname)s] %(name)s: %(message)s"


class _TqdmLoggingHandler(logging.Handler):
    """Logging handler that preserves tqdm progress bars."""

    def emit(self, record: logging.LogRecord) -> None:
        try:
            msg = self.format(record)
            tqdm.write(msg)
        except Exception:
            self.handleError(record)


def setup_logging(
    level: str | int = "WARNING",
    verbose: bool = False,
    log_file: str | None = None,
) -> logging.Logger:
    """Configure and return the solver logger.

    Parameters
    ----------
    level : str or int
        Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL) or number.
    verbose : bool
        If True, forces INFO level and routes output through tqdm.
    log_file : str, optional
        Also write every record to this file.
    """
    logger = logging.getLogger(_LOGGER_NAME)
    logger.propagate = False

    if verbose:
        level = "INFO"

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.WARNING)
    logger.setLevel(level)

    needs_tqdm = verbose
    has_tqdm_handler = any(isinstance(h, _TqdmLoggingHandler) for h in logger.handlers)
    has_stream_handler = any(
        isinstance(h, logging.StreamHandler)
        and not isinstance(h, (_TqdmLoggingHandler, logging.FileHandler))
        for h in logger.handlers
    )

    if (needs_tqdm and not has_tqdm_handler) or (not needs_tqdm and not has_stream_handler):
        for h in list(logger.handlers):
            if not isinstance(h, logging.FileHandler):
                logger.removeHandler(h)

        handler: logging.Handler = _TqdmLoggingHandler() if needs_tqdm else logging.StreamHandler()
        handler.setFormatter(logging.Formatter(_FORMAT))
        logger.addHandler(handler)

    if log_file:
        existing = [
            h for h in logger.handlers
            if isinstance(h, logging.FileHandler) and h.baseFilename.endswith(str(log_file))
        ]
        if not existing:
            file_handler = logging.FileHandler(log_file)
            file_handler.setFormatter(logging.Formatter("%(asctime)s " + _FORMAT))
            logger.addHandler(file_handler)

    return logger


def setup_logging_from_config(cfg) -> logging.Logger:
    """Configure the logger from a ``SolverConfig``."""
    level = getattr(logging, str(cfg.log_level).upper(), logging.WARNING)
    if cfg.ss_log_level is LogLevel.OFF:
        level = cfg.ss_log_level.logging_level
    else:
        level = min(level, cfg.ss_log_level.logging_level)
    log_file = cfg.log_file_name if cfg.log_to_file and cfg.log_file_name else None
    return setup_logging(level=level, log_file=log_file)


def get_logger() -> logging.Logger:
    """Return the solver logger (must call setup_logging first)."""
    return logging.getLogger(_LOGGER_NAME)
