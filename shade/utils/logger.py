"""Logging configuration for Shade."""

import logging
import os
from datetime import datetime
from pathlib import Path

import appdirs
from rich.console import Console
from rich.logging import RichHandler

LOGGER_PREFIX = "shade"


def get_log_dir() -> Path:
    """Directory that receives the daily log file.

    ``SHADE_LOG_DIR`` wins over the platform log directory so tests and
    portable installs can redirect output.
    """
    override = os.getenv("SHADE_LOG_DIR")
    if override:
        return Path(override)
    return Path(appdirs.user_log_dir("Shade"))


def setup_logger(name: str, level: str | None = None) -> logging.Logger:
    """Set up a logger with Rich formatting.

    Args:
        name: Logger name (usually __name__)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)

    if level is None:
        debug = os.getenv("DEBUG", "false").lower() == "true"
        level = os.getenv("SHADE_LOG_LEVEL") or ("DEBUG" if debug else "INFO")

    # Enum values from the config schema carry the name in .value
    if hasattr(level, "value"):
        level = level.value

    level = str(level).upper()
    numeric_level = getattr(logging, level, logging.INFO)

    logger.setLevel(numeric_level)

    if logger.handlers:
        for handler in logger.handlers:
            if isinstance(handler, RichHandler):
                handler.setLevel(numeric_level)
        return logger

    show_locals = numeric_level <= logging.DEBUG
    console_handler = RichHandler(
        console=Console(stderr=True), rich_tracebacks=True, tracebacks_show_locals=show_locals
    )
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(logging.Formatter("%(message)s"))
    logger.addHandler(console_handler)

    log_dir = get_log_dir()
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        log_file = log_dir / f"shade_{datetime.now():%Y%m%d}.log"
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
    except OSError as e:
        # Read-only home directories still get console logging
        logger.warning(f"File logging disabled ({log_dir}): {e}")
    else:
        file_handler.setLevel(logging.DEBUG)  # Always log everything to file
        file_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

    logger.propagate = False
    return logger


def update_log_level(level: str):
    """Update log level for all existing Shade loggers.

    Args:
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    if hasattr(level, "value"):
        level = level.value
    numeric_level = getattr(logging, str(level).upper(), logging.INFO)

    for logger_name in list(logging.Logger.manager.loggerDict.keys()):
        if logger_name == LOGGER_PREFIX or logger_name.startswith(f"{LOGGER_PREFIX}."):
            logger = logging.getLogger(logger_name)
            logger.setLevel(numeric_level)

            for handler in logger.handlers:
                if isinstance(handler, RichHandler):
                    handler.setLevel(numeric_level)
                # File handler stays at DEBUG
