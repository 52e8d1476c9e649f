"""Logging helpers for the study pipeline."""
from __future__ import annotations

import logging
from pathlib import Path
from typing import Optional

LOGGER_NAME = "staggered_did"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(message)s"
# Sampler libraries log compilation and divergence messages on their own loggers.
SAMPLER_LOGGERS = ("pymc", "pytensor")


def setup_logging(log_dir: Path, name: str = LOGGER_NAME, level: int = logging.INFO) -> logging.Logger:
    """Send study logs to the console and to ``<log_dir>/study.log``.

    The file handler is also attached to the PyMC and pytensor loggers so a
    run log holds sampler warnings next to the study's own messages. Calling
    it again is a no-op once handlers exist.

    Args:
        log_dir: Directory for ``study.log``.
        name: Logger name.
        level: Log level of the study logger.

    Returns:
        The configured logger.
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if logger.handlers:
        return logger

    log_dir.mkdir(parents=True, exist_ok=True)
    formatter = logging.Formatter(LOG_FORMAT)
    handlers = [
        logging.StreamHandler(),
        logging.FileHandler(log_dir / "study.log", encoding="utf-8"),
    ]
    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    for sampler_name in SAMPLER_LOGGERS:
        logging.getLogger(sampler_name).addHandler(handlers[1])
    return logger


def get_logger(name: Optional[str] = None) -> logging.Logger:
    """Get the study logger, or a named one."""
    return logging.getLogger(name or LOGGER_NAME)
