"""
Logging for DepthRefinement

All components log under the "DepthRefinement" hierarchy. Engine messages
carry the tile prefix "[tile i/n, rc c] ".
"""

import logging
import sys
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator, Optional


ROOT_LOGGER_NAME = "DepthRefinement"

# [2025-10-31 10:15:30] [INFO] [DepthRefinement.Refine] [tile 1/4, rc 0] Message
LOG_FORMAT = '[%(asctime)s] [%(levelname)s] [%(name)s] %(message)s'
DATE_FORMAT = '%Y-%m-%d %H:%M:%S'


def _parse_level(level: str) -> int:
    value = logging.getLevelName(level.upper())
    if not isinstance(value, int):
        raise ValueError(f"Unknown logging level: {level}")
    return value


def setup_logger(
    name: str = ROOT_LOGGER_NAME,
    level: str = "INFO",
    log_file: Optional[str] = None,
    console: bool = True,
    force: bool = False
) -> logging.Logger:
    """
    Attach console and/or file handlers to a logger.

    A logger that already has handlers is returned as is unless `force`.

    Args:
        name: Logger name
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        log_file: Optional log file, appended to
        console: Log to stdout
        force: Replace existing handlers

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)
    if logger.handlers and not force:
        return logger

    logger.setLevel(_parse_level(level))
    for handler in logger.handlers[:]:
        logger.removeHandler(handler)
        handler.close()

    formatter = logging.Formatter(LOG_FORMAT, datefmt=DATE_FORMAT)
    handlers = []
    if console:
        handlers.append(logging.StreamHandler(sys.stdout))
    if log_file:
        Path(log_file).parent.mkdir(parents=True, exist_ok=True)
        handlers.append(logging.FileHandler(log_file, mode='a'))

    for handler in handlers:
        handler.setFormatter(formatter)
        logger.addHandler(handler)

    return logger


def get_logger(name: str) -> logging.Logger:
    """
    Component logger, e.g. get_logger("Refine") -> "DepthRefinement.Refine"

    The package logger is created first so the component logger is always
    attached under it.
    """
    logging.getLogger(ROOT_LOGGER_NAME)
    return logging.getLogger(f"{ROOT_LOGGER_NAME}.{name}")


def configure_root_logger(level: str = "INFO", log_file: Optional[str] = None) -> logging.Logger:
    """
    (Re)configure the DepthRefinement root logger, once per depth map job.

    Args:
        level: Logging level
        log_file: Optional path to log file
    """
    return setup_logger(ROOT_LOGGER_NAME, level=level, log_file=log_file, console=True, force=True)


def set_level(level: str):
    """Change the level of every DepthRefinement logger at once"""
    logging.getLogger(ROOT_LOGGER_NAME).setLevel(_parse_level(level))


@contextmanager
def log_elapsed(logger: logging.Logger, message: str, level: int = logging.INFO) -> Iterator[None]:
    """
    Log `message` with the elapsed time once the block completes.

    Nothing is logged when the block raises.

    Example:
        >>> with log_elapsed(logger, f"{tile}Refine depth/sim map"):
        ...     engine.refine_tile(...)
    """
    start_time = time.time()
    yield
    logger.log(level, f"{message} done in {time.time() - start_time:.2f}s ✓")
