# ==================================================
# ===============  MODULE: logger  =================
# ==================================================
from __future__ import annotations

import logging
from datetime import datetime
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path
from typing import Optional, Union

# Public API
__all__ = [
    "LOG_FORMAT",
    "ENGINE_LOGGERS",
    "make_file_handler",
    "get_logger",
    "get_error_logger",
    "get_debug_logger",
    "configure_loggers",
]

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
ENGINE_LOGGERS = ("nd_engine", "nd_engine.errors", "nd_engine.debug")

PathLike = Union[str, Path]


def _set_handler_levels(logger: logging.Logger, level: int) -> None:
    for h in logger.handlers:
        h.setLevel(level)


def _dated_log(log_dir: PathLike, stem: str) -> Path:
    return Path(log_dir) / f"{stem}_{datetime.now():%Y-%m-%d}.log"


def _prepare(name: str, level: int) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.setLevel(level)
    logger.propagate = False
    return logger


# ====[ File handler ]====
def make_file_handler(
    log_path: PathLike,
    level: int,
    when: str = "midnight",
    backupCount: int = 7,
    encoding: str = "utf-8",
    interval: int = 1,
) -> TimedRotatingFileHandler:
    """
    Rotating file handler writing `LOG_FORMAT` records to `log_path`.

    The parent directory is created if needed; the file itself only appears
    with the first record.

    Parameters
    ----------
    log_path : str or Path
        Target file.
    level : int
        Minimum level written.
    when, interval : str, int
        Rotation period, as understood by `TimedRotatingFileHandler`.
    backupCount : int
        Rotated files kept on disk.
    encoding : str
        Text encoding of the file.
    """
    path = Path(log_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    handler = TimedRotatingFileHandler(
        filename=str(path),
        when=when,
        interval=interval,
        backupCount=backupCount,
        encoding=encoding,
        delay=True,
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    return handler


# ==================================================
# ================ Engine loggers ==================
# ==================================================

def get_logger(
    name: str = "nd_engine",
    log_dir: Optional[PathLike] = None,
    level: int = logging.WARNING,
    when: str = "midnight",
    backupCount: int = 7,
) -> logging.Logger:
    """
    Main engine logger: console output, plus a dated rotating file in `log_dir`.

    Handlers are installed on the first call only; later calls just apply
    `level`. Records do not propagate to the root logger.

    Returns
    -------
    logging.Logger
    """
    logger = _prepare(name, level)
    if logger.handlers:
        _set_handler_levels(logger, level)
        return logger

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(console)
    if log_dir is not None:
        logger.addHandler(make_file_handler(_dated_log(log_dir, name), level, when=when, backupCount=backupCount))
    return logger


def get_error_logger(
    name: str = "nd_engine.errors",
    log_dir: Optional[PathLike] = None,
    level: int = logging.ERROR,
    backupCount: int = 30,
) -> logging.Logger:
    """
    Logger for line filter failures and other errors.

    Writes to `errors_<date>.log` in `log_dir`, or to stderr when no
    directory is configured.
    """
    logger = _prepare(name, level)
    if logger.handlers:
        _set_handler_levels(logger, level)
        return logger

    if log_dir is not None:
        handler = make_file_handler(_dated_log(log_dir, "errors"), level, backupCount=backupCount)
    else:
        handler = logging.StreamHandler()
        handler.setLevel(level)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return logger


def get_debug_logger(
    name: str = "nd_engine.debug",
    log_dir: Optional[PathLike] = None,
    level: int = logging.DEBUG,
    backupCount: int = 7,
) -> logging.Logger:
    """Dispatch traces and timings; `debug_<date>.log` in `log_dir`, discarded without one."""
    logger = _prepare(name, level)
    if logger.handlers:
        _set_handler_levels(logger, level)
        return logger

    if log_dir is not None:
        logger.addHandler(make_file_handler(_dated_log(log_dir, "debug"), level, backupCount=backupCount))
    else:
        logger.addHandler(logging.NullHandler())
    return logger


def configure_loggers(log_dir: Optional[PathLike] = None, level: int = logging.WARNING) -> None:
    """Close the handlers of all engine loggers and install new ones for `log_dir` and `level`."""
    for name in ENGINE_LOGGERS:
        logger = logging.getLogger(name)
        for h in list(logger.handlers):
            logger.removeHandler(h)
            h.close()
    get_logger(log_dir=log_dir, level=level)
    get_error_logger(log_dir=log_dir)
    get_debug_logger(log_dir=log_dir)
