"""Logging setup for the ensemble-explorer server.

Module loggers are children of ``ensemble_explorer`` (``ensemble_explorer.store``,
``ensemble_explorer.viewer``, ...) and propagate to the handlers attached here.
"""
import logging
import os
from logging.handlers import RotatingFileHandler
from typing import Optional

LOG_FORMAT = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"
LOG_MAX_BYTES = 10 * 1024 * 1024
LOG_BACKUP_COUNT = 5


def log_dir() -> str:
    return os.environ.get("EXPLORER_LOG_DIR") or os.path.join(os.path.dirname(__file__), "logs")


def setup_logging(name: str, level: Optional[str] = None) -> logging.Logger:
    """Attach console + rotating file handlers to ``name`` (once).

    ``level`` defaults to ``EXPLORER_LOG_LEVEL`` (INFO). The console shows INFO
    and above; the file under ``EXPLORER_LOG_DIR`` gets everything at ``level``.
    """
    logger = logging.getLogger(name)
    if logger.handlers:
        return logger

    level = level or os.environ.get("EXPLORER_LOG_LEVEL", "INFO")
    log_level = getattr(logging, level.upper(), logging.INFO)
    logger.setLevel(log_level)
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    console = logging.StreamHandler()
    console.setLevel(logging.INFO)
    console.setFormatter(formatter)
    logger.addHandler(console)

    directory = log_dir()
    os.makedirs(directory, exist_ok=True)
    file_handler = RotatingFileHandler(
        os.path.join(directory, f"{name.split('.')[0]}.log"),
        maxBytes=LOG_MAX_BYTES,
        backupCount=LOG_BACKUP_COUNT,
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return logger
