"""
Logging Configuration Module.

Centralized logging configuration for the plan executor. Defaults come from
``Settings`` (``PLAN_EXECUTOR_LOG_LEVEL``, ``PLAN_EXECUTOR_LOG_FORMAT``,
``PLAN_EXECUTOR_LOG_TO_FILE``, ``PLAN_EXECUTOR_LOG_FILE_DIR``); every one of
them can be overridden per call.

Engine modules log state transitions at INFO, retries and discarded results
at WARNING and unexpected tool failures at ERROR.
"""

import logging
from pathlib import Path
from typing import Optional, Union

LOG_FILE_NAME = "plan_executor.log"

FORMATS = {
    "simple": "%(levelname)s - %(name)s - %(message)s",
    "detailed": "%(asctime)s - %(name)s - %(levelname)s - [%(filename)s:%(lineno)d] - %(funcName)s() - %(message)s",
    "json": (
        '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
        '"module": "%(filename)s", "function": "%(funcName)s", "line": %(lineno)d, '
        '"message": "%(message)s"}'
    ),
}

MODULE_LOG_LEVELS = {
    "plan_executor.engine": "DEBUG",
    "plan_executor.engine.repos": "INFO",
    "plan_executor.server": "INFO",
    "plan_executor.server.api": "DEBUG",
    # Third-party libraries (reduce noise)
    "sqlalchemy": "WARNING",
    "sqlalchemy.engine": "WARNING",
    "sqlalchemy.pool": "WARNING",
    "aiosqlite": "WARNING",
    "httpx": "WARNING",
    "asyncio": "WARNING",
    "uvicorn": "INFO",
    "uvicorn.access": "INFO",
}


def setup_logging(
    log_level: Optional[str] = None,
    log_format: Optional[str] = None,
    enable_file: Optional[bool] = None,
    log_dir: Union[str, Path, None] = None,
) -> None:
    """
    Configure the root logger: one console handler, optionally one file handler.

    Args:
        log_level: Console level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: One of ``simple``, ``detailed``, ``json``
        enable_file: Whether to also log to ``<log_dir>/plan_executor.log``
        log_dir: Directory for the log file
    """
    # Imported here so importing this module never loads (and validates) settings.
    from plan_executor.core.config import settings

    level = (log_level or settings.log_level).upper()
    fmt = log_format or settings.log_format
    file_logging = settings.log_to_file if enable_file is None else enable_file

    formatter = logging.Formatter(FORMATS.get(fmt, FORMATS["detailed"]), datefmt="%Y-%m-%d %H:%M:%S")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if file_logging:
        directory = Path(log_dir or settings.log_file_dir)
        directory.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(directory / LOG_FILE_NAME)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

    for module_name, module_level in MODULE_LOG_LEVELS.items():
        logging.getLogger(module_name).setLevel(module_level)

    root_logger.info(f"Logging configured: level={level}, format={fmt}, file_logging={file_logging}")


def get_logger(name: str) -> logging.Logger:
    """Return the logger for a module (typically ``__name__``)."""
    return logging.getLogger(name)
