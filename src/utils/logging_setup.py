# ========================
# src/utils/logging_setup.py
# ========================

"""
Logging Configuration

Centralized logging setup for the CLI, the API server and the scripts.
Every module logs through ``logging.getLogger(__name__)``; this only wires
handlers onto the root logger.
"""

import logging
import sys
from pathlib import Path
from typing import Iterable, Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"

# boto3 logs every request at DEBUG and psycopg every pool event at INFO
QUIET_LOGGERS = ('boto3', 'botocore', 's3transfer', 'urllib3', 'psycopg', 'psycopg.pool')


def _resolve_level(log_level: str) -> int:
    level = logging.getLevelName(str(log_level).upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(log_level: str = "INFO",
                  log_file: Optional[str] = None,
                  log_dir: str = "logs",
                  quiet_loggers: Iterable[str] = QUIET_LOGGERS) -> None:
    """
    Set up logging for a pipeline process.

    Args:
        log_level (str): Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL);
            anything else falls back to INFO
        log_file (str): Optional log file name, written under log_dir
        log_dir (str): Directory for log files
        quiet_loggers (list): Third-party loggers held at WARNING
    """
    level = _resolve_level(log_level)
    formatter = logging.Formatter(LOG_FORMAT, DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Calling this twice (uvicorn reload, tests) must not duplicate output
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_path = Path(log_dir)
        log_path.mkdir(parents=True, exist_ok=True)
        file_path = log_path / log_file
        file_handler = logging.FileHandler(file_path)
        file_handler.setLevel(logging.DEBUG)  # File gets all messages
        file_handler.setFormatter(formatter)
        root_logger.addHandler(file_handler)

        logging.info(f"Logging to file: {file_path}")

    for name in quiet_loggers:
        logging.getLogger(name).setLevel(logging.WARNING)

    if logging.getLevelName(level) != str(log_level).upper():
        logging.warning(f"Unknown log level '{log_level}', using INFO")
    logging.info(f"Logging initialized - Level: {logging.getLevelName(level)}")
