"""
Run logging for the analysis command.

Every batch run writes one timestamped log file under the configured log
directory, next to a console stream. HTTP and SDK libraries are held at
WARNING so per-image downloads and model calls do not flood the run log.
"""

import logging
import sys
from datetime import datetime
from pathlib import Path
from typing import Optional, Union

import pytz

from gemstone_analysis.config import get_absolute_path

LOG_PREFIX = "gemstone_analysis"
DETAILED_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
CONSOLE_FORMAT = "%(levelname)s: %(message)s"
DATE_FORMAT = "%Y-%m-%d %H:%M:%S"
QUIET_LOGGERS = ("urllib3", "requests", "openai", "httpx", "httpcore")


def run_log_path(log_dir: Union[str, Path], prefix: str = LOG_PREFIX, now: Optional[datetime] = None) -> Path:
    """Path of the log file for a run started at now (UTC)."""
    started = now or datetime.now(pytz.utc)
    return get_absolute_path(str(log_dir)) / f"{prefix}_{started.strftime('%Y%m%d_%H%M%S')}.log"


def setup_logging(
    level: str = "INFO",
    log_dir: Optional[Union[str, Path]] = None,
    prefix: str = LOG_PREFIX,
    log_to_console: bool = True,
) -> Optional[Path]:
    """
    Configure the root logger for one analysis run.

    Existing root handlers are replaced, so calling this twice does not
    duplicate output.

    Args:
        level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_dir: Directory for the run log file; relative paths resolve
            against the project root. No file is written when None
        prefix: File name prefix of the run log
        log_to_console: Whether to also log to stdout

    Returns:
        Path of the run log file, or None when file logging is off
    """
    numeric_level = getattr(logging, level.upper(), logging.INFO)
    detailed = logging.Formatter(fmt=DETAILED_FORMAT, datefmt=DATE_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(numeric_level)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    if log_to_console:
        console_handler = logging.StreamHandler(sys.stdout)
        console_handler.setLevel(numeric_level)
        # DEBUG runs get timestamps and logger names on the console too
        console_handler.setFormatter(detailed if numeric_level <= logging.DEBUG else logging.Formatter(CONSOLE_FORMAT))
        root_logger.addHandler(console_handler)

    log_path = None
    if log_dir is not None:
        log_path = run_log_path(log_dir, prefix)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_path, encoding="utf-8")
        file_handler.setLevel(numeric_level)
        file_handler.setFormatter(detailed)
        root_logger.addHandler(file_handler)

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    root_logger.info(f"Logging configured at {level.upper()} level")
    if log_path is not None:
        root_logger.info(f"Logging to file: {log_path}")
    return log_path
