"""
Logging configuration for the TestKit host
"""

import logging
import sys
from pathlib import Path
from typing import Dict, Optional, Union
from logging.handlers import RotatingFileHandler


LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Level names accepted in configuration files
LEVEL_NAMES = {
    "none": logging.CRITICAL + 10,
    "error": logging.ERROR,
    "warn": logging.WARNING,
    "warning": logging.WARNING,
    "info": logging.INFO,
    "debug": logging.DEBUG,
    "trace": logging.DEBUG,
}


def parse_level(level: Union[int, str]) -> int:
    """
    Convert a configured level name to a logging level.

    Raises:
        ValueError: If the name is unknown
    """
    if isinstance(level, int):
        return level
    try:
        return LEVEL_NAMES[level.lower()]
    except KeyError:
        raise ValueError(f"Wrong logger level '{level}'")


def apply_logger_levels(logger_levels: Dict[str, Union[int, str, dict]]) -> None:
    """
    Set per-logger levels.

    Args:
        logger_levels: Logger name -> level, or -> {"level": level}
    """
    for name, setting in logger_levels.items():
        level = setting.get("level") if isinstance(setting, dict) else setting
        logging.getLogger(name).setLevel(parse_level(level))


def setup_logger(
    log_level: Union[int, str] = logging.INFO,
    log_dir: Optional[Union[str, Path]] = None,
    max_size_mb: int = 10,
    backup_count: int = 5,
    logger_levels: Optional[Dict[str, Union[int, str, dict]]] = None,
):
    """
    Setup application logger with rotating file handler.

    Args:
        log_level: Logging level or level name (default: INFO)
        log_dir: Directory for log files (default: ~/.testkit/logs)
        max_size_mb: Maximum log file size in MB before rotation (default: 10)
        backup_count: Number of backup files to keep (default: 5)
        logger_levels: Per-logger levels from the 'loggers' config section
    """
    log_level = parse_level(log_level)

    # Create logs directory
    log_dir = Path(log_dir) if log_dir else Path.home() / ".testkit" / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)

    # Main log file (rotating)
    log_file = log_dir / "testkit.log"

    # Error-only log file (rotating)
    error_log_file = log_dir / "testkit_errors.log"

    formatter = logging.Formatter(LOG_FORMAT)

    # Get root logger
    root_logger = logging.getLogger()
    root_logger.setLevel(log_level)

    # Clear existing handlers (in case of re-initialization)
    for handler in list(root_logger.handlers):
        root_logger.removeHandler(handler)
        handler.close()

    # Rotating file handler for main log
    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=max_size_mb * 1024 * 1024,
        backupCount=backup_count,
        encoding='utf-8'
    )
    file_handler.setLevel(log_level)
    file_handler.setFormatter(formatter)
    root_logger.addHandler(file_handler)

    # Rotating file handler for errors only
    error_handler = RotatingFileHandler(
        error_log_file,
        maxBytes=5 * 1024 * 1024,  # 5 MB for errors
        backupCount=3,
        encoding='utf-8'
    )
    error_handler.setLevel(logging.ERROR)
    error_handler.setFormatter(formatter)
    root_logger.addHandler(error_handler)

    # Console handler
    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(log_level)
    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    # Set specific module log levels
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("serial").setLevel(logging.WARNING)

    if logger_levels:
        apply_logger_levels(logger_levels)

    logger = logging.getLogger(__name__)
    logger.info(f"Logger initialized. Log file: {log_file}")
    return log_file
