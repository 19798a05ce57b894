"""Rotating logger setup for the upgrade orchestrator."""

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Union

LOG_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
LOG_DATEFMT = "%Y-%m-%dT%H:%M:%S%z"


def setup_logger(
    name: str = "upgrader",
    log_file: Union[str, Path] = "./logs/upgrader.log",
    max_bytes: int = 10 * 1024 * 1024,  # 10MB
    backup_count: int = 3,
    level: int = logging.INFO,
) -> logging.Logger:
    """Attach a rotating file handler and a console handler to the named logger.

    The console stream ends up in the RMM task transcript. If the log file
    cannot be opened (read-only volume, a file where the directory should
    be), the logger keeps the console handler only and says so.

    Args:
        name: Logger name; services log to children named <name>.<service>
        log_file: Path to log file (directory created if missing)
        max_bytes: Max size before rotation
        backup_count: Number of rotated files to keep
        level: Logging level (DEBUG with --verbose, INFO otherwise)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)

    # A second call (e.g. --verbose after a config reload) only adjusts levels
    if logger.handlers:
        for handler in logger.handlers:
            handler.setLevel(level)
        return logger

    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt=LOG_DATEFMT)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    log_path = Path(log_file)
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path, maxBytes=max_bytes, backupCount=backup_count, encoding="utf-8"
        )
    except OSError as e:
        logger.warning(f"Cannot open log file {log_path} ({e}), logging to console only")
        return logger

    file_handler.setLevel(level)
    file_handler.setFormatter(formatter)
    logger.addHandler(file_handler)
    return logger
