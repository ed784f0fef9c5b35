"""
Logging setup for Duet.

One main log (console + rotating file). The call library logs under the
'duet-call' facility and the XMPP relay under 'duet-xmpp'; both write to the
same main log without propagating to the root logger.
"""

import logging
import sys
import time
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

from .paths import get_paths


# Log format
LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
LOG_DATE_FORMAT = '%Y-%m-%d %H:%M:%S'

# Maximum log file size before rotation (10 MB)
MAX_LOG_SIZE = 10 * 1024 * 1024

# Number of backup files to keep
BACKUP_COUNT = 5

# Library facilities that share the main log
LIBRARY_FACILITIES = ('duet-call', 'duet-xmpp')


def _attach_handlers(logger: logging.Logger, level: int, log_path: Optional[Path]):
    formatter = logging.Formatter(LOG_FORMAT, LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.setFormatter(formatter)
    logger.addHandler(console_handler)

    if log_path is not None:
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_SIZE,
            backupCount=BACKUP_COUNT,
            encoding='utf-8'
        )
        file_handler.setLevel(level)
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def setup_main_logger(log_level: str = 'INFO', log_path: Optional[Path] = None,
                      log_to_file: bool = True) -> logging.Logger:
    """
    Setup the main application logger and the library facilities.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_path: Log file (default: <log_dir>/main.log)
        log_to_file: Disable to log to the console only

    Returns:
        Main logger instance
    """
    level = getattr(logging, log_level.upper())
    if log_to_file and log_path is None:
        log_path = get_paths().main_log_path()
    if not log_to_file:
        log_path = None

    logger = logging.getLogger('duet')
    logger.setLevel(level)
    logger.handlers.clear()
    _attach_handlers(logger, level, log_path)
    logger.info(f"Main logger initialized (level: {log_level}, log: {log_path or 'console only'})")

    for facility in LIBRARY_FACILITIES:
        library_logger = logging.getLogger(facility)
        library_logger.setLevel(level)
        library_logger.handlers.clear()
        library_logger.propagate = False
        _attach_handlers(library_logger, level, log_path)
    logger.info(f"Library loggers configured (facilities: {', '.join(f + '.*' for f in LIBRARY_FACILITIES)})")

    # Log uncaught exceptions to the main log instead of just stderr
    def exception_hook(exc_type, exc_value, exc_traceback):
        if issubclass(exc_type, KeyboardInterrupt):
            sys.__excepthook__(exc_type, exc_value, exc_traceback)
            return
        logger.critical("Uncaught exception:", exc_info=(exc_type, exc_value, exc_traceback))

    sys.excepthook = exception_hook
    logger.info("Global exception hook configured")

    return logger


def get_call_logger(call_id: str) -> logging.Logger:
    """Per-call child of the duet-call facility."""
    return logging.getLogger(f'duet-call.{call_id[:8]}')


def set_log_level(logger_name: str, level: str):
    """
    Change log level for a specific logger.

    Args:
        logger_name: Logger name (e.g., 'duet-call')
        level: New log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
    """
    logger = logging.getLogger(logger_name)
    logger.setLevel(getattr(logging, level.upper()))
    for handler in logger.handlers:
        handler.setLevel(getattr(logging, level.upper()))
    logger.info(f"Log level changed to {level.upper()}")


def cleanup_old_logs(retention_days: int, log_dir: Optional[Path] = None) -> int:
    """
    Delete log files older than the retention period.

    Args:
        retention_days: Number of days to retain logs (0 = keep forever)
        log_dir: Directory to clean (default: configured log dir)

    Returns:
        Number of deleted files
    """
    if retention_days <= 0:
        return 0

    log_dir = log_dir or get_paths().log_dir
    cutoff_time = time.time() - (retention_days * 86400)
    logger = logging.getLogger('duet')

    deleted_count = 0
    for log_file in log_dir.glob('*.log*'):
        if log_file.stat().st_mtime < cutoff_time:
            try:
                log_file.unlink()
                deleted_count += 1
            except OSError as e:
                logger.warning(f"Failed to delete old log {log_file}: {e}")

    if deleted_count > 0:
        logger.info(f"Cleaned up {deleted_count} old log files (retention: {retention_days} days)")
    return deleted_count
