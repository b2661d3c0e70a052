"""
Configure logging for the application.

This module sets up the application's logging infrastructure with both console and file output.
It configures:
- A rotating file handler to manage log files
- A console handler for immediate feedback
- Log level based on the debug_mode / log_level configuration
- Custom log format with timestamps and source information

main.py calls setup_logging before anything else so the configuration
validation itself is recorded.
"""

import logging
import logging.handlers
import os
import sys
from typing import Optional

LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(module)s.%(funcName)s:%(lineno)d - %(message)s"
DEFAULT_LOG_FILE = "logs/embycord.log"

# Third-party loggers that are too chatty at DEBUG
NOISY_LOGGERS = ("discord.gateway", "discord.http", "urllib3.connectionpool")


def resolve_log_level(debug_mode: bool, log_level: Optional[str] = None) -> int:
    """debug_mode wins over log_level; unknown level names fall back to INFO."""
    if debug_mode:
        return logging.DEBUG
    if not log_level:
        return logging.INFO
    level = logging.getLevelName(log_level.upper())
    return level if isinstance(level, int) else logging.INFO


def setup_logging(
    debug_mode: bool = False,
    log_file: Optional[str] = DEFAULT_LOG_FILE,
    log_level: Optional[str] = "INFO",
) -> None:
    """
    Configure logging with rotating file and stream handlers.

    This function sets up the logging system with:
    - A root logger configured with the appropriate log level
    - A rotating file handler that limits log file size and keeps backups
    - A console output handler for immediate feedback
    - Proper error handling for file access issues

    Args:
        debug_mode: Log everything at DEBUG level
        log_file: Path of the rotating log file, directories are created
        log_level: Level name used when debug_mode is off
    """
    level = resolve_log_level(debug_mode, log_level)
    log_formatter = logging.Formatter(LOG_FORMAT)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    log_file = log_file if isinstance(log_file, str) and log_file else DEFAULT_LOG_FILE

    log_dir = os.path.dirname(log_file)
    if log_dir and not os.path.exists(log_dir):
        try:
            os.makedirs(log_dir)
        except OSError as e:
            print(
                f"Could not create log directory {log_dir}: {e}. Using current directory for logs.",
                file=sys.stderr,
            )
            log_file = os.path.basename(log_file)

    # Rotates log file when it reaches 5MB, keeps 5 backup files
    try:
        file_handler = logging.handlers.RotatingFileHandler(
            log_file, maxBytes=5 * 1024 * 1024, backupCount=5, encoding="utf-8"
        )
        file_handler.setFormatter(log_formatter)
        root_logger.addHandler(file_handler)
    except PermissionError:
        print(
            f"Error: Permission denied writing log file to {log_file}. Check permissions.",
            file=sys.stderr,
        )
    except OSError as e:
        print(f"Error setting up file logger: {e}", file=sys.stderr)

    stream_handler = logging.StreamHandler(sys.stdout)
    stream_handler.setFormatter(log_formatter)
    root_logger.addHandler(stream_handler)

    if level <= logging.DEBUG:
        for name in NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.INFO)

    logging.info(
        f"Logging setup complete. Level: {logging.getLevelName(level)}, File: {log_file}"
    )
