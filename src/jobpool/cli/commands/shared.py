"""Shared utilities for CLI commands."""

import logging
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

from jobpool.infrastructure.logging.log_paths import get_main_log_path

# Console for log output - uses stderr to keep stdout for job results
cli_console = Console(file=sys.stderr)

LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def setup_logging(
    log_level_name: str,
    console_logging: bool = False,
    log_file: Path | None = None,
) -> None:
    """Configure logging for jobpool.

    Logs go to a rotating file in the system-appropriate log directory.
    Console logging can be enabled for debugging.

    Args:
        log_level_name: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        console_logging: If True, also log to stderr via Rich
        log_file: Log file to use instead of the default location
    """
    log_level = logging.getLevelName(log_level_name.upper())
    if log_file is None:
        log_file = get_main_log_path()

    root_logger = logging.getLogger()
    for handler in root_logger.handlers[:]:
        handler.close()
        root_logger.removeHandler(handler)

    file_handler = RotatingFileHandler(
        log_file,
        maxBytes=10 * 1024 * 1024,  # 10 MB
        backupCount=3,
        encoding="utf-8",
    )
    file_handler.setLevel(logging.DEBUG)
    file_handler.setFormatter(
        logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )
    )
    root_logger.addHandler(file_handler)

    if console_logging:
        console_handler = RichHandler(
            console=cli_console,
            rich_tracebacks=True,
            show_path=False,
        )
        console_handler.setLevel(log_level)
        root_logger.addHandler(console_handler)

    # Let handlers filter
    root_logger.setLevel(logging.DEBUG)
    logging.getLogger("jobpool").setLevel(log_level)
