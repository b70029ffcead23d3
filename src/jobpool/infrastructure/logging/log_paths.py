"""Centralized log path management for jobpool."""

from pathlib import Path

import platformdirs


def get_log_dir() -> Path:
    """Get the system-appropriate log directory for jobpool.

    Returns:
        Path to the log directory (created if it doesn't exist)
        - Windows: %LOCALAPPDATA%/jobpool/Logs
        - macOS: ~/Library/Logs/jobpool
        - Linux: ~/.local/state/jobpool/log
    """
    log_dir = Path(platformdirs.user_log_dir("jobpool", appauthor=False))
    log_dir.mkdir(parents=True, exist_ok=True)
    return log_dir


def get_main_log_path() -> Path:
    return get_log_dir() / "jobpool.log"
