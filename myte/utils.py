"""
Helper Functions and Utilities

This module provides common utility functions used throughout the myte
package: logging configuration, compute discovery, path handling and
human-readable formatting.

Key Utilities:
1. Logging Configuration
   - Centralized logging setup for console and run log file
   - Consistent timestamp format shared with the event log

2. Compute Discovery
   - Physical (not hyperthreaded) core count available to the process

3. File Operations
   - Cross-platform path handling using pathlib
   - Filename sanitization for job identifiers
   - Output directory creation and empty-directory cleanup
   - Tail extraction from captured tool output

4. Time Formatting
   - Elapsed-time and HH:MM:SS formatting

Example Usage:
    >>> from myte.utils import setup_logging, physical_core_count
    >>> logger = setup_logging(log_level="DEBUG", log_file="myte.log")
    >>> physical_core_count() >= 1
    True
"""

from typing import Optional, Union
from pathlib import Path
import logging
import os
import re
import sys
from datetime import datetime

import psutil

# Configure module logger
logger = logging.getLogger(__name__)

LOG_DATE_FORMAT = "%Y-%m-%d %H:%M:%S"


# ============================================================================
# Logging Configuration
# ============================================================================

def setup_logging(
    log_level: str = "INFO",
    log_file: Optional[Union[str, Path]] = None,
    format_string: Optional[str] = None,
) -> logging.Logger:
    """
    Configure logging for myte.

    Sets up the package logger with console and optional file output.

    Parameters
    ----------
    log_level : str, optional
        Logging level: DEBUG, INFO, WARNING, ERROR, or CRITICAL (default: INFO)
    log_file : str or Path, optional
        Path to log file. If None, logs only to console (default: None)
    format_string : str, optional
        Custom format string for log messages. If None, uses default format

    Returns
    -------
    logging.Logger
        Configured logger instance

    Notes
    -----
    The default format includes timestamp, level, and message:
    [2025-11-03 10:30:45] INFO: Starting gene tree estimation
    """
    package_logger = logging.getLogger("myte")
    package_logger.setLevel(getattr(logging, log_level.upper()))

    # Remove existing handlers to avoid duplicates
    for handler in list(package_logger.handlers):
        package_logger.removeHandler(handler)
        handler.close()

    if format_string is None:
        format_string = "[%(asctime)s] %(levelname)s: %(message)s"

    formatter = logging.Formatter(format_string, datefmt=LOG_DATE_FORMAT)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(getattr(logging, log_level.upper()))
    console_handler.setFormatter(formatter)
    package_logger.addHandler(console_handler)

    if log_file is not None:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.FileHandler(log_path, mode='a', encoding='utf-8')
        file_handler.setLevel(getattr(logging, log_level.upper()))
        file_handler.setFormatter(formatter)
        package_logger.addHandler(file_handler)

        package_logger.debug(f"Logging to file: {log_path}")

    return package_logger


# ============================================================================
# Compute Discovery
# ============================================================================

def physical_core_count() -> int:
    """
    Number of physical CPU cores available to this process.

    Hyperthreaded siblings are not counted. When the process is pinned to a
    subset of logical CPUs, the subset is converted to physical cores with
    the machine's physical/logical ratio.

    Returns
    -------
    int
        Physical core count, at least 1

    Examples
    --------
    On a host with 8 physical cores and 16 logical CPUs, a process pinned
    to 4 logical CPUs gets 2.
    """
    logical = psutil.cpu_count(logical=True) or os.cpu_count() or 1
    physical = psutil.cpu_count(logical=False) or logical

    allowed = logical
    # cpu_affinity is not available on macOS
    if hasattr(psutil.Process, "cpu_affinity"):
        allowed = len(psutil.Process().cpu_affinity()) or logical

    if allowed < logical:
        return max(1, allowed * physical // logical)
    return max(1, physical)


# ============================================================================
# File I/O and Path Handling
# ============================================================================

def create_output_directory(output_dir: Union[str, Path]) -> Path:
    """
    Create output directory if it doesn't exist.

    Parameters
    ----------
    output_dir : Union[str, Path]
        Path to output directory

    Returns
    -------
    Path
        Path object for output directory

    Raises
    ------
    OSError
        If directory cannot be created due to permissions or other issues
    """
    path = Path(output_dir)

    try:
        path.mkdir(parents=True, exist_ok=True)
        logger.debug(f"Created/verified output directory: {path}")
        return path
    except OSError as e:
        logger.error(f"Failed to create directory {path}: {e}")
        raise


def sanitize_filename(filename: str) -> str:
    """
    Sanitize a string for use as a file or directory name.

    Every character outside letters, digits, ``-`` and ``_`` becomes ``_``.

    Examples
    --------
    >>> sanitize_filename("locus 12.nexus")
    'locus_12_nexus'
    """
    sanitized = re.sub(r'[^A-Za-z0-9_-]', '_', filename)
    sanitized = sanitized.strip('_')
    return sanitized or "unnamed"


def remove_empty_directories(base_path: Path) -> None:
    """
    Remove empty directories recursively, starting from leaf directories.

    The base directory itself is kept.

    Parameters
    ----------
    base_path : Path
        Base directory to scan for empty subdirectories
    """
    base_path = Path(base_path)
    if not base_path.exists():
        return

    for dirpath, dirnames, filenames in os.walk(base_path, topdown=False):
        dir_path = Path(dirpath)

        if dir_path == base_path:
            continue

        try:
            if not any(dir_path.iterdir()):
                dir_path.rmdir()
                logger.debug(f"Removed empty directory: {dir_path}")
        except OSError:
            # Directory not empty or can't be removed
            pass


def read_tail(path: Union[str, Path], n_lines: int = 20) -> str:
    """
    Return the last ``n_lines`` lines of a text file.

    Missing files yield an empty string. Undecodable bytes are replaced.
    """
    path = Path(path)
    if not path.exists():
        return ""

    with open(path, 'r', encoding='utf-8', errors='replace') as handle:
        lines = handle.read().splitlines()

    return "\n".join(lines[-n_lines:])


# ============================================================================
# Time and Formatting Utilities
# ============================================================================

def format_elapsed_time(seconds: float) -> str:
    """
    Format elapsed time in human-readable format.

    Examples
    --------
    >>> format_elapsed_time(45)
    '45s'
    >>> format_elapsed_time(3661)
    '1h 1m'
    """
    if seconds < 60:
        return f"{seconds:.0f}s"

    minutes = seconds / 60
    if minutes < 60:
        return f"{minutes:.1f}m"

    hours = minutes / 60
    minutes_remainder = minutes % 60

    if hours < 24:
        return f"{int(hours)}h {int(minutes_remainder)}m"

    days = hours / 24
    hours_remainder = hours % 24
    return f"{int(days)}d {int(hours_remainder)}h"


def format_duration(seconds: float) -> str:
    """
    Format a duration as HH:MM:SS.

    Examples
    --------
    >>> format_duration(3725)
    '01:02:05'
    """
    total = int(seconds)
    hours, remainder = divmod(total, 3600)
    minutes, secs = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}"


def get_timestamp() -> str:
    """
    Get current timestamp string in the log date format.

    Examples
    --------
    >>> timestamp = get_timestamp()
    >>> print(timestamp)
    2025-11-03 10:30:45
    """
    return datetime.now().strftime(LOG_DATE_FORMAT)
