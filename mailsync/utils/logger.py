"""
Centralized logging configuration for mail synchronization.

This module provides logging configuration and utilities for the entire
package, ensuring consistent logging behavior across all components.
"""

import os
import logging
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

_LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'
_NOISY_LOGGERS = ('httpx', 'httpcore', 'googleapiclient', 'google_auth_httplib2', 'urllib3')


def get_log_dir() -> str:
    """
    Get the configured log directory from environment variables.

    Returns:
        str: The log directory path (defaults to "logs" if not configured)
    """
    return os.getenv("LOG_DIR", "logs")


def _quiet_external_loggers() -> None:
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_script_logging(
    script_name: Optional[str] = None,
    log_level: int = logging.INFO,
    log_dir: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging for standalone scripts using the configured LOG_DIR.

    Args:
        script_name: Name of the script (defaults to "script")
        log_level: Logging level (defaults to INFO)
        log_dir: Log directory override (defaults to configured LOG_DIR)

    Returns:
        logging.Logger: Configured logger instance
    """
    if log_dir is None:
        log_dir = get_log_dir()
    if script_name is None:
        script_name = "script"

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format=_LOG_FORMAT,
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_path / f'{script_name}.log')
        ]
    )
    _quiet_external_loggers()

    logger = logging.getLogger(script_name)
    logger.info("Logging configured for %s - log directory: %s", script_name, log_path.absolute())
    return logger
