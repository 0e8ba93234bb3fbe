"""
Centralized logging configuration for the MailSync service.

This module provides logging configuration for the service and the operator
tools, ensuring consistent logging behavior across all components.
"""

import os
import logging
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

# Load environment variables
load_dotenv()

NOISY_LOGGERS = (
    'urllib3',
    'requests',
    'googleapiclient.discovery_cache',
    'google.auth.transport.requests',
    'msal',
    'httpx',
)


def get_log_dir() -> str:
    """
    Get the configured log directory from environment variables.

    Returns:
        str: The log directory path (defaults to "logs" if not configured)
    """
    return os.getenv("LOG_DIR", "logs")


def _quiet_libraries() -> None:
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def setup_logging(log_dir: Optional[str] = None, log_level: int = logging.INFO) -> None:
    """
    Set up centralized logging configuration for the service.

    Args:
        log_dir: Log directory override (defaults to configured LOG_DIR)
        log_level: Root logging level
    """
    if log_dir is None:
        log_dir = get_log_dir()

    log_path = Path(log_dir)
    log_path.mkdir(parents=True, exist_ok=True)

    logging.basicConfig(
        level=log_level,
        format='%(asctime)s - %(name)s - %(levelname)s - %(threadName)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_path / 'mailsync.log')
        ]
    )
    _quiet_libraries()

    logger = logging.getLogger(__name__)
    logger.info(f"Logging configured - log directory: {log_path.absolute()}")


def setup_script_logging(
    script_name: Optional[str] = None,
    log_level: int = logging.INFO,
    log_dir: Optional[str] = None
) -> logging.Logger:
    """
    Set up logging for operator tools using the configured LOG_DIR.

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
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        handlers=[
            logging.StreamHandler(),
            logging.FileHandler(log_path / f'{script_name}.log')
        ]
    )
    _quiet_libraries()

    logger = logging.getLogger(script_name)
    logger.info(f"Logging configured for {script_name} - log directory: {log_path.absolute()}")
    return logger
