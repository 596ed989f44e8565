"""
Pulse Migrator Logging Configuration

Configurable logging with debug mode support and secret masking.
"""

import os
import logging
import sys
from pathlib import Path
from datetime import datetime
from typing import Optional

from pulse_migrator.ui import mask_secrets


# Check for debug mode
DEBUG_MODE = os.environ.get("PULSE_DEBUG", "").lower() in ("1", "true", "yes")

ROOT_LOGGER = "pulse_migrator"


class SecretMaskingFormatter(logging.Formatter):
    """Formatter that masks secrets in log messages."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        return mask_secrets(message)


def _env_level() -> Optional[int]:
    name = os.environ.get("PULSE_LOG_LEVEL", "").upper()
    if name in ("DEBUG", "INFO", "WARNING", "ERROR"):
        return getattr(logging, name)
    return None


def setup_logging(
    level: Optional[int] = None,
    log_file: Optional[Path] = None,
    quiet: bool = False
) -> logging.Logger:
    """Set up logging configuration.

    Args:
        level: Logging level (default: PULSE_LOG_LEVEL, DEBUG if PULSE_DEBUG, else WARNING)
        log_file: Optional path to log file
        quiet: If True, suppress console output

    Returns:
        Configured logger
    """
    if level is None:
        level = _env_level()
    if level is None:
        # The CLI renders events itself; console logging only adds noise
        level = logging.DEBUG if DEBUG_MODE else logging.WARNING

    logger = logging.getLogger(ROOT_LOGGER)
    logger.setLevel(logging.DEBUG if log_file else level)

    logger.handlers.clear()

    if not quiet:
        console_handler = logging.StreamHandler(sys.stderr)
        console_handler.setLevel(level)

        if DEBUG_MODE:
            console_format = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
        else:
            console_format = "%(message)s"

        console_handler.setFormatter(SecretMaskingFormatter(console_format))
        logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        file_handler.setLevel(logging.DEBUG)
        file_format = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d: %(message)s"
        file_handler.setFormatter(SecretMaskingFormatter(file_format))
        logger.addHandler(file_handler)

    return logger


def get_logger(name: str = ROOT_LOGGER) -> logging.Logger:
    """Get a logger under the pulse_migrator namespace.

    Args:
        name: Logger name (will be prefixed with 'pulse_migrator.')

    Returns:
        Logger instance
    """
    if not name.startswith(ROOT_LOGGER):
        name = f"{ROOT_LOGGER}.{name}"
    return logging.getLogger(name)


def get_log_path(logs_dir: Path) -> Path:
    """Get the default log file path."""
    return logs_dir / f"pulse-migrator-{datetime.now().strftime('%Y-%m-%d')}.log"


# Environment variable documentation
ENV_VARS = {
    "PULSE_DEBUG": {
        "description": "Enable debug mode with verbose logging",
        "values": ["1", "true", "yes"],
        "default": "false"
    },
    "PULSE_HOME": {
        "description": "Override the application root (config, drivers, backups, logs)",
        "default": "~/.pulse-migrator"
    },
    "PULSE_LOG_LEVEL": {
        "description": "Set console logging level",
        "values": ["DEBUG", "INFO", "WARNING", "ERROR"],
        "default": "WARNING"
    },
    "PULSE_SOURCE_KEY": {
        "description": "Service role key of the source project",
    },
    "PULSE_SOURCE_DB_URL": {
        "description": "Postgres connection string of the source project",
    },
    "PULSE_TARGET_KEY": {
        "description": "Service role key of the target project",
    },
    "GITHUB_TOKEN": {
        "description": "Token for release manifest requests (raises the GitHub rate limit)",
    },
}
