"""
Centralized logging configuration
"""

import logging
import sys
from typing import Optional

# Third-party loggers that flood INFO with per-request lines
NOISY_LOGGERS = (
    "aiohttp.access",
    "httpx",
    "httpcore",
    "azure",
    "semantic_kernel",
)


def setup_logging(name: Optional[str] = None, level: str = "INFO") -> logging.Logger:
    """
    Setup structured logging with consistent format

    Args:
        name: Logger name (usually __name__, or None for the root logger)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)

    Returns:
        Configured logger instance
    """
    logger = logging.getLogger(name)
    resolved = getattr(logging, level.upper(), logging.INFO)

    for noisy in NOISY_LOGGERS:
        logging.getLogger(noisy).setLevel(max(resolved, logging.WARNING))

    # Avoid duplicate handlers
    if logger.handlers:
        logger.setLevel(resolved)
        return logger

    logger.setLevel(resolved)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(resolved)

    # Format: timestamp - name - level - message
    formatter = logging.Formatter(
        fmt='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    handler.setFormatter(formatter)

    logger.addHandler(handler)

    return logger


def short_id(value: Optional[str]) -> str:
    """Shorten opaque tokens (session ids, record ids) for log lines."""
    if not value:
        return "-"
    return value[:8]
