"""
Centralized Logging Configuration

Provides unified logging configuration with correlation ID support.
Each organization run sets its own correlation ID so interleaved log lines
from a multi-organization pass can be told apart.
"""

import os
import sys
import uuid
import socket
import time
import logging
from contextvars import ContextVar
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional
from dotenv import load_dotenv

load_dotenv(override=True)

# Default log levels - Use standard LOG_LEVEL variable with fallbacks
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
DEFAULT_CONSOLE_LEVEL = os.getenv("CONSOLE_LOG_LEVEL", LOG_LEVEL).upper()
# File logging is always DEBUG unless explicitly overridden
DEFAULT_FILE_LEVEL = os.getenv("FILE_LOG_LEVEL", "DEBUG").upper()
LOG_FILE_NAME = "shadow_it_sync.log"

_CORRELATION_ID: ContextVar[Optional[str]] = ContextVar("correlation_id", default=None)

# Track configured loggers to prevent duplicate handlers
_CONFIGURED_LOGGERS = set()


def generate_correlation_id(prefix="cli"):
    """
    Generate a globally unique correlation ID.

    Args:
        prefix: Identifier prefix (default: 'cli')

    Returns:
        Unique correlation ID string
    """
    hostname = socket.gethostname().split('.')[-1]
    timestamp = int(time.time())
    random_part = uuid.uuid4().hex[:6]
    return f"{prefix}-{hostname}-{timestamp}-{random_part}"


def set_correlation_id(correlation_id: Optional[str]) -> None:
    """Set a correlation ID for the current context."""
    _CORRELATION_ID.set(correlation_id)


def get_correlation_id() -> Optional[str]:
    """Get the current correlation ID."""
    return _CORRELATION_ID.get()


def get_project_root() -> Path:
    """Get the project root directory."""
    file_dir = Path(__file__).resolve().parent
    current = file_dir
    while current.name != "src" and not (current / ".git").exists():
        parent = current.parent
        if parent == current:
            return file_dir.parent
        current = parent
    return current.parent if current.name == "src" else current


def get_default_log_dir() -> Path:
    """Get the default log directory."""
    logs_dir = Path(os.getenv("LOG_DIR", str(get_project_root() / "logs")))
    os.makedirs(logs_dir, exist_ok=True)
    return logs_dir


def _with_correlation(method):
    """Wrap a logger method so the active correlation ID prefixes the message."""
    def wrapper(msg, *args, **kwargs):
        correlation_id = get_correlation_id()
        if correlation_id:
            msg = f"[{correlation_id}] {msg}"
        return method(msg, *args, **kwargs)
    return wrapper


def get_logger(name: str, log_dir: Optional[Path] = None) -> logging.Logger:
    """
    Get a properly configured logger.

    Args:
        name: Logger name (typically __name__)
        log_dir: Directory for log files, defaults to the project logs directory

    Returns:
        Configured logger
    """
    logger = logging.getLogger(name)

    if name in _CONFIGURED_LOGGERS:
        return logger
    _CONFIGURED_LOGGERS.add(name)

    # Capture everything; filtering happens at handlers
    logger.setLevel(logging.DEBUG)

    for handler in logger.handlers[:]:
        logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(DEFAULT_CONSOLE_LEVEL)
    console_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        '%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(console_handler)

    log_dir = log_dir or get_default_log_dir()
    file_handler = RotatingFileHandler(
        os.path.join(log_dir, LOG_FILE_NAME),
        maxBytes=10*1024*1024,
        backupCount=5,
        encoding='utf-8'
    )
    file_handler.setLevel(DEFAULT_FILE_LEVEL)
    file_handler.setFormatter(logging.Formatter(
        '%(asctime)s - %(name)s - %(levelname)s - %(pathname)s:%(lineno)d - %(message)s',
        '%Y-%m-%d %H:%M:%S'
    ))
    logger.addHandler(file_handler)

    # Prevent duplicate logs
    if name != "root":
        logger.propagate = False

    logger.debug = _with_correlation(logger.debug)
    logger.info = _with_correlation(logger.info)
    logger.warning = _with_correlation(logger.warning)
    logger.error = _with_correlation(logger.error)
    logger.critical = _with_correlation(logger.critical)

    return logger


# Default module-level logger shared by the sync components
logger = get_logger("shadow_it_sync")
