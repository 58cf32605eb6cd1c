#!/usr/bin/env python3
"""Logging configuration for odsync."""

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

LOG_FILE_MAX_BYTES = 5 * 1024 * 1024
LOG_FILE_BACKUPS = 3

_REDACTIONS = (
    (re.compile(r'(access_token|refresh_token|code)["\']?\s*[:=]\s*["\']?[\w\-\.]+',
                re.IGNORECASE), r'\1=***REDACTED***'),
    (re.compile(r'Bearer\s+[\w\-\.]+', re.IGNORECASE), 'Bearer ***REDACTED***'),
    # Upload session URLs are pre-authenticated through their query string
    (re.compile(r'(https://[^\s?]+)\?[^\s"\']+'), r'\1?***REDACTED***'),
)


def setup_logging(level: Optional[str] = None, log_file: Optional[Path] = None) -> None:
    """Setup logging for the CLI and the daemon.

    Console output goes to stdout at the requested level. The optional
    log file always receives DEBUG records, including the name of the
    transfer thread that emitted them, and is rotated so a long-running
    daemon cannot fill the disk.

    Args:
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
               If None, reads from ODSYNC_LOG_LEVEL env var, defaults to INFO
        log_file: Optional path to log file. If None, logs to console only
    """
    if level is None:
        level = os.environ.get('ODSYNC_LOG_LEVEL', 'INFO')
    level = level.upper()
    numeric_level = getattr(logging, level, logging.INFO)

    detailed_formatter = logging.Formatter(
        fmt='%(asctime)s - %(threadName)s - %(name)s - %(levelname)s - '
            '[%(filename)s:%(lineno)d] - %(message)s',
        datefmt='%Y-%m-%d %H:%M:%S'
    )
    simple_formatter = logging.Formatter(
        fmt='%(asctime)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S'
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG if log_file else numeric_level)
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(numeric_level)
    console_handler.setFormatter(
        detailed_formatter if numeric_level == logging.DEBUG else simple_formatter)
    root_logger.addHandler(console_handler)

    if log_file:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(log_file, maxBytes=LOG_FILE_MAX_BYTES,
                                           backupCount=LOG_FILE_BACKUPS)
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(detailed_formatter)
        root_logger.addHandler(file_handler)

    # Third-party chatter (connection pool, inotify) stays at WARNING
    for name in ('urllib3', 'requests', 'watchdog'):
        logging.getLogger(name).setLevel(logging.WARNING)

    logger = logging.getLogger(__name__)
    logger.info(f"odsync logging initialized at {level} level")
    if log_file:
        logger.info(f"Logging to file: {log_file}")


def sanitize_for_log(text: str) -> str:
    """Remove credentials from text before it is logged or raised.

    Redacts OAuth token fields, bearer headers and the query string of
    pre-authenticated upload URLs.
    """
    for pattern, replacement in _REDACTIONS:
        text = pattern.sub(replacement, text)
    return text
