"""Logging configuration."""
import logging
import sys
from pathlib import Path
from typing import Optional

import structlog

from arena.core.config import logging_config


def setup_logging(log_level: Optional[str] = None, log_file: Optional[str] = None):
    """Configure structured logging.

    Simulation events are rendered as JSON lines on stdout and mirrored
    into the configured log file.
    """
    level_name = (log_level or logging_config.log_level).upper()
    level = getattr(logging, level_name, logging.INFO)
    log_file = log_file or logging_config.log_file

    # Create logs directory
    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)

    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=sys.stdout,
        level=level,
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            structlog.processors.UnicodeDecoder(),
            structlog.processors.JSONRenderer(default=str),
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    # Add file handler
    file_handler = logging.FileHandler(log_file)
    file_handler.setLevel(level)

    root_logger = logging.getLogger()
    root_logger.addHandler(file_handler)
