"""
Utility functions for brig.

Includes logging setup and port elevation.
"""

import json
import logging
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from rich.console import Console
from rich.logging import RichHandler


# Global console for pretty output
console = Console(stderr=True)

PRIVILEGED_PORT_LIMIT = 1024


def setup_logging(
    log_level: str = "ERROR",
    log_file: Optional[Path] = None,
    log_format: str = "pretty",
) -> logging.Logger:
    """
    Set up logging for a brig run.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR)
        log_file: Optional file that also receives every record
        log_format: Format of the file handler, "structured" (JSON) or "pretty"

    Returns:
        Configured "brig" logger
    """
    logger = logging.getLogger("brig")
    logger.setLevel(getattr(logging, log_level.upper()))
    logger.handlers = []  # Clear existing handlers

    console_handler = RichHandler(console=console, rich_tracebacks=True, show_time=False)
    logger.addHandler(console_handler)

    if log_file is not None:
        log_file = Path(log_file).expanduser()
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file)
        if log_format == "structured":
            file_handler.setFormatter(StructuredFormatter())
        else:
            file_handler.setFormatter(
                logging.Formatter("%(asctime)s - %(name)s - %(levelname)s - %(message)s")
            )
        logger.addHandler(file_handler)

    return logger


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "thread": record.threadName,
            "message": record.getMessage(),
        }

        # Add extra fields if present
        for key in ("phase", "unit", "service", "reference"):
            if hasattr(record, key):
                log_data[key] = getattr(record, key)

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        return json.dumps(log_data)


def elevate_port(port: int, offset: int) -> int:
    """
    Move a privileged host port out of the privileged range.

    Ports below 1024 get offset added; others are returned unchanged.
    """
    if port < PRIVILEGED_PORT_LIMIT:
        return port + offset
    return port
