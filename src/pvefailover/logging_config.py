"""Logging setup for command-line use of pvefailover."""

import os
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

DEFAULT_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"


def setup_logging(level: Optional[str] = None, log_file: Optional[str] = None) -> None:
    """Configure the root logger.

    Library modules only create loggers; handlers are installed here, by the CLI.
    """
    log_level = (level or os.getenv("PVEFAILOVER_LOG_LEVEL", "INFO")).upper()
    log_format = os.getenv("PVEFAILOVER_LOG_FORMAT", DEFAULT_FORMAT)
    log_file = log_file or os.getenv("PVEFAILOVER_LOG_FILE")

    handlers = [logging.StreamHandler()]
    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        handlers.append(
            logging.handlers.RotatingFileHandler(
                log_file,
                maxBytes=5 * 1024 * 1024,  # 5MB
                backupCount=3,
            )
        )

    logging.basicConfig(
        level=getattr(logging, log_level, logging.INFO),
        format=log_format,
        handlers=handlers,
        force=True,
    )

    # Request-level chatter from the HTTP stack
    for noisy in ("httpx", "httpcore", "hpack"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Return a logger for the given module."""
    return logging.getLogger(name)
