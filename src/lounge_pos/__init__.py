"""Bill lifecycle and reconciliation for the lounge point of sale."""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path


PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("LOUNGE_POS_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "lounge_pos.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _file_handler(formatter: logging.Formatter) -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: cannot write log file '{LOG_FILE}': {exc}", file=sys.stderr)
        return None
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the rotating file and stderr handlers to the package logger.

    The level comes from ``LOUNGE_POS_LOG_LEVEL`` (default INFO). Records still
    propagate to the root logger.
    """

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = os.environ.get("LOUNGE_POS_LOG_LEVEL", "INFO").upper()
    logger.setLevel(getattr(logging, level, logging.INFO))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


log = _configure_logging()
log.debug("Logging ready for lounge_pos (file: %s)", LOG_FILE)
