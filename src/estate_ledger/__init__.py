"""Ledger and reconciliation engine over the estate transaction workbook.

Importing the package sets up the shared ``log`` used by every module. Log
records go to a rotating file and, from WARNING upwards, to stderr. The log
directory and the file level can be moved with ``ESTATE_LEDGER_LOG_DIR`` and
``ESTATE_LEDGER_LOG_LEVEL``.
"""

import logging
import os
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path

__version__ = "0.1.0"

PROJECT_ROOT = Path(__file__).resolve().parents[2]
LOG_DIR = Path(os.environ.get("ESTATE_LEDGER_LOG_DIR", PROJECT_ROOT / ".logs"))
LOG_FILE = LOG_DIR / "estate_ledger.log"
LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"


def _file_level() -> int:
    name = os.environ.get("ESTATE_LEDGER_LOG_LEVEL", "INFO").upper()
    level = logging.getLevelName(name)
    return level if isinstance(level, int) else logging.INFO


def _file_handler(formatter: logging.Formatter, level: int) -> logging.Handler | None:
    try:
        LOG_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    except OSError as exc:
        print(f"Warning: ledger log file disabled ({LOG_FILE}): {exc}", file=sys.stderr)
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _configure_logging() -> logging.Logger:
    """Attach the file and console handlers once per process."""

    logger = logging.getLogger(__name__)
    if logger.handlers:
        return logger

    level = _file_level()
    logger.setLevel(min(level, logging.WARNING))
    formatter = logging.Formatter(fmt=LOG_FORMAT, datefmt="%Y-%m-%d %H:%M:%S")

    file_handler = _file_handler(formatter, level)
    if file_handler is not None:
        logger.addHandler(file_handler)

    console = logging.StreamHandler(sys.stderr)
    console.setLevel(logging.WARNING)
    console.setFormatter(formatter)
    logger.addHandler(console)
    return logger


log = _configure_logging()
log.debug("estate_ledger %s logging to %s", __version__, LOG_FILE)
