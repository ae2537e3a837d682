"""Logging setup for the Culler worker"""

import os
import logging
import logging.handlers
from pathlib import Path
from typing import Optional

DETAILED_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(funcName)s:%(lineno)d - %(message)s'
SIMPLE_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'

MAX_LOG_BYTES = 10 * 1024 * 1024

# Client libraries that are chatty at INFO
QUIET_LOGGERS = ('aiohttp.access', 'aiohttp.client', 'aiosqlite')


def _rotating(path: Path, level: int, backups: int) -> logging.Handler:
    handler = logging.handlers.RotatingFileHandler(
        path, maxBytes=MAX_LOG_BYTES, backupCount=backups, encoding='utf-8'
    )
    handler.setLevel(level)
    handler.setFormatter(logging.Formatter(DETAILED_FORMAT))
    return handler


def setup_logging(service_name: str = "culler", log_level: Optional[str] = None,
                  log_dir: Optional[str] = None) -> None:
    """
    Configure root logging.

    The console always gets ``log_level`` and above. When a log directory
    is given (or LOG_DIR is set) everything also goes to
    ``<service_name>.log`` and errors to ``<service_name>_errors.log``,
    both rotated at 10MB.

    Args:
        service_name: Base name of the log files
        log_level: Console level, defaults to LOG_LEVEL or INFO
        log_dir: Directory for log files, defaults to LOG_DIR
    """
    log_level = (log_level or os.getenv("LOG_LEVEL", "INFO")).upper()
    log_dir = log_dir or os.getenv("LOG_DIR")

    root = logging.getLogger()
    root.setLevel(logging.DEBUG)
    root.handlers.clear()

    console = logging.StreamHandler()
    console.setLevel(getattr(logging, log_level, logging.INFO))
    console.setFormatter(logging.Formatter(SIMPLE_FORMAT))
    root.addHandler(console)

    if log_dir:
        path = Path(log_dir)
        path.mkdir(parents=True, exist_ok=True)
        root.addHandler(_rotating(path / f"{service_name}.log", logging.DEBUG, backups=5))
        root.addHandler(_rotating(path / f"{service_name}_errors.log", logging.ERROR, backups=3))

    for name in QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    logging.getLogger(__name__).info(
        f"Logging configured for {service_name} (level {log_level}, files: {log_dir or 'none'})"
    )
