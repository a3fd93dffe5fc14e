"""Logging helpers for tddloop."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

__all__ = ["setup_logger", "DEFAULT_LOG_FILE"]

DEFAULT_LOG_FILE = Path(".codex") / "logs" / "tddloop.log"
CONSOLE_FORMAT = "[%(levelname).1s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s: %(message)s"
MAX_LOG_BYTES = 5 * 1024 * 1024
LOG_BACKUP_COUNT = 3


def setup_logger(
    name: str = "tddloop",
    verbose: bool = False,
    log_file: str | Path | bool | None = None,
) -> logging.Logger:
    """Configure and return the project logger.

    Args:
        name: Logger name; child loggers created with ``logging.getLogger(__name__)``
            inside the package inherit its handlers.
        verbose: ``True`` enables INFO logs on the console; ``False`` keeps WARNING+.
        log_file: ``None``/``False`` disables file logging, ``True`` uses
            ``.codex/logs/tddloop.log``, a ``str``/``Path`` selects a custom file.
    """
    logger = logging.getLogger(name)
    level = logging.INFO if verbose else logging.WARNING

    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()

    logger.setLevel(logging.DEBUG)
    logger.propagate = False

    console_handler = logging.StreamHandler()
    console_handler.setLevel(level)
    console_handler.setFormatter(logging.Formatter(CONSOLE_FORMAT))
    logger.addHandler(console_handler)

    log_path = _resolve_log_path(log_file)
    if log_path is not None:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        file_handler = RotatingFileHandler(
            log_path,
            maxBytes=MAX_LOG_BYTES,
            backupCount=LOG_BACKUP_COUNT,
            encoding="utf-8",
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.setFormatter(logging.Formatter(FILE_FORMAT))
        logger.addHandler(file_handler)

    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("openai").setLevel(logging.WARNING)

    return logger


def _resolve_log_path(log_file: str | Path | bool | None) -> Path | None:
    if log_file is None or log_file is False:
        return None
    if log_file is True:
        return DEFAULT_LOG_FILE
    return Path(log_file).expanduser()
