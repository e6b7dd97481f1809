from __future__ import annotations

import logging
import os
from logging.handlers import RotatingFileHandler
from pathlib import Path


LOG_FORMAT = "%(asctime)s | %(name)s | %(levelname)s | %(message)s"

_configured = False


def _ensure_base_logger() -> None:
    global _configured
    if _configured:
        return
    level = os.getenv("DEPLOY_LOG_LEVEL", "INFO").upper()
    level = getattr(logging, level, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    # basicConfig is a no-op when the root logger already has handlers
    logging.getLogger("deployer").setLevel(level)
    _configured = True


def get_logger(name: str, log_file: Path | None = None) -> logging.Logger:
    """Return a named logger, optionally also writing to ``log_file``.

    A logger keeps at most one file handler; asking for a different file
    swaps it.
    """
    _ensure_base_logger()
    logger = logging.getLogger(name)
    if log_file is None:
        return logger
    log_file = Path(log_file).resolve()
    for h in _file_handlers(logger):
        if Path(h.baseFilename) == log_file:
            return logger
        logger.removeHandler(h)
        h.close()
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(log_file, maxBytes=1_000_000, backupCount=3)
    handler.setFormatter(logging.Formatter(LOG_FORMAT))
    logger.addHandler(handler)
    return logger


def close_file_log(logger: logging.Logger) -> None:
    for h in _file_handlers(logger):
        logger.removeHandler(h)
        h.close()


def _file_handlers(logger: logging.Logger) -> list[RotatingFileHandler]:
    return [h for h in logger.handlers if isinstance(h, RotatingFileHandler)]
