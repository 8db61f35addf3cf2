"""Project logger: stderr plus a size-rotated file under ``GRAVITY_LOG_DIR``."""

from __future__ import annotations

import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path

from gravitygate.config.settings import settings

LOGGER_NAME = "gravitygate"
LOG_FORMAT = "%(asctime)s | %(levelname)s | %(name)s | %(message)s"
LOG_DATEFMT = "%Y-%m-%d %H:%M:%S"

_LEVELS = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "WARN": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}


def resolve_level(raw: str | None) -> int:
    return _LEVELS.get(str(raw or "").strip().upper(), logging.INFO)


def _file_handler(formatter: logging.Formatter, level: int) -> RotatingFileHandler | None:
    log_dir = Path(settings.log_dir)
    try:
        log_dir.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            log_dir / f"{LOGGER_NAME}.log",
            maxBytes=max(1, settings.log_file_max_mb) * 1024 * 1024,
            backupCount=max(0, settings.log_file_backups),
            encoding="utf-8",
        )
    except OSError:
        # 日志目录不可写（只读挂载等）时只保留 stderr
        return None
    handler.setLevel(level)
    handler.setFormatter(formatter)
    return handler


def _build_logger() -> logging.Logger:
    root = logging.getLogger(LOGGER_NAME)
    if root.handlers:
        return root

    level = resolve_level(settings.log_level)
    root.setLevel(level)
    formatter = logging.Formatter(LOG_FORMAT, datefmt=LOG_DATEFMT)

    console = logging.StreamHandler()
    console.setLevel(level)
    console.setFormatter(formatter)
    root.addHandler(console)

    file_handler = _file_handler(formatter, level)
    if file_handler is not None:
        root.addHandler(file_handler)

    root.propagate = False
    return root


logger = _build_logger()


def get_logger(name: str) -> logging.Logger:
    return logger.getChild(name)
