from __future__ import annotations

import json
import logging
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any

from core.config import AppConfig


LOGGER_NAME = "ge_ai_trader"

PACKAGE_LOGGERS: tuple[str, ...] = (
    "adaptive",
    "features",
    "interfaces",
    "model_registry",
    "models",
    "storage",
    "trading",
)


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "ts": self.formatTime(record, datefmt="%Y-%m-%dT%H:%M:%S"),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False)


def setup_logger(config: AppConfig) -> logging.Logger:
    """Configure the project logger and the package loggers underneath it.

    Module loggers (``logging.getLogger(__name__)``) live under top-level package
    names, so the same handlers are attached to each of them.
    """
    logger = logging.getLogger(LOGGER_NAME)
    logger.setLevel(config.log_level.upper())

    if logger.handlers:
        return logger

    text_formatter = logging.Formatter(
        fmt="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )

    json_formatter = _JsonFormatter()

    handlers: list[logging.Handler] = []

    console = logging.StreamHandler()
    if config.console_log_format.lower() == "json":
        console.setFormatter(json_formatter)
    else:
        console.setFormatter(text_formatter)
    handlers.append(console)

    log_dir: Path = config.log_dir
    log_dir.mkdir(parents=True, exist_ok=True)
    file_path = log_dir / config.log_file

    file_handler = RotatingFileHandler(
        filename=str(file_path),
        maxBytes=10 * 1024 * 1024,
        backupCount=5,
        encoding="utf-8",
    )
    file_handler.setFormatter(text_formatter)
    handlers.append(file_handler)

    if config.enable_json_file_log:
        json_file_path = log_dir / config.json_log_file
        json_file_handler = RotatingFileHandler(
            filename=str(json_file_path),
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
            encoding="utf-8",
        )
        json_file_handler.setFormatter(json_formatter)
        handlers.append(json_file_handler)

    for name in (LOGGER_NAME, *PACKAGE_LOGGERS):
        target = logging.getLogger(name)
        target.setLevel(config.log_level.upper())
        for h in handlers:
            target.addHandler(h)
        target.propagate = False

    return logger

