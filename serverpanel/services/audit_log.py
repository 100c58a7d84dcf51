from __future__ import annotations

import json
import logging
import time
from logging.handlers import RotatingFileHandler, TimedRotatingFileHandler
from typing import Any

from serverpanel.core import config

AUDIT_LOGGER_NAME = "panel_audit"
AUDIT_ROTATE_MAX_BYTES = 1024 * 1024
AUDIT_ROTATE_RETENTION = 5
CONSOLE_LOG_RETENTION_DAYS = 14

_LINE_FORMAT = logging.Formatter("%(asctime)s | %(levelname)s | %(message)s", datefmt="%Y-%m-%d %H:%M:%S")

_LEVELS = {"info": logging.INFO, "warning": logging.WARNING, "error": logging.ERROR}


def get_audit_logger() -> logging.Logger:
    """Dedicated JSON-lines logger for lifecycle requests."""
    logger = logging.getLogger(AUDIT_LOGGER_NAME)
    if not logger.handlers:
        config.LOGS_DIR.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(
            config.LOGS_DIR / "panel_audit.log",
            maxBytes=AUDIT_ROTATE_MAX_BYTES,
            backupCount=AUDIT_ROTATE_RETENTION,
            encoding="utf-8",
        )
        handler.setFormatter(_LINE_FORMAT)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger


def audit_event(*, action: str, server_id: str = "", result: str = "", extra: dict[str, Any] | None = None) -> None:
    payload: dict[str, Any] = {
        "ts": int(time.time()),
        "action": action,
        "server_id": server_id,
        "result": result,
    }
    if extra:
        payload.update(extra)
    get_audit_logger().info(json.dumps(payload, ensure_ascii=False))


def get_console_file_logger(server_id: str) -> logging.Logger:
    """Per-server console file, rotated daily."""
    logger = logging.getLogger(f"panel_console.{server_id}")
    if not logger.handlers:
        console_dir = config.LOGS_DIR / "servers"
        console_dir.mkdir(parents=True, exist_ok=True)
        handler = TimedRotatingFileHandler(
            console_dir / f"{server_id}.log",
            when="midnight",
            backupCount=CONSOLE_LOG_RETENTION_DAYS,
            encoding="utf-8",
        )
        handler.setFormatter(_LINE_FORMAT)
        logger.addHandler(handler)
        logger.setLevel(logging.INFO)
        logger.propagate = False
    return logger


def write_console_line(server_id: str, level: str, message: str) -> None:
    get_console_file_logger(server_id).log(_LEVELS.get(level, logging.INFO), message)


def close_console_file_logger(server_id: str) -> None:
    logger = logging.getLogger(f"panel_console.{server_id}")
    for handler in list(logger.handlers):
        logger.removeHandler(handler)
        handler.close()


def close_file_loggers() -> None:
    """Detach and close every panel file handler so the next use reopens under LOGS_DIR."""
    names = [AUDIT_LOGGER_NAME]
    names += [name for name in logging.root.manager.loggerDict if name.startswith("panel_console.")]
    for name in names:
        logger = logging.getLogger(name)
        for handler in list(logger.handlers):
            logger.removeHandler(handler)
            handler.close()
