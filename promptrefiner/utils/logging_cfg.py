from __future__ import annotations

import os
import sys
from pathlib import Path

from dotenv import load_dotenv
from loguru import logger

load_dotenv()
APP_NAME = os.getenv("APP_NAME", "promptrefiner")
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO")
LOG_ROTATION = os.getenv("LOG_ROTATION", "5 MB")
LOG_RETENTION = os.getenv("LOG_RETENTION", "3")


def _resolve_log_path(
    default_log_path: str | os.PathLike[str] | None,
) -> Path:
    """
    Resolve the log file path from LOG_PATH or the given default.

    Args:
        default_log_path (str | os.PathLike[str] | None): The default log file path.

    Returns:
        Path: The resolved log file path, with its parent directory created.
    """
    if default_log_path is None:
        default_log_path = (
            Path(__file__).resolve().parents[2] / ".logs" / f"{APP_NAME}.log"
        )

    env_log_path = os.getenv("LOG_PATH")
    log_path = Path(env_log_path) if env_log_path else Path(default_log_path)

    if log_path.is_dir() or not log_path.suffix:
        log_path = log_path / f"{APP_NAME}.log"

    log_path.parent.mkdir(parents=True, exist_ok=True)
    return log_path


def setup_logging(
    default_log_path: str | os.PathLike[str] | None = None,
    *,
    level: str | None = None,
    rotation: str | int | None = None,
    retention: str | int | None = None,
    console: bool = True,
) -> Path:
    """
    Configure loguru sinks for the application.

    Args:
        default_log_path (str | os.PathLike[str] | None, optional): The default log file path. Defaults to None.
        level (str | None, optional): Console log level. Defaults to LOG_LEVEL.
        rotation (str | int | None, optional): File rotation policy. Defaults to LOG_ROTATION.
        retention (str | int | None, optional): Number of rotated files kept. Defaults to LOG_RETENTION.
        console (bool, optional): Whether to log to stderr. Defaults to True.

    Returns:
        Path: The path to the log file.
    """
    log_path = _resolve_log_path(default_log_path)
    level = level or LOG_LEVEL
    rotation = rotation or LOG_ROTATION
    retention = retention if retention is not None else LOG_RETENTION
    retention = retention if isinstance(retention, int) else int(retention)

    logger.remove()

    if console:
        logger.add(
            sink=sys.stderr,
            level=level,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {name} | {message}",
        )

    logger.add(
        sink=log_path,
        rotation=rotation,
        retention=retention,
        encoding="utf-8",
        level="DEBUG",
        backtrace=True,
        diagnose=False,
        enqueue=True,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:<8} | {line:<4} | {name} | {message}",
    )

    return log_path
