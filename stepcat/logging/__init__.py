"""Structured logging helpers for stepcat components."""

from __future__ import annotations

import json
import logging
import os
import sys
import threading
from collections.abc import Callable, Mapping
from contextlib import ContextDecorator
from logging import Handler, LogRecord
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Any, Optional

_DEFAULT_MAX_BYTES = 10 * 1024 * 1024  # 10MB
_DEFAULT_BACKUP_COUNT = 5
_LOGGER_NAME = "stepcat"
_LOCK = threading.RLock()
_CONFIGURED = False
_FILE_HANDLER: Optional[Handler] = None

_LEVEL_COLORS = {
    "DEBUG": "\033[36m",  # cyan
    "INFO": "\033[32m",  # green
    "WARNING": "\033[33m",  # yellow
    "ERROR": "\033[31m",  # red
    "CRITICAL": "\033[41m",  # red background
}
_RESET_COLOR = "\033[0m"


class StepcatJsonFormatter(logging.Formatter):
    """JSON formatter that keeps execution metadata attached to each line."""

    default_time_format = "%Y-%m-%dT%H:%M:%S"

    def format(self, record: LogRecord) -> str:  # noqa: D401
        payload: dict[str, Any] = {
            "timestamp": self.formatTime(record, self.default_time_format),
            "level": record.levelname,
            "component": record.name,
            "message": record.getMessage(),
        }
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        metadata = record.__dict__.get("metadata")
        if isinstance(metadata, Mapping) and metadata:
            payload["metadata"] = dict(metadata)
        return json.dumps(payload, default=str, ensure_ascii=False)


class StepcatConsoleFormatter(logging.Formatter):
    """Human-friendly console formatter with colour support."""

    default_time_format = "%H:%M:%S"

    def format(self, record: LogRecord) -> str:  # noqa: D401 - inherited docs
        base = super().format(record)
        colour = _LEVEL_COLORS.get(record.levelname)
        if not colour or not sys.stderr.isatty():
            return base
        return f"{colour}{base}{_RESET_COLOR}"


def _coerce_level(value: Optional[str | int]) -> int:
    if not value:
        return logging.INFO
    if isinstance(value, int):
        return value
    value = value.strip()
    if value.isdigit():
        return int(value)
    mapped = getattr(logging, value.upper(), None)
    if isinstance(mapped, int):
        return mapped
    return logging.INFO


def configure_logging(
    level: Optional[str | int] = None,
    *,
    log_file: Optional[Path | str] = None,
    enable_json: bool = True,
) -> None:
    """Initialise stepcat logging; attach a rotating file sink when ``log_file`` is set."""

    global _CONFIGURED, _FILE_HANDLER

    with _LOCK:
        logger = logging.getLogger(_LOGGER_NAME)
        requested = level or os.getenv("STEPCAT_LOG_LEVEL")

        if not _CONFIGURED:
            logger.handlers.clear()
            logger.setLevel(_coerce_level(requested))

            console_handler = logging.StreamHandler()
            console_handler.setFormatter(
                StepcatConsoleFormatter(
                    fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                    datefmt="%H:%M:%S",
                )
            )
            logger.addHandler(console_handler)
            _CONFIGURED = True
        elif requested:
            logger.setLevel(_coerce_level(requested))

        if not log_file:
            return

        target_file = Path(log_file)
        if _FILE_HANDLER and getattr(_FILE_HANDLER, "baseFilename", None) == str(
            target_file.resolve()
        ):
            return

        if _FILE_HANDLER is not None:
            logger.removeHandler(_FILE_HANDLER)
            try:
                _FILE_HANDLER.close()
            finally:
                _FILE_HANDLER = None

        target_file.parent.mkdir(parents=True, exist_ok=True)
        rotation_handler = RotatingFileHandler(
            target_file,
            maxBytes=_DEFAULT_MAX_BYTES,
            backupCount=_DEFAULT_BACKUP_COUNT,
            encoding="utf-8",
        )

        if enable_json:
            formatter: logging.Formatter = StepcatJsonFormatter()
        else:
            formatter = logging.Formatter(
                fmt="%(asctime)s %(levelname)s %(name)s %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )

        rotation_handler.setFormatter(formatter)
        logger.addHandler(rotation_handler)
        _FILE_HANDLER = rotation_handler


def get_logger(name: str, *, metadata: Optional[Mapping[str, Any]] = None) -> logging.Logger:
    """Return a logger scoped under the stepcat namespace."""

    configure_logging()
    qualified = (
        name
        if name == _LOGGER_NAME or name.startswith(f"{_LOGGER_NAME}.")
        else f"{_LOGGER_NAME}.{name}"
    )
    logger = logging.getLogger(qualified)
    if metadata:
        return StepcatLoggerAdapter(logger, dict(metadata))  # type: ignore[return-value]
    return logger


class StepcatLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that injects metadata for structured logging."""

    def process(self, msg: str, kwargs: Mapping[str, Any]) -> tuple[str, dict[str, Any]]:
        extra = dict(kwargs.get("extra") or {})
        metadata = dict(self.extra or {})
        if isinstance(extra.get("metadata"), Mapping):
            metadata.update(extra["metadata"])
        if metadata:
            extra["metadata"] = metadata
        kwargs = dict(kwargs)
        kwargs["extra"] = extra
        return msg, kwargs


class log_exceptions(ContextDecorator):
    """Context manager/decorator that logs uncaught exceptions."""

    def __init__(self, logger: logging.Logger, *, message: str = "Unhandled error") -> None:
        self.logger = logger
        self.message = message

    def __enter__(self) -> "log_exceptions":  # noqa: D401 - context protocol
        return self

    def __exit__(self, exc_type, exc_value, exc_traceback) -> bool:
        if exc_type is not None:
            self.logger.error(
                self.message,
                exc_info=(exc_type, exc_value, exc_traceback),
            )
        return False

    def __call__(self, func: Callable[..., Any]) -> Callable[..., Any]:
        def wrapper(*args: Any, **kwargs: Any) -> Any:
            with self:
                return func(*args, **kwargs)

        return wrapper


__all__ = [
    "StepcatConsoleFormatter",
    "StepcatJsonFormatter",
    "StepcatLoggerAdapter",
    "configure_logging",
    "get_logger",
    "log_exceptions",
]
