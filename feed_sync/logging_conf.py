"""Logging configuration built around structlog JSON logging."""

from __future__ import annotations

import logging
import logging.config
import os
from pathlib import Path
from typing import Iterable

import structlog

_LOGGING_INITIALISED = False
LOGGER_NAME = "feed_sync"


def _default_log_dir() -> Path:
    env_root = os.environ.get("FEED_SYNC_HOME")
    if env_root:
        return Path(env_root).expanduser().resolve() / "logs"
    return Path(__file__).resolve().parents[1] / "logs"


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    """Configure structlog + stdlib handlers and return application logger."""

    global _LOGGING_INITIALISED
    log_dir = _default_log_dir()
    error_log = log_dir / "error.log"
    main_log = log_dir / "feed_sync.log"
    sources_dir = log_dir / "sources"
    sources_dir.mkdir(parents=True, exist_ok=True)
    error_log.touch(exist_ok=True)
    main_log.touch(exist_ok=True)

    if not _LOGGING_INITIALISED:
        level = "DEBUG" if verbose else "INFO"
        logging.config.dictConfig(
            {
                "version": 1,
                "disable_existing_loggers": False,
                "formatters": {
                    "json": {
                        "()": "pythonjsonlogger.jsonlogger.JsonFormatter",
                        "fmt": "%(asctime)s %(levelname)s %(name)s %(message)s",
                    }
                },
                "handlers": {
                    "console": {
                        "class": "logging.StreamHandler",
                        "level": "WARNING" if not verbose else "DEBUG",
                        "formatter": "json",
                    },
                    "main_file": {
                        "class": "logging.FileHandler",
                        "level": "INFO",
                        "filename": str(main_log),
                        "formatter": "json",
                        "encoding": "utf-8",
                    },
                    "error_file": {
                        "class": "logging.FileHandler",
                        "level": "ERROR",
                        "filename": str(error_log),
                        "formatter": "json",
                        "encoding": "utf-8",
                    },
                },
                "loggers": {
                    LOGGER_NAME: {
                        "handlers": ["console", "main_file", "error_file"],
                        "level": level,
                        "propagate": False,
                    },
                },
            }
        )

        # structlog renders nothing itself; the JSON formatter on each handler does
        structlog.configure(
            processors=[
                structlog.contextvars.merge_contextvars,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.stdlib.add_log_level,
                structlog.processors.StackInfoRenderer(),
                structlog.processors.format_exc_info,
                structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
            ],
            logger_factory=structlog.stdlib.LoggerFactory(),
            cache_logger_on_first_use=True,
        )
        _LOGGING_INITIALISED = True
    return structlog.get_logger(LOGGER_NAME)


def source_logger(source_name: str, verbose: bool = False) -> structlog.BoundLogger:
    """Return a logger bound to a specific source and ensure file handler exists."""

    configure_logging(verbose)
    slug = "".join(ch.lower() if ch.isalnum() else "-" for ch in source_name).strip("-") or "source"
    source_log_path = _default_log_dir() / "sources" / f"{slug}.log"
    source_log_path.parent.mkdir(parents=True, exist_ok=True)

    logger_name = f"{LOGGER_NAME}.source.{slug}"
    py_logger = logging.getLogger(logger_name)
    if not any(
        isinstance(handler, logging.FileHandler) and handler.baseFilename == str(source_log_path)
        for handler in py_logger.handlers
    ):
        file_handler = logging.FileHandler(source_log_path, encoding="utf-8")
        global_logger = logging.getLogger(LOGGER_NAME)
        if global_logger.handlers:
            file_handler.setFormatter(global_logger.handlers[0].formatter)
        file_handler.setLevel(logging.INFO)
        py_logger.addHandler(file_handler)

    return structlog.get_logger(logger_name).bind(source=source_name)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    """Return the last N lines from a log file."""

    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        lines = stream.readlines()
    return lines[-line_count:]


def available_source_logs() -> Iterable[Path]:
    sources_dir = _default_log_dir() / "sources"
    if not sources_dir.exists():
        return []
    return sorted(p for p in sources_dir.glob("*.log"))


def log_dir() -> Path:
    return _default_log_dir()


__all__ = [
    "available_source_logs",
    "configure_logging",
    "log_dir",
    "source_logger",
    "tail_log",
]
