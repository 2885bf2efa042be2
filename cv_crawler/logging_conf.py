"""structlog on top of stdlib handlers writing JSON lines.

Everything lands in ``pipeline.log`` plus the console; errors are mirrored to
``error.log`` and each source gets its own file under ``sources/``.
"""

from __future__ import annotations

import logging
import logging.config
import os
from collections import deque
from pathlib import Path
from typing import Optional

import structlog
from pythonjsonlogger import jsonlogger

_JSON_FORMAT = "%(asctime)s %(levelname)s %(name)s %(message)s"
_configured = False


def _root() -> Path:
    home = os.environ.get("CV_CRAWLER_HOME")
    base = Path(home).expanduser().resolve() if home else Path(__file__).resolve().parents[1]
    return base / "logs"


def log_path(source_id: Optional[str] = None) -> Path:
    """File that holds the pipeline stream, or one source's stream."""

    if source_id:
        return _root() / "sources" / f"{source_id}.log"
    return _root() / "pipeline.log"


def _file_handler(path: Path, level: str) -> dict:
    return {
        "class": "logging.FileHandler",
        "level": level,
        "filename": str(path),
        "encoding": "utf-8",
        "formatter": "json",
    }


def configure_logging(verbose: bool = False) -> structlog.BoundLogger:
    global _configured
    (_root() / "sources").mkdir(parents=True, exist_ok=True)
    if _configured:
        return structlog.get_logger("cv_crawler")

    level = "DEBUG" if verbose else "INFO"
    logging.config.dictConfig(
        {
            "version": 1,
            "disable_existing_loggers": False,
            "formatters": {
                "json": {"()": jsonlogger.JsonFormatter, "fmt": _JSON_FORMAT},
            },
            "handlers": {
                "console": {"class": "logging.StreamHandler", "level": level, "formatter": "json"},
                "pipeline": _file_handler(log_path(), "INFO"),
                "errors": _file_handler(_root() / "error.log", "ERROR"),
            },
            "loggers": {
                "cv_crawler": {
                    "handlers": ["console", "pipeline", "errors"],
                    "level": level,
                    "propagate": False,
                },
            },
        }
    )
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.stdlib.add_log_level,
            structlog.processors.format_exc_info,
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _configured = True
    return structlog.get_logger("cv_crawler")


def source_logger(source_id: str) -> structlog.BoundLogger:
    """Logger bound to ``source_id``; also writes to that source's own file."""

    configure_logging()
    name = f"cv_crawler.source.{source_id}"
    target = str(log_path(source_id))
    stdlib_logger = logging.getLogger(name)
    attached = any(getattr(h, "baseFilename", None) == target for h in stdlib_logger.handlers)
    if not attached:
        handler = logging.FileHandler(target, encoding="utf-8")
        handler.setLevel(logging.INFO)
        handler.setFormatter(jsonlogger.JsonFormatter(_JSON_FORMAT))
        stdlib_logger.addHandler(handler)
    return structlog.get_logger(name).bind(source=source_id)


def tail_log(path: Path, line_count: int = 100) -> list[str]:
    if not path.exists():
        return []
    with path.open("r", encoding="utf-8", errors="ignore") as stream:
        return list(deque(stream, maxlen=line_count))


__all__ = ["configure_logging", "log_path", "source_logger", "tail_log"]
