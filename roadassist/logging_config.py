"""
Structured logging for the relay server, CLI and UI session.
structlog events and stdlib records (uvicorn, httpx) share one pipeline:
console output as JSON or with the dev renderer, and always JSON lines in
``log_dir/roadassist.jsonl``.
"""

from __future__ import annotations

import logging
import sys
from pathlib import Path

import structlog

LOG_FILE = "roadassist.jsonl"

# Noisy third-party loggers kept at WARNING
_QUIET_LOGGERS = ("httpx", "httpcore", "websockets", "aiosqlite")

_SHARED_PROCESSORS = [
    structlog.contextvars.merge_contextvars,
    structlog.processors.add_log_level,
    structlog.stdlib.add_logger_name,
    structlog.processors.TimeStamper(fmt="iso", utc=True),
]


def _formatter(*processors) -> structlog.stdlib.ProcessorFormatter:
    return structlog.stdlib.ProcessorFormatter(
        foreign_pre_chain=_SHARED_PROCESSORS,
        processors=[structlog.stdlib.ProcessorFormatter.remove_processors_meta, *processors],
    )


def setup_logging(log_dir: Path, json_logs: bool = True, level: int = logging.INFO) -> None:
    """
    Configure structlog on top of the stdlib root logger.

    Parameters
    ----------
    log_dir : Path
        Directory for the JSON-lines log file.
    json_logs : bool
        Render console output as JSON (servers) instead of the
        coloured dev renderer (interactive CLI commands).
    level : int
        Minimum level for the root logger and the console.
    """
    log_dir.mkdir(parents=True, exist_ok=True)

    root = logging.getLogger()
    root.setLevel(level)
    for handler in [h for h in root.handlers if getattr(h, "_roadassist", False)]:
        root.removeHandler(handler)
        handler.close()

    console = logging.StreamHandler(sys.stdout)
    console.setLevel(level)
    if json_logs:
        console.setFormatter(
            _formatter(structlog.processors.format_exc_info, structlog.processors.JSONRenderer())
        )
    else:
        console.setFormatter(_formatter(structlog.dev.ConsoleRenderer()))

    fh = logging.FileHandler(log_dir / LOG_FILE, encoding="utf-8")
    fh.setLevel(logging.DEBUG)
    fh.setFormatter(
        _formatter(structlog.processors.format_exc_info, structlog.processors.JSONRenderer())
    )

    for handler in (console, fh):
        handler._roadassist = True
        root.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            *_SHARED_PROCESSORS,
            structlog.processors.StackInfoRenderer(),
            structlog.processors.UnicodeDecoder(),
            structlog.stdlib.ProcessorFormatter.wrap_for_formatter,
        ],
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
