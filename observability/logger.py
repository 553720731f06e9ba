"""
observability/logger.py — Basma Voice Structured Logger

structlog routed through stdlib logging. The rotating file is always JSON;
the console (stderr, off by default) is JSON or coloured dev output. Every
line emitted while a voice session is live carries its session_id and
recognition language.

Usage:
    from observability.logger import get_logger, setup_logging

    setup_logging(level="INFO")            # once, from main.bootstrap()
    log = get_logger(__name__)
    log.info("recognition.restarted", restarts=3)
    log.warning("tts.fallback", reason="TTS failed: Internal Server Error")
"""

from __future__ import annotations

import logging
import logging.handlers
import sys
from pathlib import Path
from typing import Any, Optional

import structlog

LOG_FILE_NAME = "basma_voice.log"

# Context keys owned by a voice session; other bound context is left alone
_SESSION_KEYS = ("session_id", "language")


def setup_logging(
    level: str = "INFO",
    log_dir: str | Path = "./data/logs",
    json_format: bool = True,
    console_output: bool = True,
    max_bytes: int = 20 * 1024 * 1024,   # 20 MB
    backup_count: int = 5,
) -> None:
    """
    Configure structlog and stdlib logging. Safe to call again; handlers
    from a previous call are replaced.

    Args:
        level:          DEBUG | INFO | WARNING | ERROR | CRITICAL
        log_dir:        Directory for basma_voice.log and its rotations.
        json_format:    Console emits JSON when True, coloured text otherwise.
        console_output: Emit to stderr at all. stdout belongs to the REPL.
        max_bytes:      Rotation size of basma_voice.log.
        backup_count:   Rotated files kept.
    """
    log_dir = Path(log_dir)
    log_dir.mkdir(parents=True, exist_ok=True)
    numeric_level = getattr(logging, level.upper(), logging.INFO)

    shared_processors: list[Any] = [
        structlog.contextvars.merge_contextvars,
        structlog.stdlib.add_log_level,
        structlog.stdlib.add_logger_name,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]

    handlers: list[logging.Handler] = [
        logging.handlers.RotatingFileHandler(
            filename=log_dir / LOG_FILE_NAME,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
    ]
    if console_output:
        handlers.append(logging.StreamHandler(sys.stderr))
    for handler in handlers:
        handler.setLevel(numeric_level)

    logging.basicConfig(
        format="%(message)s",
        level=numeric_level,
        handlers=handlers,
        force=True,
    )

    structlog.configure(
        processors=shared_processors + [structlog.stdlib.ProcessorFormatter.wrap_for_formatter],
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    file_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer(),
        ],
        foreign_pre_chain=shared_processors,
    )
    console_formatter = structlog.stdlib.ProcessorFormatter(
        processors=[
            structlog.stdlib.ProcessorFormatter.remove_processors_meta,
            structlog.processors.JSONRenderer() if json_format
            else structlog.dev.ConsoleRenderer(colors=True),
        ],
        foreign_pre_chain=shared_processors,
    )

    handlers[0].setFormatter(file_formatter)
    for handler in handlers[1:]:
        handler.setFormatter(console_formatter)


def get_logger(name: str = "basma_voice", **initial_values: Any) -> structlog.stdlib.BoundLogger:
    """
    Example:
        log = get_logger(__name__, component="recognizer")
        log.info("recognition.result", is_final=True)
        # → {"event": "recognition.result", "is_final": true,
        #    "component": "recognizer", "logger": "speech.recognition", ...}
    """
    logger = structlog.get_logger(name)
    if initial_values:
        logger = logger.bind(**initial_values)
    return logger


def bind_session(session_id: str, language: Optional[str] = None) -> None:
    """Attach the voice session id (and recognition language) to every log line in this context."""
    values: dict[str, Any] = {"session_id": session_id}
    if language is not None:
        values["language"] = language
    structlog.contextvars.bind_contextvars(**values)


def clear_session() -> None:
    structlog.contextvars.unbind_contextvars(*_SESSION_KEYS)
