"""
Structured logging for the command arbiter.

One record, two renderings: JSON lines when LOG_FORMAT=json, a readable line
otherwise. Every line is tagged with the session and turn being resolved, so
a single conversation can be followed through the scope, gate, arbitration
and clarifier stages.

Usage:
    from command_arbiter.logger import logger

    logger.set_session("sess_123", turn=4)
    logger.info("Gate decision", outcome="execute", reason="exact_label")
    logger.metric("llm_latency_ms", 412, attempt=1)
"""

import json
import logging
import os
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, TextIO

from command_arbiter.settings import settings


# Context-local so parallel sessions never tag each other's lines
_session_id_var: ContextVar[Optional[str]] = ContextVar("arbiter_session_id", default=None)
_turn_var: ContextVar[Optional[int]] = ContextVar("arbiter_turn", default=None)
_context_var: ContextVar[Optional[Dict[str, Any]]] = ContextVar("arbiter_context", default=None)

# METRIC and EVENT are INFO records with their own label
_LEVELS = {
    "DEBUG": logging.DEBUG,
    "INFO": logging.INFO,
    "WARNING": logging.WARNING,
    "ERROR": logging.ERROR,
    "METRIC": logging.INFO,
    "EVENT": logging.INFO,
}


def json_enabled() -> bool:
    return os.environ.get("LOG_FORMAT", "readable") == "json"


class TurnFormatter(logging.Formatter):
    """
    Renders records produced by StructuredLogger.

    Plain `logging` records (no arbiter payload) render with no fields and
    no session tag.
    """

    def format(self, record: logging.LogRecord) -> str:
        level = getattr(record, "arbiter_level", record.levelname)
        fields: Dict[str, Any] = getattr(record, "arbiter_fields", {})
        session_id = getattr(record, "arbiter_session", None)
        turn = getattr(record, "arbiter_turn", None)
        if json_enabled():
            return self._json(record, level, fields, session_id, turn)
        return self._readable(record, level, fields, session_id, turn)

    def _json(self, record, level, fields, session_id, turn) -> str:
        entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat().replace("+00:00", "Z"),
            "level": level,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if session_id:
            entry["session_id"] = session_id
        if turn is not None:
            entry["turn"] = turn
        entry.update(fields)
        if record.exc_info:
            entry["traceback"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)

    def _readable(self, record, level, fields, session_id, turn) -> str:
        line = record.getMessage()
        if fields:
            line += " [" + ", ".join(f"{k}={v}" for k, v in fields.items()) + "]"
        if session_id:
            tag = session_id if turn is None else f"{session_id} t{turn}"
            line = f"[{tag}] {line}"
        line = f"[{self.formatTime(record, '%H:%M:%S')}] {level} - {line}"
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


class StructuredLogger:
    """
    Field-style logger over stdlib `logging`.

    Keyword arguments become structured fields; the session/turn tag and any
    `set_context` fields are attached to every line.
    """

    def __init__(self, name: str):
        self.name = name
        self.logger = logging.getLogger(name)

        if not self.logger.handlers:
            self._setup_logger()

    def _setup_logger(self, stream: Optional[TextIO] = None, level: Optional[int] = None) -> None:
        if level is None:
            level_name = settings.get_nested("logging.level", "INFO")
            level = getattr(logging, level_name.upper(), logging.INFO)
        self.logger.setLevel(level)

        handler = logging.StreamHandler(stream)
        handler.setLevel(level)
        handler.setFormatter(TurnFormatter())
        self.logger.addHandler(handler)

        self.logger.propagate = False

    # =========================================================================
    # Context
    # =========================================================================

    @property
    def session_id(self) -> Optional[str]:
        return _session_id_var.get()

    @property
    def turn(self) -> Optional[int]:
        return _turn_var.get()

    def set_session(self, session_id: str, turn: Optional[int] = None) -> None:
        """Tag following lines with the session (and turn) being resolved."""
        _session_id_var.set(session_id)
        _turn_var.set(turn)

    def clear_session(self) -> None:
        _session_id_var.set(None)
        _turn_var.set(None)

    @property
    def context(self) -> Dict[str, Any]:
        return dict(_context_var.get() or {})

    def set_context(self, **kwargs: Any) -> None:
        """Host-level fields (tenant, surface) attached to every line"""
        ctx = self.context
        ctx.update(kwargs)
        _context_var.set(ctx)

    def clear_context(self) -> None:
        _context_var.set(None)

    # =========================================================================
    # Emission
    # =========================================================================

    def _log(self, level: str, message: str, exc_info: bool = False, **kwargs: Any) -> None:
        levelno = _LEVELS[level]
        if not self.logger.isEnabledFor(levelno):
            return
        fields = self.context
        fields.update(kwargs)
        self.logger.log(
            levelno,
            message,
            exc_info=exc_info,
            extra={
                "arbiter_level": level,
                "arbiter_session": self.session_id,
                "arbiter_turn": self.turn,
                "arbiter_fields": fields,
            },
        )

    def debug(self, message: str, **kwargs: Any) -> None:
        self._log("DEBUG", message, **kwargs)

    def info(self, message: str, **kwargs: Any) -> None:
        self._log("INFO", message, **kwargs)

    def warning(self, message: str, **kwargs: Any) -> None:
        self._log("WARNING", message, **kwargs)

    def error(self, message: str, **kwargs: Any) -> None:
        self._log("ERROR", message, **kwargs)

    def exception(self, message: str, **kwargs: Any) -> None:
        """ERROR line carrying the traceback of the exception being handled"""
        self._log("ERROR", message, exc_info=True, **kwargs)

    def metric(self, name: str, value: Any, **kwargs: Any) -> None:
        """
        Numeric measurement, e.g. LLM latency or pool size.

        Example:
            logger.metric("llm_latency_ms", 412, attempt=1)
        """
        self._log("METRIC", name, value=value, **kwargs)

    def event(self, event_type: str, **kwargs: Any) -> None:
        """Telemetry event mirrored into the log (see telemetry.TelemetryEmitter)."""
        self._log("EVENT", event_type, **kwargs)


logger = StructuredLogger("command_arbiter")


def create_test_logger(name: str = "test", stream: Optional[TextIO] = None) -> StructuredLogger:
    """
    Isolated child logger for tests.

    With `stream`, output goes there at DEBUG level instead of stderr.
    """
    log = StructuredLogger(f"command_arbiter.{name}")
    if stream is not None:
        log.logger.handlers.clear()
        log._setup_logger(stream, level=logging.DEBUG)
    return log
