"""
Structured logging configuration with audit trail support for Chatter.

Application logs and audit events are written as JSON lines. Audit events
go to their own logger (``chatter.audit``) and file so permission
decisions, tool executions and turn outcomes can be reviewed separately
from diagnostics.
"""

import json
import logging
import logging.config
import sys
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, Optional

from opentelemetry import trace


# LogRecord attributes that are not user-supplied `extra=` fields
_RECORD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


class StructuredFormatter(logging.Formatter):
    """JSON formatter with OpenTelemetry trace correlation."""

    def __init__(self, include_trace: bool = True, extra_fields: Optional[Dict[str, Any]] = None):
        super().__init__()
        self.include_trace = include_trace
        self.extra_fields = extra_fields or {}

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "module": record.module,
            "function": record.funcName,
            "line": record.lineno
        }

        if self.include_trace:
            span_context = trace.get_current_span().get_span_context()
            if span_context.is_valid:
                log_entry["trace_id"] = format(span_context.trace_id, "032x")
                log_entry["span_id"] = format(span_context.span_id, "016x")

        if record.exc_info and record.exc_info[0] is not None:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__,
                "message": str(record.exc_info[1]),
                "traceback": self.formatException(record.exc_info)
            }

        log_entry.update(
            (key, value) for key, value in record.__dict__.items() if key not in _RECORD_ATTRS
        )
        log_entry.update(self.extra_fields)

        return json.dumps(log_entry, ensure_ascii=False, default=str)


class AuditLogger:
    """Writes audit events for sessions, permissions, tools and turns.

    Every event carries an ``audit_type`` so the audit file can be filtered
    by category.
    """

    def __init__(self, logger_name: str = "chatter.audit"):
        self.logger = logging.getLogger(logger_name)

    def _emit(self, level: int, message: str, audit_type: str, **fields: Any) -> None:
        fields["metadata"] = fields.get("metadata") or {}
        self.logger.log(level, message, extra={"audit_type": audit_type, **fields})

    def log_session_event(
        self,
        event_type: str,
        session_id: str,
        action: Optional[str] = None,
        result: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Session lifecycle: startup, save, load, shutdown."""
        self._emit(
            logging.INFO, f"Session event: {event_type}", "session",
            event_type=event_type, session_id=session_id, action=action, result=result, metadata=metadata
        )

    def log_security_event(
        self,
        event_type: str,
        severity: str,
        description: str,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Permission denials and other security-relevant refusals."""
        self.logger.warning(
            f"Security event: {event_type} - {description}",
            extra={
                "audit_type": "security",
                "event_type": event_type,
                "severity": severity,
                "description": description,
                "session_id": session_id,
                "metadata": metadata or {}
            }
        )

    def log_tool_event(
        self,
        tool_name: str,
        call_id: str,
        result: str,
        execution_time_ms: Optional[int] = None,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """One tool execution, successful or not."""
        self._emit(
            logging.INFO, f"Tool event: {tool_name} - {result}", "tool",
            tool_name=tool_name, call_id=call_id, result=result,
            execution_time_ms=execution_time_ms, session_id=session_id, metadata=metadata
        )

    def log_policy_event(
        self,
        event_type: str,
        action: str,
        decision: str,
        reason: str,
        session_id: Optional[str] = None,
        metadata: Optional[Dict[str, Any]] = None
    ) -> None:
        """Changes to allowed/forbidden roots and agent mode."""
        self._emit(
            logging.INFO, f"Policy event: {event_type} - {action}", "policy",
            event_type=event_type, action=action, decision=decision, reason=reason,
            session_id=session_id, metadata=metadata
        )

    def log_turn_event(
        self,
        session_id: str,
        turn_id: str,
        state: str,
        iterations: int,
        tools_executed: int,
        abort_reason: Optional[str] = None,
        duration_ms: Optional[int] = None
    ) -> None:
        """Outcome of a user turn."""
        self._emit(
            logging.INFO if abort_reason is None else logging.WARNING,
            f"Turn event: {turn_id} - {state}", "turn",
            session_id=session_id, turn_id=turn_id, state=state, iterations=iterations,
            tools_executed=tools_executed, abort_reason=abort_reason, duration_ms=duration_ms
        )


def build_logging_config(config: Dict[str, Any]) -> Dict[str, Any]:
    """Translate the `logging` section of the configuration into a dictConfig."""
    log_level = config.get("level", "INFO").upper()
    console_level = config.get("console_level", "WARNING").upper()
    console_formatter = "structured" if config.get("format", "structured") == "structured" else "simple"
    log_dir = Path(config.get("directory", "~/.chatter/logs")).expanduser()
    max_bytes = config.get("max_file_size", 10 * 1024 * 1024)  # 10MB
    backup_count = config.get("backup_count", 5)

    def rotating(filename: str, level: str) -> Dict[str, Any]:
        return {
            "class": "logging.handlers.RotatingFileHandler",
            "level": level,
            "formatter": "structured",
            "filename": str(log_dir / filename),
            "maxBytes": max_bytes,
            "backupCount": backup_count,
            "encoding": "utf-8"
        }

    return {
        "version": 1,
        "disable_existing_loggers": False,
        "formatters": {
            "structured": {
                "()": StructuredFormatter,
                "include_trace": config.get("include_trace", True),
                "extra_fields": {
                    "service": "chatter",
                    "environment": config.get("environment", "development")
                }
            },
            "simple": {
                "format": "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
            }
        },
        "handlers": {
            # The terminal belongs to the chat, so the console only gets warnings by default
            "console": {
                "class": "logging.StreamHandler",
                "level": console_level,
                "formatter": console_formatter,
                "stream": sys.stderr
            },
            "application_file": rotating("chatter.log", log_level),
            "audit_file": rotating("audit.jsonl", "INFO")
        },
        "loggers": {
            "chatter": {
                "level": log_level,
                "handlers": ["console", "application_file"],
                "propagate": False
            },
            "chatter.audit": {
                "level": "INFO",
                "handlers": ["audit_file"],
                "propagate": False
            },
            "httpx": {
                "level": "WARNING",
                "handlers": ["application_file"],
                "propagate": False
            },
            "opentelemetry": {
                "level": "WARNING",
                "handlers": ["console", "application_file"],
                "propagate": False
            }
        },
        "root": {
            "level": "WARNING",
            "handlers": ["console"]
        }
    }


def setup_logging(config: Dict[str, Any]) -> None:
    """Create the log directory and apply the logging configuration."""
    logging_config = build_logging_config(config)
    log_dir = Path(logging_config["handlers"]["application_file"]["filename"]).parent
    log_dir.mkdir(parents=True, exist_ok=True)

    logging.config.dictConfig(logging_config)

    logging.getLogger("chatter.logging").info("Structured logging initialized", extra={
        "config": {
            "level": logging_config["loggers"]["chatter"]["level"],
            "directory": str(log_dir)
        }
    })


def get_audit_logger() -> AuditLogger:
    """Get the configured audit logger instance."""
    return AuditLogger()
