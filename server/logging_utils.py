"""
Structured logging for the genqueue server.

Provides consistent JSON logging for:
- Scheduler lifecycle events (job_queued, job_started, job_completed, ...)
- Websocket channel events (connect, disconnect, dropped frames)
- Outbound backend HTTP calls and inbound file requests

Environment variables:
- LOG_LEVEL: Logging level (DEBUG, INFO, WARNING, ERROR) [default: INFO]
- LOG_JSON: Enable JSON output (1) or pretty text (0) [default: 1]
- LOG_HTTP_BODY: Include request/response bodies in logs [default: 0]
- LOG_HTTP_MAXLEN: Max length for HTTP body logging [default: 2000]
"""

import json
import logging
import os
import socket
import sys
import time
import traceback
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "1") == "1"
LOG_HTTP_BODY = os.getenv("LOG_HTTP_BODY", "0") == "1"
LOG_HTTP_MAXLEN = int(os.getenv("LOG_HTTP_MAXLEN", "2000"))

HOSTNAME = socket.gethostname()

# Server ID (set from config at startup)
SERVER_ID: Optional[str] = None


def set_server_id(server_id: str):
    global SERVER_ID
    SERVER_ID = server_id


class StructuredLogger:
    """
    Structured logger that writes one JSON object per line to stdout.

    Each line includes ts, level, event, server_id, hostname, plus
    job_id / request_id / duration_ms / error when given and a
    ``details`` object for everything else.
    """

    def __init__(self, name: str = "genqueue"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        handler.setFormatter(JSONFormatter() if LOG_JSON else PrettyFormatter())

        self.logger.addHandler(handler)
        self.logger.propagate = False

    def _truncate_body(self, body: Any, max_len: int = LOG_HTTP_MAXLEN) -> Optional[str]:
        if body is None:
            return None
        body_str = str(body)
        if len(body_str) > max_len:
            return body_str[:max_len] + f"... (truncated, {len(body_str)} total chars)"
        return body_str

    def log(
        self,
        level: str,
        event: str,
        job_id: Optional[str] = None,
        request_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        stack_trace: Optional[str] = None,
        **details
    ):
        """
        Log a structured event.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR)
            event: Event name (e.g., "job_started", "http_out")
            job_id: Job or continuous config id (if applicable)
            request_id: Request identifier (if applicable)
            duration_ms: Duration in milliseconds (if applicable)
            error: Error message (if applicable)
            stack_trace: Stack trace (if applicable)
            **details: Additional event-specific fields
        """
        log_data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "server_id": SERVER_ID,
            "hostname": HOSTNAME,
        }
        if job_id:
            log_data["job_id"] = job_id
        if request_id is not None:
            log_data["request_id"] = request_id
        if duration_ms is not None:
            log_data["duration_ms"] = round(duration_ms, 2)
        if error:
            log_data["error"] = error
        if stack_trace:
            log_data["stack_trace"] = stack_trace
        if details:
            log_data["details"] = details

        log_method = getattr(self.logger, level.lower(), self.logger.info)
        log_method("", extra={"structured": log_data})

    def debug(self, event: str, **kwargs):
        self.log("DEBUG", event, **kwargs)

    def info(self, event: str, **kwargs):
        self.log("INFO", event, **kwargs)

    def warning(self, event: str, **kwargs):
        self.log("WARNING", event, **kwargs)

    def error(self, event: str, **kwargs):
        self.log("ERROR", event, **kwargs)

    def http_in(
        self,
        method: str,
        path: str,
        remote_addr: str,
        request_id: str,
        status_code: Optional[int] = None,
        bytes_sent: Optional[int] = None,
        duration_ms: Optional[float] = None,
    ):
        """Log an inbound request to the file server. 4xx/5xx log as warnings."""
        details: Dict[str, Any] = {"method": method, "path": path, "remote_addr": remote_addr}
        if status_code is not None:
            details["status_code"] = status_code
        if bytes_sent is not None:
            details["bytes_sent"] = bytes_sent
        level = "WARNING" if status_code is None or status_code >= 400 else "INFO"
        self.log(level, "http_in", request_id=request_id, duration_ms=duration_ms, **details)

    def http_out(
        self,
        service: str,
        method: str,
        url: str,
        request_id: str,
        timeout: Optional[float] = None,
        request_body: Any = None,
        status_code: Optional[int] = None,
        response_body: Any = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ):
        """Log an outbound backend request."""
        details: Dict[str, Any] = {"service": service, "method": method, "url": url}
        if timeout is not None:
            details["timeout"] = timeout
        if LOG_HTTP_BODY and request_body is not None:
            details["request_body"] = self._truncate_body(request_body)
        if status_code is not None:
            details["status_code"] = status_code
        if LOG_HTTP_BODY and response_body is not None:
            details["response_body"] = self._truncate_body(response_body)

        if error:
            self.error("http_out_error", request_id=request_id, duration_ms=duration_ms, error=error, **details)
        else:
            self.info("http_out", request_id=request_id, duration_ms=duration_ms, **details)

    @contextmanager
    def job_context(self, job_id: str, job_kind: str, **initial_details):
        """
        Context manager for tracking one scheduler run.

        Usage:
            with logger.job_context(job_id="123", job_kind="generation") as ctx:
                ctx.milestone("model_selected", model="sdxl")
                ctx.milestone("job_completed", images=2)
        """
        start_time = time.time()

        class RunContext:
            def __init__(self, logger: "StructuredLogger"):
                self.logger = logger
                self.job_id = job_id
                self.job_kind = job_kind
                self.start_time = start_time

            @property
            def elapsed_ms(self) -> float:
                return (time.time() - self.start_time) * 1000

            def milestone(self, event: str, **details):
                self.logger.info(
                    event, job_id=self.job_id, duration_ms=self.elapsed_ms, job_kind=self.job_kind, **details
                )

            def error(self, event: str, error: str, **details):
                self.logger.error(
                    event,
                    job_id=self.job_id,
                    duration_ms=self.elapsed_ms,
                    job_kind=self.job_kind,
                    error=error,
                    **details
                )

        ctx = RunContext(self)
        self.info("job_started", job_id=job_id, job_kind=job_kind, **initial_details)
        try:
            yield ctx
        except Exception as e:
            self.error(
                "job_crashed",
                job_id=job_id,
                duration_ms=ctx.elapsed_ms,
                job_kind=job_kind,
                error=str(e),
                stack_trace=traceback.format_exc(),
            )
            raise


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "structured"):
            return json.dumps(record.structured, default=str)

        log_data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "message": record.getMessage(),
            "logger": record.name,
        }
        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)
        return json.dumps(log_data)


class PrettyFormatter(logging.Formatter):
    """Formats log records as human-readable text."""

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "structured"):
            data = record.structured
            parts = [f"[{data.get('ts', '')[:19]}]", f"[{data.get('level', 'INFO')}]", f"[{data.get('event', '')}]"]
            job_id = data.get("job_id", "")
            if job_id:
                parts.append(f"[job:{job_id[:8]}]")
            details = data.get("details", {})
            if details:
                parts.append(" ".join(f"{k}={v}" for k, v in details.items()))
            if data.get("error"):
                parts.append(f"ERROR: {data['error']}")
            return " ".join(parts)

        return super().format(record)


_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get the global structured logger instance."""
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger


def init_logging(server_id: Optional[str] = None) -> StructuredLogger:
    """Initialize logging and record the effective configuration."""
    if server_id:
        set_server_id(server_id)

    logger = get_logger()
    logger.info(
        "logger_config",
        log_level=LOG_LEVEL,
        log_json=LOG_JSON,
        log_http_body=LOG_HTTP_BODY,
        log_http_maxlen=LOG_HTTP_MAXLEN,
        hostname=HOSTNAME,
    )
    return logger


@contextmanager
def timer():
    """
    Context manager to measure duration.

    Usage:
        with timer() as t:
            ...
        duration_ms = t.elapsed_ms
    """
    class Timer:
        def __init__(self):
            self.start = time.time()
            self.elapsed_ms = 0.0

        def stop(self) -> float:
            self.elapsed_ms = (time.time() - self.start) * 1000
            return self.elapsed_ms

    t = Timer()
    try:
        yield t
    finally:
        t.stop()
