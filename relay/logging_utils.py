"""
Structured logging utility for the render relay.

Provides consistent JSON logging for:
- HTTP requests (inbound/outbound)
- Project lifecycle events (started, completed, failed, reaped)
- Subscriber attach/detach
- Provider connection state

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
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Configuration from environment
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
LOG_JSON = os.getenv("LOG_JSON", "1") == "1"
LOG_HTTP_BODY = os.getenv("LOG_HTTP_BODY", "0") == "1"
LOG_HTTP_MAXLEN = int(os.getenv("LOG_HTTP_MAXLEN", "2000"))

HOSTNAME = socket.gethostname()

# Provider environment the relay talks to (set once settings are loaded)
PROVIDER_ENV: Optional[str] = None


def set_provider_env(env: str):
    """Set the provider environment stamped on every log line."""
    global PROVIDER_ENV
    PROVIDER_ENV = env


class StructuredLogger:
    """
    Structured logger that writes one JSON object per line to stdout.

    Each log line includes:
    - ts: ISO8601 timestamp
    - level: Log level
    - event: Event name (e.g. "project_started", "subscriber_dropped")
    - env: Provider environment
    - hostname: Machine hostname
    - project_id / job_id when the event concerns one
    - details: any additional context fields
    """

    def __init__(self, name: str = "render-relay"):
        self.logger = logging.getLogger(name)
        self.logger.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        self.logger.handlers.clear()

        handler = logging.StreamHandler(sys.stdout)
        handler.setLevel(getattr(logging, LOG_LEVEL, logging.INFO))
        if LOG_JSON:
            handler.setFormatter(JSONFormatter())
        else:
            handler.setFormatter(PrettyFormatter())

        self.logger.addHandler(handler)
        self.logger.propagate = False

    def _truncate_body(self, body: Any, max_len: int = LOG_HTTP_MAXLEN) -> Optional[str]:
        if body is None:
            return None
        body_str = str(body)
        if len(body_str) > max_len:
            return body_str[:max_len] + f"... (truncated, {len(body_str)} total chars)"
        return body_str

    def _sanitize_headers(self, headers: Dict[str, str]) -> Dict[str, str]:
        """Remove credentials and session cookies from logged headers."""
        if not headers:
            return {}
        sensitive_keys = {"authorization", "x-api-key", "api-key", "token", "cookie"}
        return {
            key: ("***REDACTED***" if key.lower() in sensitive_keys else value)
            for key, value in headers.items()
        }

    def log(
        self,
        level: str,
        event: str,
        project_id: Optional[str] = None,
        job_id: Optional[str] = None,
        request_id: Optional[str] = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
        **details
    ):
        """
        Log a structured event.

        Args:
            level: Log level (DEBUG, INFO, WARNING, ERROR)
            event: Event name
            project_id: Provider project identifier (if applicable)
            job_id: Provider job identifier (if applicable)
            request_id: Request identifier (if applicable)
            duration_ms: Duration in milliseconds (if applicable)
            error: Error message (if applicable)
            **details: Additional event-specific fields
        """
        log_data: Dict[str, Any] = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "env": PROVIDER_ENV,
            "hostname": HOSTNAME,
        }

        if project_id:
            log_data["project_id"] = project_id
        if job_id:
            log_data["job_id"] = job_id
        if request_id:
            log_data["request_id"] = request_id
        if duration_ms is not None:
            log_data["duration_ms"] = round(duration_ms, 2)
        if error:
            log_data["error"] = error
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
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        status_code: Optional[int] = None,
        duration_ms: Optional[float] = None,
        streamed: bool = False,
        error: Optional[str] = None,
    ):
        """Log an inbound HTTP request once its response has finished."""
        details: Dict[str, Any] = {
            "method": method,
            "path": path,
            "remote_addr": remote_addr,
        }
        if headers:
            details["headers"] = self._sanitize_headers(headers)
        if LOG_HTTP_BODY and body is not None:
            details["request_body"] = self._truncate_body(body)
        if status_code is not None:
            details["status_code"] = status_code
        if streamed:
            details["streamed"] = True

        if error:
            self.error("http_in_error", request_id=request_id, duration_ms=duration_ms, error=error, **details)
        else:
            self.info("http_in", request_id=request_id, duration_ms=duration_ms, **details)

    def http_out(
        self,
        service: str,
        method: str,
        url: str,
        request_id: str,
        request_body: Any = None,
        status_code: Optional[int] = None,
        response_body: Any = None,
        duration_ms: Optional[float] = None,
        error: Optional[str] = None,
    ):
        """Log an outbound HTTP request to the provider."""
        details: Dict[str, Any] = {
            "service": service,
            "method": method,
            "url": url,
        }
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


class JSONFormatter(logging.Formatter):
    """Formats log records as JSON."""

    def format(self, record: logging.LogRecord) -> str:
        if hasattr(record, "structured"):
            return json.dumps(record.structured, default=str)

        # Plain module loggers end up here
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
            timestamp = data.get("ts", "")[:19]
            parts = [f"[{timestamp}]", f"[{data.get('level', 'INFO')}]", f"[{data.get('event', '')}]"]

            if data.get("project_id"):
                parts.append(f"[project:{data['project_id'][:8]}]")
            if data.get("job_id"):
                parts.append(f"[job:{data['job_id'][:8]}]")

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


def init_logging(provider_env: Optional[str] = None) -> StructuredLogger:
    """Initialize logging and record the active configuration."""
    if provider_env:
        set_provider_env(provider_env)

    logging.basicConfig(level=getattr(logging, LOG_LEVEL, logging.INFO))
    logger = get_logger()
    logger.info(
        "logger_config",
        log_level=LOG_LEVEL,
        log_json=LOG_JSON,
        log_http_body=LOG_HTTP_BODY,
        log_http_maxlen=LOG_HTTP_MAXLEN,
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

        def stop(self):
            self.elapsed_ms = (time.time() - self.start) * 1000
            return self.elapsed_ms

    t = Timer()
    try:
        yield t
    finally:
        t.stop()
