"""
Structured logging for the generation dashboard.

Every log line is a single JSON object (or a compact text line when
LOG_JSON=0) carrying:
- inbound API requests (http_in) and outbound provider calls (http_out)
- job lifecycle milestones (job_dispatched, job_completed, ...)
- credential vault events (credential_decrypt_failed, ...)

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

SERVICE_ID: Optional[str] = None

SENSITIVE_HEADERS = {"authorization", "x-api-key", "api-key", "x-goog-api-key", "token", "cookie"}


def set_service_id(service_id: str):
    """Set the service identifier stamped on every log line."""
    global SERVICE_ID
    SERVICE_ID = service_id


def sanitize_headers(headers: Optional[Dict[str, str]]) -> Dict[str, str]:
    """Return a copy of headers with credential-bearing values redacted."""
    if not headers:
        return {}
    return {
        key: ("***REDACTED***" if key.lower() in SENSITIVE_HEADERS else value)
        for key, value in headers.items()
    }


class StructuredLogger:
    """
    Structured logger writing one event per line to stdout.

    Each line includes ts, level, event, service, hostname and optional
    job_id / request_id / duration_ms / error fields plus free-form details.
    """

    def __init__(self, name: str = "gen-dashboard"):
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
            event: Event name (e.g., "job_dispatched", "http_out")
            job_id: Job identifier (if applicable)
            request_id: Request identifier (if applicable)
            duration_ms: Duration in milliseconds (if applicable)
            error: Error message (if applicable)
            stack_trace: Stack trace (if applicable)
            **details: Additional event-specific fields
        """
        log_data = {
            "ts": datetime.now(timezone.utc).isoformat(),
            "level": level,
            "event": event,
            "service": SERVICE_ID,
            "hostname": HOSTNAME,
        }
        if job_id:
            log_data["job_id"] = job_id
        if request_id:
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
        headers: Optional[Dict[str, str]] = None,
        body: Any = None,
        status_code: Optional[int] = None,
        duration_ms: Optional[float] = None,
    ):
        """Log an inbound API request once its response has started."""
        details: Dict[str, Any] = {
            "method": method,
            "path": path,
            "remote_addr": remote_addr,
        }
        if headers:
            details["headers"] = sanitize_headers(headers)
        if LOG_HTTP_BODY and body is not None:
            details["request_body"] = self._truncate_body(body)
        if status_code is not None:
            details["status_code"] = status_code

        level = "ERROR" if status_code is not None and status_code >= 500 else "INFO"
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
        """Log an outbound call to a generation provider."""
        details: Dict[str, Any] = {
            "provider": service,
            "method": method,
            "url": url,
        }
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
        Track one dispatch of a job.

        Usage:
            with logger.job_context(job_id, "image", provider="comfyui") as ctx:
                ...
                ctx.milestone("job_submitted", remote_token=token)
        """
        start_time = time.time()
        logger = self

        class JobContext:
            def __init__(self):
                self.job_id = job_id
                self.job_kind = job_kind

            def _elapsed(self) -> float:
                return (time.time() - start_time) * 1000

            def milestone(self, event: str, **details):
                logger.info(event, job_id=job_id, duration_ms=self._elapsed(), job_kind=job_kind, **details)

            def error(self, event: str, error: str, **details):
                logger.error(
                    event,
                    job_id=job_id,
                    duration_ms=self._elapsed(),
                    job_kind=job_kind,
                    error=error,
                    stack_trace=traceback.format_exc(),
                    **details
                )

        ctx = JobContext()
        self.info("job_dispatched", job_id=job_id, job_kind=job_kind, **initial_details)
        try:
            yield ctx
        except Exception as e:
            ctx.error("job_dispatch_failed", error=str(e))
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
        return json.dumps(log_data, default=str)


class PrettyFormatter(logging.Formatter):
    """Formats log records as human-readable text."""

    def format(self, record: logging.LogRecord) -> str:
        if not hasattr(record, "structured"):
            return super().format(record)

        data = record.structured
        parts = [f"[{data.get('ts', '')[:19]}]", f"[{data.get('level', 'INFO')}]", f"[{data.get('event', '')}]"]
        job_id = data.get("job_id")
        if job_id:
            parts.append(f"[job:{job_id[:8]}]")
        details = data.get("details") or {}
        if details:
            parts.append(" ".join(f"{k}={v}" for k, v in details.items()))
        if data.get("error"):
            parts.append(f"ERROR: {data['error']}")
        return " ".join(parts)


_logger: Optional[StructuredLogger] = None


def get_logger() -> StructuredLogger:
    """Get the process-wide structured logger."""
    global _logger
    if _logger is None:
        _logger = StructuredLogger()
    return _logger


def init_logging(service_id: Optional[str] = None) -> StructuredLogger:
    if service_id:
        set_service_id(service_id)

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
    Measure the duration of a block.

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
