"""
Structured logging for the SSO federation service.

Provides:
- JSON structured logging for production environments
- Human-readable colored logging for development
- Request context (request_id, organization_id, protocol) propagation
- Redaction of credentials, tokens, assertions and key material
- Timing of federation steps
"""

import json
import logging
import re
import sys
import time
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional

# Context variables for request tracking
request_id_var: ContextVar[Optional[str]] = ContextVar("request_id", default=None)
organization_id_var: ContextVar[Optional[str]] = ContextVar("organization_id", default=None)
protocol_var: ContextVar[Optional[str]] = ContextVar("protocol", default=None)

# Patterns for sensitive data that should be redacted
SENSITIVE_PATTERNS: list[re.Pattern] = [
    re.compile(r'client[_-]?secret["\']?\s*[:=]\s*["\']?[^\s,}"\']+', re.IGNORECASE),
    re.compile(r'clientSecret["\']?\s*[:=]\s*["\']?[^\s,}"\']+'),
    re.compile(r'password["\']?\s*[:=]\s*["\']?[^\s,}]+', re.IGNORECASE),
    re.compile(r'secret["\']?\s*[:=]\s*["\']?[\w-]+', re.IGNORECASE),
    re.compile(r'(?:id_|access_|refresh_)?token["\']?\s*[:=]\s*["\']?[\w.-]+', re.IGNORECASE),
    re.compile(r'code_verifier["\']?\s*[:=]\s*["\']?[\w.~-]+', re.IGNORECASE),
    re.compile(r'SAMLResponse["\']?\s*[:=]\s*["\']?[A-Za-z0-9+/=\s]+', re.IGNORECASE),
    re.compile(r'bearer\s+[\w.-]+', re.IGNORECASE),
    re.compile(r'authorization["\']?\s*[:=]\s*["\']?[^\s,}]+', re.IGNORECASE),
    re.compile(r'eyJ[\w-]+\.eyJ[\w-]+\.[\w-]+'),  # JWTs
    re.compile(
        r'-----BEGIN [A-Z ]+-----[\s\S]*?-----END [A-Z ]+-----'
    ),  # PEM blocks
]

REDACTED = "[REDACTED]"

# Fields to exclude from extra data in JSON logs
EXCLUDED_RECORD_ATTRS = frozenset({
    "name", "msg", "args", "created", "filename", "funcName",
    "levelname", "levelno", "lineno", "module", "msecs",
    "pathname", "process", "processName", "relativeCreated",
    "stack_info", "exc_info", "exc_text", "thread", "threadName",
    "request_id", "organization_id", "protocol", "message", "taskName",
})


def redact_sensitive_data(message: str) -> str:
    """
    Redact sensitive data from log messages.

    Args:
        message: The log message to sanitize

    Returns:
        Message with sensitive data replaced with [REDACTED]
    """
    if not message:
        return message

    result = message
    for pattern in SENSITIVE_PATTERNS:
        result = pattern.sub(REDACTED, result)
    return result


class RequestContextFilter(logging.Filter):
    """Add request context to all log records."""

    def filter(self, record: logging.LogRecord) -> bool:
        # Values passed via extra= win over the ambient context.
        if getattr(record, "request_id", "-") in (None, "-"):
            record.request_id = request_id_var.get() or "-"
        if getattr(record, "organization_id", "-") in (None, "-"):
            record.organization_id = organization_id_var.get() or "-"
        if getattr(record, "protocol", "-") in (None, "-"):
            record.protocol = protocol_var.get() or "-"
        return True


class SensitiveDataFilter(logging.Filter):
    """Filter sensitive data from log messages."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.msg:
            record.msg = redact_sensitive_data(str(record.msg))
        if record.args:
            record.args = tuple(
                redact_sensitive_data(arg) if isinstance(arg, str) else arg
                for arg in record.args
            )
        return True


class JSONFormatter(logging.Formatter):
    """
    JSON formatter for structured logging in production.

    Outputs logs as single-line JSON objects:
    {
        "timestamp": "2024-01-15T10:30:00.123456Z",
        "level": "INFO",
        "logger": "src.auth.sso.dispatcher",
        "message": "SSO login succeeded",
        "service": "sso-federation",
        "request_id": "abc-123",
        "organization_id": "org-456",
        "protocol": "oidc",
        "extra": {...}
    }
    """

    def __init__(self, service_name: str = "sso-federation"):
        super().__init__()
        self.service_name = service_name

    def format(self, record: logging.LogRecord) -> str:
        log_data: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "request_id": getattr(record, "request_id", "-"),
            "organization_id": getattr(record, "organization_id", "-"),
            "protocol": getattr(record, "protocol", "-"),
        }

        if record.levelno >= logging.ERROR:
            log_data["source"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        extra_fields = {
            k: v for k, v in record.__dict__.items()
            if k not in EXCLUDED_RECORD_ATTRS and not k.startswith("_")
        }
        if extra_fields:
            log_data["extra"] = extra_fields

        return json.dumps(log_data, default=str, ensure_ascii=False)


class DevelopmentFormatter(logging.Formatter):
    """
    Human-readable formatter with colors for development.

    Format: [timestamp] LEVEL    [req_id] [org_id] protocol logger - message
    """

    COLORS: Dict[str, str] = {
        "DEBUG": "\033[36m",     # Cyan
        "INFO": "\033[32m",      # Green
        "WARNING": "\033[33m",   # Yellow
        "ERROR": "\033[31m",     # Red
        "CRITICAL": "\033[35m",  # Magenta
    }
    RESET = "\033[0m"
    BOLD = "\033[1m"
    DIM = "\033[2m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.COLORS.get(record.levelname, "")
        reset = self.RESET if color else ""

        request_id = getattr(record, "request_id", "-")
        organization_id = getattr(record, "organization_id", "-")
        protocol = getattr(record, "protocol", "-")

        req_display = request_id[:8] if request_id != "-" else "-"
        org_display = organization_id[:8] if organization_id != "-" else "-"

        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S.%f")[:-3]

        formatted = (
            f"{self.DIM}[{timestamp}]{self.RESET} "
            f"{color}{self.BOLD}{record.levelname:8}{reset} "
            f"{self.DIM}[{req_display:>8}] [{org_display:>8}] {protocol:>5}{self.RESET} "
            f"{record.name} - {record.getMessage()}"
        )

        extra_fields = {
            k: v for k, v in record.__dict__.items()
            if k not in EXCLUDED_RECORD_ATTRS and not k.startswith("_")
        }
        if extra_fields:
            formatted += f" {self.DIM}{extra_fields}{self.RESET}"

        if record.exc_info:
            formatted += f"\n{self.formatException(record.exc_info)}"

        return formatted


def setup_logging(
    service_name: str = "sso-federation",
    log_level: Optional[str] = None,
    force_json: Optional[bool] = None,
) -> logging.Logger:
    """
    Configure structured logging for the application.

    Called once at application startup. Defaults come from LoggingSettings
    (LOG_LEVEL, LOG_FORMAT_JSON, ENVIRONMENT).

    Args:
        service_name: Name of the service for log identification
        log_level: Override log level name
        force_json: Override JSON output selection

    Returns:
        Configured root logger
    """
    from src.config import get_settings

    settings = get_settings().logging
    level = getattr(logging, (log_level or settings.log_level).upper(), logging.INFO)
    use_json = force_json if force_json is not None else (
        settings.log_format_json or settings.is_production
    )

    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    # Remove existing handlers to avoid duplicate logs
    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.addFilter(RequestContextFilter())
    handler.addFilter(SensitiveDataFilter())

    if use_json:
        handler.setFormatter(JSONFormatter(service_name))
    else:
        handler.setFormatter(DevelopmentFormatter())

    root_logger.addHandler(handler)

    # Reduce noise from third-party libraries
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("asyncio").setLevel(logging.WARNING)
    logging.getLogger("signxml").setLevel(logging.WARNING)

    root_logger.info(
        "Logging configured",
        extra={
            "log_level": logging.getLevelName(level),
            "format": "json" if use_json else "development",
            "service": service_name,
        },
    )

    return root_logger


def set_request_context(
    request_id: Optional[str] = None,
    organization_id: Optional[str] = None,
    protocol: Optional[str] = None,
) -> None:
    """
    Set request context for the current async context.

    This context is included in all log messages made within
    the current async context.
    """
    if request_id is not None:
        request_id_var.set(request_id)
    if organization_id is not None:
        organization_id_var.set(organization_id)
    if protocol is not None:
        protocol_var.set(protocol)


def clear_request_context() -> None:
    """Clear request context after request completion."""
    request_id_var.set(None)
    organization_id_var.set(None)
    protocol_var.set(None)


def get_request_id() -> Optional[str]:
    """Get current request ID from context."""
    return request_id_var.get()


class Timer:
    """
    Context manager for timing operations.

    Usage:
        with Timer("saml_signature_verification", logger):
            verifier.verify(...)
    """

    def __init__(
        self,
        name: str,
        logger: Optional[logging.Logger] = None,
        log_level: int = logging.DEBUG,
    ):
        self.name = name
        self.logger = logger
        self.log_level = log_level
        self.start_time: Optional[float] = None
        self.elapsed_ms: float = 0

    def __enter__(self) -> "Timer":
        self.start_time = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        if self.start_time is not None:
            self.elapsed_ms = (time.perf_counter() - self.start_time) * 1000

        if self.logger:
            self.logger.log(
                self.log_level,
                f"{self.name} completed in {self.elapsed_ms:.2f}ms",
                extra={
                    "operation": self.name,
                    "duration_ms": round(self.elapsed_ms, 2),
                    "success": exc_type is None,
                },
            )
