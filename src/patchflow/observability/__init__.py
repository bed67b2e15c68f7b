"""Public observability primitives: logging setup and redaction."""

from patchflow.observability.logging import (
    LoggingConfig,
    LogRedactor,
    default_log_redactor,
    redact_text,
    setup_logging,
    shutdown_logging,
)

__all__ = [
    "LogRedactor",
    "LoggingConfig",
    "default_log_redactor",
    "redact_text",
    "setup_logging",
    "shutdown_logging",
]
