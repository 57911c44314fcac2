"""
Logging configuration for tokenkeeper.

This module provides:
- Structured JSON logging with python-json-logger
- Configurable log formats (JSON or text)
- Redaction of OAuth secrets that end up in log messages
- Log level configuration per component
"""

import logging
import re
import sys

from pythonjsonlogger.json import JsonFormatter

REDACTED = "***"

_BEARER_RE = re.compile(r"(?i)\b(bearer\s+)[A-Za-z0-9\-._~+/]+=*")
_QUERY_SECRET_RE = re.compile(
    r"\b(access_token|refresh_token|id_token|code|code_verifier|client_secret)=([^&\s\"']+)"
)
_JSON_SECRET_RE = re.compile(
    r"(\"(?:access_token|refresh_token|id_token|code_verifier|client_secret)\"\s*:\s*\")[^\"]*(\")"
)


def redact(message: str) -> str:
    message = _BEARER_RE.sub(rf"\g<1>{REDACTED}", message)
    message = _QUERY_SECRET_RE.sub(rf"\g<1>={REDACTED}", message)
    message = _JSON_SECRET_RE.sub(rf"\g<1>{REDACTED}\g<2>", message)
    return message


class TokenRedactionFilter(logging.Filter):
    """
    Logging filter that masks OAuth secrets in log messages.

    Bearer tokens and token, code and verifier values in query strings, form
    bodies or JSON are replaced before the record is formatted. Records are
    never dropped.
    """

    def filter(self, record: logging.LogRecord) -> bool:
        """
        Redact secrets from the rendered message.

        Args:
            record: LogRecord instance

        Returns:
            Always True
        """
        message = record.getMessage()
        redacted = redact(message)
        if redacted != message:
            record.msg = redacted
            record.args = None
        return True


def setup_logging(log_format: str = "text", log_level: str = "INFO") -> None:
    """
    Configure logging for tokenkeeper.

    Args:
        log_format: "json" for JSON logging, "text" for human-readable text (default: "text")
        log_level: Minimum log level (DEBUG, INFO, WARNING, ERROR, CRITICAL) (default: "INFO")
    """
    level = getattr(logging, log_level.upper(), logging.INFO)

    root_logger = logging.getLogger()
    root_logger.setLevel(level)
    root_logger.handlers.clear()

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)
    console_handler.addFilter(TokenRedactionFilter())

    if log_format.lower() == "json":
        formatter = JsonFormatter(
            "%(asctime)s %(levelname)s %(name)s %(message)s",
            rename_fields={"asctime": "timestamp", "levelname": "level", "name": "logger"},
            datefmt="%Y-%m-%dT%H:%M:%S",
        )
    else:
        formatter = logging.Formatter(
            "%(levelname)s [%(asctime)s] %(name)s - %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)

    configure_component_loggers(log_level)

    root_logger.info(f"Logging configured: format={log_format}, level={log_level}")


def configure_component_loggers(default_level: str = "INFO") -> None:
    """
    Configure log levels for specific components.

    Args:
        default_level: Default log level for tokenkeeper loggers
    """
    logger_levels = {
        "tokenkeeper": default_level,
        "tokenkeeper.auth": default_level,
        "tokenkeeper.providers": default_level,
        # HTTP client loggers log full URLs, including query strings
        "httpx": "WARNING",
        "httpcore": "WARNING",
        # Callback listener
        "uvicorn": "WARNING",
        "uvicorn.error": "WARNING",
        "uvicorn.access": "WARNING",
    }

    for logger_name, level in logger_levels.items():
        logger = logging.getLogger(logger_name)
        logger.setLevel(getattr(logging, level.upper(), logging.INFO))
