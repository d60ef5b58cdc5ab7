"""Logging configuration."""

import logging
import os
import re
import sys

from pydantic import BaseModel

# Credentials that may end up in messages: bearer headers, Google access and
# refresh tokens, and Telegram bot tokens embedded in Bot API URLs.
SECRET_PATTERNS = (
    re.compile(r"(?i)(bearer\s+)[^\s,;\"']+"),
    re.compile(r"()ya29\.[\w.\-]+"),
    re.compile(r"()1//[\w.\-]+"),
    re.compile(r"(/bot)\d+:[\w\-]+"),
)
REDACTED = "[REDACTED]"


class LogConfig(BaseModel):
    """Logging configuration."""

    level: str = "INFO"
    format: str = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
    date_format: str = "%Y-%m-%d %H:%M:%S"
    redact_secrets: bool = True


def redact(text: str) -> str:
    """Mask credentials in a log message."""
    for pattern in SECRET_PATTERNS:
        text = pattern.sub(lambda match: f"{match.group(1)}{REDACTED}", text)
    return text


class SecretRedactingFilter(logging.Filter):
    """Handler filter that rewrites each record's message with credentials masked."""

    def filter(self, record: logging.LogRecord) -> bool:
        message = record.getMessage()
        masked = redact(message)
        if masked != message:
            record.msg = masked
            record.args = None
        return True


def setup_logging(config: LogConfig | None = None) -> None:
    """Set up logging configuration for the service."""
    if config is None:
        config = LogConfig(level=os.getenv("LOG_LEVEL", "INFO"))

    logging.basicConfig(
        level=getattr(logging, config.level.upper()),
        format=config.format,
        datefmt=config.date_format,
        stream=sys.stdout,
        force=True,
    )

    if config.redact_secrets:
        for handler in logging.getLogger().handlers:
            handler.addFilter(SecretRedactingFilter())

    # SDK and transport loggers echo request URLs and bodies below WARNING
    logging.getLogger("anthropic").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)


def get_logger(name: str, level: str | None = None) -> logging.Logger:
    """Get a logger for a module.

    Args:
        name: Module name (typically __name__)
        level: Optional explicit level, otherwise LOG_LEVEL from the environment

    Returns:
        Logger instance
    """
    logger = logging.getLogger(name)
    logger.setLevel((level or os.getenv("LOG_LEVEL", "INFO")).upper())
    return logger
