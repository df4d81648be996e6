"""
Logging setup for the relay: console + optional rotating file, with
structured fields from `extra={"fields": {...}}` rendered as key=value pairs.

Usage:

    from canva_relay.logging_util import configure_logging, get_logger

    configure_logging(level="INFO", log_file="relay.log")

    logger = get_logger(__name__)
    logger.info("callback completed", extra={"fields": {"stage": "callback"}})
"""

import logging
from logging.handlers import RotatingFileHandler
from typing import Optional, Union


_LEVEL_MAP = {
    "CRITICAL": logging.CRITICAL,
    "ERROR": logging.ERROR,
    "WARNING": logging.WARNING,
    "INFO": logging.INFO,
    "DEBUG": logging.DEBUG,
}

# Never rendered, even if a caller passes them in structured fields.
REDACTED_FIELDS = frozenset({
    "code_verifier",
    "client_secret",
    "access_token",
    "refresh_token",
    "authorization",
})


def _to_level(level: Union[int, str]) -> int:
    """Convert string/int level to a logging level int."""
    if isinstance(level, int):
        return level
    return _LEVEL_MAP.get(level.upper(), logging.INFO)


class StructuredFormatter(logging.Formatter):
    """Appends the record's structured `fields` mapping as key=value pairs."""

    def format(self, record: logging.LogRecord) -> str:
        message = super().format(record)
        fields = getattr(record, "fields", None)
        if not fields:
            return message
        rendered = " ".join(
            f"{key}={'[redacted]' if key.lower() in REDACTED_FIELDS else value!r}"
            for key, value in fields.items()
        )
        return f"{message} | {rendered}"


def configure_logging(
    *,
    level: Union[int, str] = "INFO",
    console_level: Optional[Union[int, str]] = None,
    file_level: Optional[Union[int, str]] = None,
    log_file: Optional[str] = None,
    max_bytes: int = 10 * 1024 * 1024,  # 10 MB
    backup_count: int = 5,
    fmt: str = "%(asctime)s | %(levelname)-8s | %(name)s | %(message)s",
    datefmt: str = "%Y-%m-%d %H:%M:%S",
    clear_existing: bool = True,
) -> None:
    """
    Configure application-wide logging.

    Parameters
    ----------
    level:
        Root logger level. Can be int or string (e.g. "DEBUG").
    console_level:
        Specific level for console. Defaults to `level`.
    file_level:
        Specific level for the file handler. Defaults to `level`.
    log_file:
        If provided, logs also go to a rotating file.
    max_bytes, backup_count:
        Rotation settings, only used with `log_file`.
    clear_existing:
        Remove existing root handlers first so repeated calls don't
        duplicate output.
    """
    root = logging.getLogger()
    root.setLevel(_to_level(level))

    if clear_existing:
        for h in list(root.handlers):
            root.removeHandler(h)

    formatter = StructuredFormatter(fmt=fmt, datefmt=datefmt)

    console_handler = logging.StreamHandler()
    console_handler.setLevel(_to_level(console_level or level))
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    if log_file:
        file_handler = RotatingFileHandler(
            filename=log_file,
            maxBytes=max_bytes,
            backupCount=backup_count,
            encoding="utf-8",
        )
        file_handler.setLevel(_to_level(file_level or level))
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)


def get_logger(name: Optional[str] = None) -> logging.Logger:
    return logging.getLogger(name)
