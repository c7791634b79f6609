"""
Structured logging for bundleguard.

Every record becomes one JSON line on stderr:

    {"ts": "...", "level": "INFO", "logger": "playback_tracker",
     "msg": "playback_recorded", "media_id": "m-1", "total_plays": 2}

Event names are snake_case constants; context goes in `extra`:

    from logging_config import get_logger
    logger = get_logger(__name__)
    logger.warning("tamper_detected", extra={"now": now, "last_known_time": last})

Key material must never reach a log line.  Extra fields whose name is in
SENSITIVE_FIELDS are replaced with "[redacted]" by the formatter, so a stray
`extra={"device_key": ...}` is harmless.
"""
import json
import logging
import sys
from datetime import datetime, timezone

SENSITIVE_FIELDS = frozenset({
    "device_key", "bundle_key", "content_key", "shared_key", "wrapped_key",
})

# Attributes every LogRecord carries; anything else came in through `extra`.
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", None, None))) | {"message", "asctime"}


class _JsonFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        payload: dict = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        for field, value in record.__dict__.items():
            if field in _STANDARD_ATTRS:
                continue
            payload[field] = "[redacted]" if field in SENSITIVE_FIELDS else value
        if record.exc_info:
            payload["exc"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def setup_logging(level: str = "INFO") -> None:
    """Configure the root logger once; later calls are no-ops."""
    root = logging.getLogger()
    if root.handlers:
        return  # pytest and embedding hosts install their own handlers
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(_JsonFormatter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))


def get_logger(name: str) -> logging.Logger:
    return logging.getLogger(name)
