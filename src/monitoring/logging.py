"""
Structured logging for RaceSteward.

Two output modes share one pipeline:
- JSON lines for log aggregation (LOG_FORMAT=json, and always for --log-file)
- a compact colored console line for development

Every line carries the current sweep or request context (sweep_id,
request_id, user_id) and is scrubbed of push device tokens, provider
credentials and API keys before it leaves the process.
"""

import json
import logging
import re
import sys
import threading
from datetime import UTC, datetime
from typing import Any

NAMESPACE = "racesteward"

# Redaction

_TEXT_RULES = [
    (re.compile(r"(api[_-]?key|secret|password|access[_-]?token)([\"']?\s*[:=]\s*[\"']?)([^\s\"',}{]+)", re.IGNORECASE),
     r"\1\2[REDACTED]"),
    (re.compile(r"(Bearer\s+)(\S+)", re.IGNORECASE), r"\1[REDACTED]"),
    # FCM registration tokens look like "<instance id>:APA91<base64url>"
    (re.compile(r"\b([A-Za-z0-9_-]{6})[A-Za-z0-9_-]*:APA91[A-Za-z0-9_-]{20,}"), r"\1...[REDACTED_TOKEN]"),
    # keep the domain of an address, hide the mailbox
    (re.compile(r"([a-zA-Z0-9._%+-]+)@([a-zA-Z0-9.-]+\.[a-zA-Z]{2,})"), r"\1[...]@\2"),
]

SECRET_KEYS = frozenset({
    "access_token",
    "api_key",
    "apikey",
    "authorization",
    "credentials",
    "fcm_token",
    "password",
    "secret",
    "token",
    "tokens",
})

_MAX_DEPTH = 10

# attributes every LogRecord has; anything else came in through ``extra=``
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime"}


def redact_string(text: str) -> str:
    """Scrub secrets out of free text."""
    if not isinstance(text, str):
        return text
    for rule, replacement in _TEXT_RULES:
        text = rule.sub(replacement, text)
    return text


def redact_sensitive_data(data: Any, depth: int = 0) -> Any:
    """
    Return a copy of ``data`` safe to log.

    Values under secret-looking keys are replaced outright; strings anywhere
    in the structure go through redact_string().
    """
    if depth > _MAX_DEPTH:
        return "[MAX_DEPTH_EXCEEDED]"
    if isinstance(data, dict):
        return {
            key: "[REDACTED]"
            if str(key).lower().replace("-", "_") in SECRET_KEYS
            else redact_sensitive_data(value, depth + 1)
            for key, value in data.items()
        }
    if isinstance(data, (list, tuple)):
        return [redact_sensitive_data(item, depth + 1) for item in data]
    return redact_string(data)


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {k: v for k, v in vars(record).items() if k not in _STANDARD_ATTRS}


# Per-thread context (one sweep or one request per thread at a time)

_context = threading.local()


def get_log_context() -> dict[str, Any]:
    return getattr(_context, "values", {})


def set_log_context(**values) -> None:
    _context.values = {**get_log_context(), **values}


def clear_log_context() -> None:
    _context.values = {}


class LoggingContext:
    """
    Attach values to every log line emitted inside the block.

        with LoggingContext(sweep_id=sweep_id):
            logger.info("Sweeping %d events", len(events))

    Blocks nest; leaving one restores the enclosing context.
    """

    def __init__(self, **values):
        self.values = values
        self._saved: dict[str, Any] = {}

    def __enter__(self):
        self._saved = get_log_context()
        set_log_context(**self.values)
        return self

    def __exit__(self, *exc):
        _context.values = self._saved
        return False


class JSONFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "sweeper",
         "message": "Sweep finished", "context": {"sweep_id": "a1b2c3"},
         "events_checked": 4}

    Warnings and above carry their source location.
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": redact_string(record.getMessage()),
        }
        if record.levelno >= logging.WARNING:
            entry["location"] = {
                "file": record.pathname,
                "line": record.lineno,
                "function": record.funcName,
            }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)

        context = get_log_context()
        if context:
            entry["context"] = redact_sensitive_data(context)
        entry.update(redact_sensitive_data(_extras(record)))
        return json.dumps(entry, default=str)


class ConsoleFormatter(logging.Formatter):
    """Colored single-line output for a terminal."""

    LEVEL_COLORS = {
        "DEBUG": "\033[36m",
        "INFO": "\033[32m",
        "WARNING": "\033[33m",
        "ERROR": "\033[31m",
        "CRITICAL": "\033[35m",
    }
    RESET = "\033[0m"

    def format(self, record: logging.LogRecord) -> str:
        color = self.LEVEL_COLORS.get(record.levelname, "")
        clock = datetime.fromtimestamp(record.created).strftime("%H:%M:%S.%f")[:-3]
        parts = [
            f"{color}{clock} {record.levelname:<7} {record.name}{self.RESET}",
            redact_string(record.getMessage()),
        ]

        context = get_log_context()
        if context:
            parts.append(f"{color}(" + " ".join(f"{k}={v}" for k, v in context.items()) + f"){self.RESET}")
        extras = redact_sensitive_data(_extras(record))
        if extras:
            parts.append("[" + ", ".join(f"{k}={v}" for k, v in extras.items()) + "]")

        line = " ".join(parts)
        if record.exc_info:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(level: str = "INFO", json_output: bool = False, log_file: str | None = None) -> None:
    """
    Install RaceSteward's handlers on the root logger.

    Called once by each entry point (CLI, run_server.py); library modules
    only ever call logging.getLogger(__name__).

    Args:
        level: DEBUG, INFO, WARNING, ERROR or CRITICAL
        json_output: JSON lines on stdout instead of the console format
        log_file: Also append JSON lines to this file
    """
    root = logging.getLogger()
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    root.handlers.clear()

    stdout = logging.StreamHandler(sys.stdout)
    stdout.setFormatter(JSONFormatter() if json_output else ConsoleFormatter())
    root.addHandler(stdout)

    if log_file:
        to_file = logging.FileHandler(log_file)
        to_file.setFormatter(JSONFormatter())
        root.addHandler(to_file)

    # requests' connection pool and the dev server log every call at INFO
    for noisy in ("urllib3", "werkzeug"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


def get_logger(name: str) -> logging.Logger:
    """Logger under the ``racesteward`` namespace, e.g. get_logger("sweeper")."""
    if not name.startswith(NAMESPACE):
        name = f"{NAMESPACE}.{name}"
    return logging.getLogger(name)
