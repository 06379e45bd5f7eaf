"""
Structured logging configuration for requestgov.

Every component logs a constant message and puts its variable parts in
``extra={...}``. The formatters here turn those extras into either one JSON
object per line or a compact ``k=v`` suffix, and strip anything that could
leak an identity: credentials, tokens, login names, raw request bodies.

Usage:
    from requestgov.logging_config import setup_logging

    setup_logging(json_format=False)  # once, at startup
    logger = logging.getLogger(__name__)
    logger.warning("Rate limit hit", extra={"status": 429, "context": "create-item"})
"""

from __future__ import annotations

import logging
import re
import sys
from datetime import UTC, datetime
from typing import Any
from urllib.parse import urlsplit

import orjson

_URL_PATTERN = re.compile(r"(https?://[^\s\"'<>]+)")

# Order matters: the assignment forms must run before the bare bearer form.
_SENSITIVE_PATTERNS: list[tuple[re.Pattern[str], str]] = [
    (
        re.compile(r"\b(access_token|refresh_token|token)[=:]\s*['\"]?[\w\-\.]+['\"]?", re.I),
        "[TOKEN]",
    ),
    (re.compile(r"\b(password|passwd|pwd)[=:]\s*['\"]?[^\s,'\"]+['\"]?", re.I), "[PASSWORD]"),
    (re.compile(r"\bbearer\s+[\w\-\.=]+", re.I), "[TOKEN]"),
    (re.compile(r"\bauthorization[=:\s]+['\"]?[\w\-\.]+['\"]?", re.I), "[AUTH]"),
    (re.compile(r"\b(api[_-]?key|apikey)[=:]\s*['\"]?[\w\-]+['\"]?", re.I), "[API_KEY]"),
    (re.compile(r"\b[\w\.+-]+@[\w\.-]+\.\w+\b"), "[EMAIL]"),
    (re.compile(r"\b\d{1,3}\.\d{1,3}\.\d{1,3}\.\d{1,3}\b"), "[IP]"),
]

# Any extra whose name contains one of these words is dropped outright.
BLOCKED_FIELDS: frozenset[str] = frozenset(
    {
        "token",
        "password",
        "secret",
        "authorization",
        "bearer",
        "credential",
        "api_key",
        "cookie",
        "login",
        "email",
        "phone",
        "ip_address",
    }
)

# Fields replaced by a placeholder (or, for urls, reduced to their path).
REDACTED_FIELDS: dict[str, str] = {
    "url": "endpoint",
    "body": "[BODY]",
    "payload": "[PAYLOAD]",
    "json": "[PAYLOAD]",
    "params": "[PARAMS]",
    "headers": "[HEADERS]",
}

MAX_LIST_ITEMS = 10
MAX_DEPTH = 3

# Attributes every LogRecord carries; anything else came from ``extra``.
_RESERVED_ATTRS: frozenset[str] = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "stack_info",
        "exc_info",
        "exc_text",
        "thread",
        "threadName",
        "message",
        "taskName",
    }
)


def _endpoint_of(url: str) -> str:
    return urlsplit(url).path or "/"


def _mask_url(match: re.Match[str]) -> str:
    path = _endpoint_of(match.group(1))
    return path if path != "/" else "[URL]"


def _sanitize_text(text: str) -> str:
    """Mask URLs down to their path and scrub secrets out of free text."""
    if not text:
        return text

    result = _URL_PATTERN.sub(_mask_url, text)
    for pattern, replacement in _SENSITIVE_PATTERNS:
        result = pattern.sub(replacement, result)
    return result


def _is_blocked(key: str) -> bool:
    lowered = key.lower()
    return any(word in lowered for word in BLOCKED_FIELDS)


def filter_fields(fields: dict[str, Any], *, _depth: int = 0) -> dict[str, Any]:
    """Drop blocked fields and normalize the rest into log-safe values.

    Nested dicts are filtered recursively up to ``MAX_DEPTH`` levels.

    Args:
        fields: Raw ``extra`` mapping taken from a log record.

    Returns:
        A new mapping that is safe to emit.
    """
    if _depth > MAX_DEPTH:
        return {"_truncated": "max depth exceeded"}

    safe: dict[str, Any] = {}
    for key, value in fields.items():
        if _is_blocked(key):
            continue

        lowered = key.lower()
        if lowered in REDACTED_FIELDS:
            if lowered == "url" and isinstance(value, str):
                safe["endpoint"] = _endpoint_of(value)
            else:
                safe[key] = REDACTED_FIELDS[lowered]
            continue

        if value is None or isinstance(value, (bool, int, float)):
            safe[key] = value
        elif isinstance(value, str):
            safe[key] = _sanitize_text(value)
        elif isinstance(value, (list, tuple, set, frozenset)):
            items = list(value)
            if len(items) > MAX_LIST_ITEMS:
                safe[key] = f"[list:{len(items)} items]"
            else:
                safe[key] = [_sanitize_text(v) if isinstance(v, str) else v for v in items]
        elif isinstance(value, dict):
            safe[key] = filter_fields(value, _depth=_depth + 1)
        else:
            # Enums, slots and other objects are logged by their text form.
            safe[key] = _sanitize_text(str(getattr(value, "value", value)))
    return safe


class _StructuredFormatter(logging.Formatter):
    """Shared extraction of ``extra`` fields from a record."""

    @staticmethod
    def extra_fields(record: logging.LogRecord) -> dict[str, Any]:
        raw = {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}
        return filter_fields(raw) if raw else {}


class JsonFormatter(_StructuredFormatter):
    """One JSON object per line.

    Output format:
    {"ts":"2026-01-01T00:00:00.000+00:00","level":"WARNING","logger":"requestgov...","msg":"...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, Any] = {
            "ts": datetime.fromtimestamp(record.created, tz=UTC).isoformat(timespec="milliseconds"),
            "level": record.levelname,
            "logger": record.name,
            "msg": _sanitize_text(record.getMessage()),
        }
        if record.levelno >= logging.WARNING:
            entry["file"] = record.filename
            entry["line"] = record.lineno
        if record.exc_info:
            entry["exc"] = _sanitize_text(self.formatException(record.exc_info))

        entry.update(self.extra_fields(record))
        return orjson.dumps(entry, default=str).decode()


class SimpleFormatter(_StructuredFormatter):
    """Human-readable ``LEVEL logger: msg | k=v`` lines for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        line = f"{record.levelname:8s} {record.name}: {_sanitize_text(record.getMessage())}"
        extra = self.extra_fields(record)
        if extra:
            line = f"{line} | " + " ".join(f"{k}={v}" for k, v in extra.items())
        if record.exc_info:
            line = f"{line}\n{_sanitize_text(self.formatException(record.exc_info))}"
        return line


def setup_logging(
    *,
    level: int | str = logging.INFO,
    json_format: bool = True,
    stream: Any = None,
) -> None:
    """Configure the root logger once at startup.

    Args:
        level: Root log level.
        json_format: JSON lines when True, ``SimpleFormatter`` otherwise.
        stream: Output stream (default stderr).
    """
    handler = logging.StreamHandler(stream if stream is not None else sys.stderr)
    handler.setFormatter(JsonFormatter() if json_format else SimpleFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    root.handlers.clear()
    root.addHandler(handler)

    for noisy in ("aiohttp", "asyncio"):
        logging.getLogger(noisy).setLevel(logging.WARNING)
