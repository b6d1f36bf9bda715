from __future__ import annotations

import json
import logging
import os
import re
from collections.abc import MutableMapping
from typing import Any

_REDACTION_RULES: tuple[tuple[re.Pattern[str], str], ...] = (
    (
        re.compile(r"(?i)(bearer\s+)([A-Za-z0-9._~+/=-]+)"),
        r"\1[REDACTED]",
    ),
    (
        re.compile(
            r"(?i)(\b(?:authorization|token|password|passwd|secret|api[_-]?key)\b\s*[:=]\s*)([^\s,;]+)"
        ),
        r"\1[REDACTED]",
    ),
    (
        re.compile(r"(?i)([?&](?:token|access_token|api_key|password)=)([^&\s]+)"),
        r"\1[REDACTED]",
    ),
)

_LEVELS: dict[str, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warning": logging.WARNING,
    "error": logging.ERROR,
    "fatal": logging.CRITICAL,
    "panic": logging.CRITICAL,
}

# Attributes present on every LogRecord; anything else was bound by an adapter.
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)).keys()
) | {"message", "asctime"}


def redact_sensitive_text(value: str) -> str:
    redacted = value
    for pattern, replacement in _REDACTION_RULES:
        redacted = pattern.sub(replacement, redacted)
    return redacted


def parse_log_level(level: str | None) -> int:
    """Map a level name to a :mod:`logging` level, ignoring case.

    ``fatal`` and ``panic`` both become ``CRITICAL``.  Anything not
    recognised falls back to ``WARNING``.
    """
    if not level:
        return logging.WARNING
    return _LEVELS.get(level.strip().lower(), logging.WARNING)


def _bound_fields(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RESERVED_ATTRS and not key.startswith("_")
    }


def _caller(record: logging.LogRecord) -> str:
    return f"{os.path.basename(record.pathname)}:{record.lineno}"


class JSONFormatter(logging.Formatter):
    """Emit logs as single-line JSON objects for structured log aggregation."""

    def format(self, record: logging.LogRecord) -> str:
        log_entry: dict[str, Any] = {
            "ts": self.formatTime(record, self.datefmt),
            "level": record.levelname,
            "logger": record.name,
            "caller": _caller(record),
            "msg": redact_sensitive_text(record.getMessage()),
        }
        for key, value in _bound_fields(record).items():
            log_entry.setdefault(key, value)
        if record.exc_info and record.exc_info[0] is not None:
            log_entry["error"] = redact_sensitive_text(self.formatException(record.exc_info))
        return json.dumps(log_entry, default=str)


class TextFormatter(logging.Formatter):
    """Human-readable single-line output with a full timestamp and caller."""

    def format(self, record: logging.LogRecord) -> str:
        line = (
            f"{self.formatTime(record, self.datefmt)} {record.levelname:<8} "
            f"[{_caller(record)}] {redact_sensitive_text(record.getMessage())}"
        )
        fields = _bound_fields(record)
        if fields:
            line += " " + " ".join(f"{key}={value}" for key, value in sorted(fields.items()))
        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + redact_sensitive_text(self.formatException(record.exc_info))
        return line


class FieldsAdapter(logging.LoggerAdapter):
    """LoggerAdapter that merges bound fields into each record's ``extra``."""

    def process(self, msg: Any, kwargs: MutableMapping[str, Any]) -> tuple[Any, MutableMapping[str, Any]]:
        kwargs["extra"] = {**(self.extra or {}), **kwargs.get("extra", {})}
        return msg, kwargs

    def with_fields(self, **fields: Any) -> FieldsAdapter:
        return FieldsAdapter(self.logger, {**(self.extra or {}), **fields})


def prepare_logger(
    level: str,
    json_output: bool,
    version: str,
    name: str = "kubeip",
) -> FieldsAdapter:
    """Configure the root handler and return a logger bound to ``version``.

    Replaces any handlers already installed on the root logger so repeated
    calls (tests, re-exec) do not duplicate output.
    """
    handler = logging.StreamHandler()
    handler.setFormatter(JSONFormatter() if json_output else TextFormatter())
    logging.root.handlers.clear()
    logging.root.addHandler(handler)
    logging.root.setLevel(parse_log_level(level))
    return FieldsAdapter(logging.getLogger(name), {"version": version})
