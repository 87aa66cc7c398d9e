"""Logging setup for sync runs: structured JSON output and secret redaction."""

import json
import logging
import sys
import uuid
from collections.abc import Iterable
from datetime import datetime, timezone

LOG_FORMAT = "%(asctime)s [%(levelname)-8s] %(name)s: %(message)s"
REDACTED = "***REDACTED***"

# Attributes every LogRecord carries; anything else came in through ``extra=``
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
    | {"message", "asctime", "run_id"}
)


def generate_run_id() -> str:
    """Return an 8-character hex run identifier."""
    return uuid.uuid4().hex[:8]


def record_fields(record: logging.LogRecord) -> dict[str, object]:
    """Return the structured fields attached to a record via ``extra=``."""
    return {k: v for k, v in record.__dict__.items() if k not in _RESERVED_ATTRS}


class RunContextFilter(logging.Filter):
    """Stamps every record with the current run id."""

    def __init__(self, run_id: str) -> None:
        super().__init__()
        self.run_id = run_id

    def filter(self, record: logging.LogRecord) -> bool:
        record.run_id = self.run_id
        return True


class TokenRedactionFilter(logging.Filter):
    """Logging filter that replaces raw secrets with ``***REDACTED***``."""

    def __init__(self, tokens: Iterable[str]) -> None:
        super().__init__()
        self._tokens = [t for t in tokens if t]

    def _redact(self, value: object) -> object:
        text = str(value)
        if not any(t in text for t in self._tokens):
            return value
        for token in self._tokens:
            text = text.replace(token, REDACTED)
        return text

    def filter(self, record: logging.LogRecord) -> bool:
        if not self._tokens:
            return True
        record.msg = self._redact(record.msg)
        if isinstance(record.args, tuple):
            record.args = tuple(self._redact(a) for a in record.args)
        elif isinstance(record.args, dict):
            record.args = {k: self._redact(v) for k, v in record.args.items()}
        for key, value in record_fields(record).items():
            setattr(record, key, self._redact(value))
        return True


class JsonFormatter(logging.Formatter):
    """One JSON object per line: timestamp, level, message, run id and extras."""

    def format(self, record: logging.LogRecord) -> str:
        entry: dict[str, object] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname.lower(),
            "logger": record.name,
            "message": record.getMessage(),
        }
        run_id = getattr(record, "run_id", None)
        if run_id:
            entry["run_id"] = run_id
        entry.update(record_fields(record))
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry, default=str)


class KeyValueFormatter(logging.Formatter):
    """Human-readable format with structured fields appended as ``key=value``."""

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        fields = record_fields(record)
        if fields:
            line += " " + " ".join(f"{k}={v}" for k, v in fields.items())
        return line


def setup_logging(
    verbose: bool = False,
    json_logs: bool = False,
    secrets: Iterable[str] = (),
    run_id: str | None = None,
) -> str:
    """
    Configure root logging for a sync run.

    Args:
        verbose: Log at DEBUG instead of INFO
        json_logs: Emit one JSON object per line instead of text
        secrets: Values masked wherever they would appear in output
        run_id: Identifier stamped on every record (generated if omitted)

    Returns:
        The run id in use.
    """
    run_id = run_id or generate_run_id()

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JsonFormatter() if json_logs else KeyValueFormatter(LOG_FORMAT))
    handler.addFilter(RunContextFilter(run_id))
    handler.addFilter(TokenRedactionFilter(secrets))

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(logging.DEBUG if verbose else logging.INFO)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    return run_id
