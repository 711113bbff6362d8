"""
Logging setup for Roadmap Sync.

Every record leaving the root handler is stamped with the ids of the work
in flight: the request, the workspace, the sync run or ranking batch.
Code binds them once instead of passing ``extra=`` on each call:

    with log_context(workspace_id=wid, sync_id=run.id):
        logger.info("Hierarchy sync started")   # carries both ids

An explicit ``extra=`` still wins over the bound value.

Output format:
    DEBUG / TESTING → one console line per record, ids appended as key=value
    otherwise       → one JSON object per line
LOG_LEVEL (config or env) sets the level.
"""

import json
import logging
import sys
from contextlib import contextmanager
from contextvars import ContextVar, Token
from datetime import datetime, timezone

CONTEXT_FIELDS = ("request_id", "workspace_id", "sync_id", "board_id")
REQUEST_FIELDS = ("method", "path", "status", "duration_ms")

_QUIET_LOGGERS = ("urllib3", "werkzeug", "sqlalchemy.engine", "alembic")
_HANDLER_NAME = "roadmap_sync"

_bound: ContextVar[dict] = ContextVar("roadmap_sync_log_context", default={})


def bind_log_context(**fields) -> Token:
    """Add ``fields`` to the current context; pass the token to unbind_log_context()."""
    unknown = set(fields) - set(CONTEXT_FIELDS)
    if unknown:
        raise ValueError(f"Unsupported log context fields: {sorted(unknown)}")
    merged = dict(_bound.get())
    merged.update({k: v for k, v in fields.items() if v is not None})
    return _bound.set(merged)


def unbind_log_context(token: Token) -> None:
    _bound.reset(token)


@contextmanager
def log_context(**fields):
    token = bind_log_context(**fields)
    try:
        yield
    finally:
        unbind_log_context(token)


def current_log_context() -> dict:
    return dict(_bound.get())


class SyncContextFilter(logging.Filter):
    """Copy the bound context ids onto the record unless the call set them."""

    def filter(self, record: logging.LogRecord) -> bool:
        for key, value in _bound.get().items():
            if getattr(record, key, None) is None:
                setattr(record, key, value)
        return True


def _record_fields(record: logging.LogRecord, names) -> dict:
    return {
        name: getattr(record, name)
        for name in names
        if getattr(record, name, None) is not None
    }


class JSONFormatter(logging.Formatter):
    """One JSON object per record for log shipping."""

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "ts": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
        }
        entry.update(_record_fields(record, CONTEXT_FIELDS + REQUEST_FIELDS))
        if record.exc_info:
            entry["exc"] = self.formatException(record.exc_info)
        return json.dumps(entry, ensure_ascii=False, default=str)


class ConsoleFormatter(logging.Formatter):
    """``HH:MM:SS LEVEL logger: message  workspace=.. sync=..``"""

    _SHORT = {"workspace_id": "workspace", "sync_id": "sync", "board_id": "board", "request_id": "req"}

    def __init__(self):
        super().__init__("%(asctime)s %(levelname)-7s %(name)s: %(message)s", datefmt="%H:%M:%S")

    def format(self, record: logging.LogRecord) -> str:
        line = super().format(record)
        ids = _record_fields(record, CONTEXT_FIELDS)
        if ids:
            line += "  " + " ".join(f"{self._SHORT[k]}={v}" for k, v in ids.items())
        return line


def configure_logging(app):
    """Install the single root handler for this app and quieten chatty libraries."""
    verbose = app.config.get("DEBUG", False) or app.config.get("TESTING", False)
    level_name = str(app.config.get("LOG_LEVEL") or ("DEBUG" if verbose else "INFO")).upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(_HANDLER_NAME)
    handler.setFormatter(ConsoleFormatter() if verbose else JSONFormatter())
    handler.addFilter(SyncContextFilter())

    # Replace only our own handler so repeated create_app() calls do not stack output
    root = logging.getLogger()
    for existing in [h for h in root.handlers if h.get_name() == _HANDLER_NAME]:
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)

    app.logger.setLevel(level)
    app.logger.debug("Logging configured level=%s format=%s",
                     level_name, "console" if verbose else "json")
