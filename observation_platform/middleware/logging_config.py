"""
Logging setup for the observation API.

Two renderings of the same records: a single-line readable form for local
work and one JSON object per line when DEBUG is off. Every record picks up
the request id and the acting user from ``flask.g`` when it is emitted
inside a request, so workflow log lines can be tied back to who did what.
"""

import json
import logging
import os
import sys
from datetime import datetime, timezone

from flask import g, has_app_context

# Keys copied from ``extra={...}`` onto the JSON payload when present
CONTEXT_KEYS = (
    "request_id",
    "actor_id",
    "actor_role",
    "session_id",
    "signature_id",
    "action",
    "from_status",
    "to_status",
    "method",
    "path",
    "status",
    "duration_ms",
    "remote_addr",
)

_LEVEL_COLOURS = {
    logging.DEBUG: "\033[36m",
    logging.INFO: "\033[32m",
    logging.WARNING: "\033[33m",
    logging.ERROR: "\033[31m",
    logging.CRITICAL: "\033[35m",
}
_RESET = "\033[0m"

_QUIET_LOGGERS = ("werkzeug", "sqlalchemy.engine", "urllib3")


class RequestContextFilter(logging.Filter):
    """Stamp request id and actor onto records emitted during a request."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not has_app_context():
            return True
        if getattr(record, "request_id", None) is None:
            record.request_id = g.get("request_id")
        for key in ("actor_id", "actor_role"):
            if getattr(record, key, None) is None:
                setattr(record, key, g.get(key))
        return True


class JSONFormatter(logging.Formatter):
    """One JSON document per record."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "ts": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "msg": record.getMessage(),
            "where": f"{record.module}.{record.funcName}:{record.lineno}",
        }
        payload.update(
            (key, getattr(record, key))
            for key in CONTEXT_KEYS
            if getattr(record, key, None) is not None
        )
        if record.exc_info and record.exc_info[0] is not None:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class ReadableFormatter(logging.Formatter):
    """Coloured single-line output, session and actor appended when known."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created).strftime("%H:%M:%S")
        colour = _LEVEL_COLOURS.get(record.levelno, "")
        line = f"{colour}{stamp} {record.levelname:<8}{_RESET} {record.name}: {record.getMessage()}"

        tags = []
        for key in ("session_id", "actor_id", "action"):
            value = getattr(record, key, None)
            if value:
                tags.append(f"{key.split('_')[0]}={value}")
        duration = getattr(record, "duration_ms", None)
        if duration is not None:
            tags.append(f"{duration:.0f}ms")
        if tags:
            line += " [" + " ".join(tags) + "]"

        if record.exc_info and record.exc_info[0] is not None:
            line += "\n" + self.formatException(record.exc_info)
        return line


def configure_logging(app):
    """Install one stderr handler on the root logger.

    LOG_LEVEL overrides the level. JSON output is used whenever the app is
    neither in debug nor in testing mode.
    """
    testing = app.config.get("TESTING", False)
    structured = not app.config.get("DEBUG", False) and not testing

    level_name = os.getenv("LOG_LEVEL", "INFO" if structured else "DEBUG").upper()
    level = logging.getLevelName(level_name)
    if not isinstance(level, int):
        level = logging.INFO

    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(JSONFormatter() if structured else ReadableFormatter())
    handler.addFilter(RequestContextFilter())
    handler.setLevel(level)

    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(level)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    app.logger.setLevel(level)

    if not testing:
        app.logger.info("logging ready (level=%s, json=%s)", level_name, structured)
