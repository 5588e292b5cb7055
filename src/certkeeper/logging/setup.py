"""Log formatting and handler wiring.

``configure_logging`` is called once at start-up (and again on a SIGHUP
reload).  All certkeeper loggers hang below ``certkeeper``; that logger
gets a single stderr handler in either JSON-lines or plain text form.
A rotating audit file, always JSON, is attached to ``certkeeper.audit``
when enabled.
"""

from __future__ import annotations

import json
import logging
import sys
from datetime import UTC, datetime
from logging.handlers import RotatingFileHandler
from typing import TYPE_CHECKING, Any

from certkeeper.logging.sanitize import sanitize_for_logs

if TYPE_CHECKING:
    from certkeeper.config.settings import AuditLogSettings, LoggingSettings

# Request attributes and the value they get outside a request
_CONTEXT_DEFAULTS: dict[str, Any] = {
    "request_id": "-",
    "client_ip": "-",
    "method": None,
    "path": None,
}

# Everything a bare LogRecord carries; anything else came in via ``extra=``
_RECORD_ATTRS = frozenset(
    vars(logging.LogRecord("", logging.INFO, "", 0, "", (), None)),
) | {"message", "asctime", "taskName"} | frozenset(_CONTEXT_DEFAULTS)

_QUIET_LOGGERS = (
    "werkzeug",
    "gunicorn",
    "gunicorn.access",
    "gunicorn.error",
    "paramiko",
    "docker",
    "urllib3",
    "smbprotocol",
    "watchdog",
)


def _extras(record: logging.LogRecord) -> dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_ATTRS and not key.startswith("_")
    }


class StructuredFormatter(logging.Formatter):
    """One JSON object per line.

    Request context is included only when it was filled in by
    :class:`RequestContextFilter`; ``extra=`` fields are passed through
    :func:`sanitize_for_logs` first.
    """

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        entry: dict[str, Any] = {
            "timestamp": datetime.fromtimestamp(record.created, tz=UTC).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.message,
        }
        entry.update(
            (name, value)
            for name in _CONTEXT_DEFAULTS
            if (value := getattr(record, name, None)) not in (None, "-")
        )
        for key, value in sanitize_for_logs(_extras(record)).items():
            entry.setdefault(key, value)

        if record.exc_info and record.exc_info[0] is not None:
            entry["exception"] = self.formatException(record.exc_info)
        if record.stack_info:
            entry["stack_info"] = self.formatStack(record.stack_info)
        return json.dumps(entry, default=str)


class TextFormatter(logging.Formatter):
    """Console format: time, level, request id, logger and message."""

    def __init__(self) -> None:
        super().__init__(
            fmt="%(asctime)s %(levelname)-8s [%(request_id)s] %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        )


class RequestContextFilter(logging.Filter):
    """Stamp records with the current request's id, client, method and path.

    Records logged from the scheduler, renewal workers or the dispatcher
    run outside any request and get the placeholders instead.
    """

    def filter(self, record: logging.LogRecord) -> bool:  # type: ignore[override]
        for name, default in _CONTEXT_DEFAULTS.items():
            if not hasattr(record, name):
                setattr(record, name, default)

        from flask import g, has_request_context, request  # noqa: PLC0415

        if has_request_context():
            record.request_id = getattr(g, "request_id", record.request_id)  # type: ignore[attr-defined]
            record.client_ip = request.remote_addr or record.client_ip  # type: ignore[attr-defined]
            record.method = request.method  # type: ignore[attr-defined]
            record.path = request.path  # type: ignore[attr-defined]
        return True


def _audit_handler(
    audit: AuditLogSettings,
    context: logging.Filter,
) -> logging.Handler | None:
    try:
        handler = RotatingFileHandler(
            audit.file,
            maxBytes=audit.max_file_size_bytes,
            backupCount=audit.backup_count,
            encoding="utf-8",
        )
    except OSError as exc:
        logging.getLogger("certkeeper").warning(
            "Audit log %s unavailable: %s", audit.file, exc,
        )
        return None
    handler.setFormatter(StructuredFormatter())
    handler.addFilter(context)
    return handler


def configure_logging(settings: LoggingSettings) -> logging.Logger:
    """Install handlers for the ``certkeeper`` logger tree.

    Parameters
    ----------
    settings:
        The ``logging`` section of the configuration.

    Returns
    -------
    logging.Logger
        The ``certkeeper`` logger.  It no longer propagates to the root
        logger, so earlier bootstrap handlers stop receiving records.

    """
    root = logging.getLogger("certkeeper")
    level = logging.getLevelName(settings.level.upper())
    root.setLevel(level if isinstance(level, int) else logging.INFO)
    root.propagate = False
    for handler in list(root.handlers):
        root.removeHandler(handler)

    context = RequestContextFilter()
    console = logging.StreamHandler(sys.stderr)
    console.setFormatter(
        StructuredFormatter() if settings.format == "json" else TextFormatter(),
    )
    console.addFilter(context)
    root.addHandler(console)

    logging.getLogger("certkeeper.access").setLevel(logging.INFO)

    if settings.audit.enabled and settings.audit.file:
        audit_logger = logging.getLogger("certkeeper.audit")
        audit_logger.setLevel(logging.INFO)
        handler = _audit_handler(settings.audit, context)
        if handler is not None:
            audit_logger.addHandler(handler)

    for name in _QUIET_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)
    return root
