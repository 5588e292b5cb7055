"""Per-request hooks: request ids, response headers, access and audit logs.

Every response carries ``X-Request-ID`` (the caller's value when sent,
otherwise a fresh one) so log lines of one API call can be correlated.
Calls that change state (``POST``, ``PUT``, ``PATCH``, ``DELETE`` on an
API blueprint) additionally produce one ``certkeeper.audit`` record.
"""

from __future__ import annotations

import logging
import time
from uuid import uuid4

from flask import Flask, Response, g, request

log = logging.getLogger(__name__)
access_log = logging.getLogger("certkeeper.access")
audit_log = logging.getLogger("certkeeper.audit")

_MUTATING_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

_SECURITY_HEADERS = {
    "X-Content-Type-Options": "nosniff",
    "X-Frame-Options": "DENY",
    # Responses may hold certificate material or masked secrets
    "Cache-Control": "no-store",
}


def _access_level(status: int) -> int:
    if status >= 500:
        return logging.ERROR
    if status >= 400:
        return logging.WARNING
    return logging.INFO


def _log_access(response: Response, duration_ms: float) -> None:
    access_log.log(
        _access_level(response.status_code),
        "%s %s %s %.1fms",
        request.method,
        request.path,
        response.status_code,
        duration_ms,
        extra={
            "method": request.method,
            "path": request.path,
            "status": response.status_code,
            "duration_ms": round(duration_ms, 1),
            "content_length": response.content_length,
        },
    )


def _log_audit(response: Response) -> None:
    # Only the route and its path arguments; bodies can hold passphrases
    audit_log.info(
        "%s %s -> %s",
        request.method,
        request.path,
        response.status_code,
        extra={
            "event": request.endpoint,
            "status": response.status_code,
            "view_args": dict(request.view_args or {}),
        },
    )


def register_request_hooks(app: Flask) -> None:
    """Attach the before/after request hooks to *app*."""

    @app.before_request
    def _start_request() -> None:
        g.request_id = request.headers.get("X-Request-ID") or uuid4().hex
        g.start_time = time.monotonic()

    @app.after_request
    def _finish_request(response: Response) -> Response:
        response.headers.update(_SECURITY_HEADERS)
        request_id = getattr(g, "request_id", None)
        if request_id:
            response.headers["X-Request-ID"] = request_id

        started = getattr(g, "start_time", None)
        elapsed = (time.monotonic() - started) * 1000 if started is not None else 0.0
        _log_access(response, elapsed)
        if request.blueprint and request.method in _MUTATING_METHODS:
            _log_audit(response)
        return response
