"""Error kinds and the JSON error envelope.

Provides :class:`CertProblem`, an exception that renders itself as a
``{success: false, message, kind}`` response, plus a Flask
error-handler registration function.

Usage::

    raise CertProblem(ErrorKind.NOT_FOUND, "Certificate not found")
"""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import Any

from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

log = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Error kinds
# ---------------------------------------------------------------------------


class ErrorKind(StrEnum):
    NOT_FOUND = "NotFound"
    CONFLICT = "Conflict"
    INVALID_INPUT = "InvalidInput"
    INVALID_SCHEDULE = "InvalidSchedule"
    PASSPHRASE_REQUIRED = "PassphraseRequired"
    VAULT_SEALED = "VaultSealed"
    SIGNER_UNAVAILABLE = "SignerUnavailable"
    ISSUANCE_FAILED = "IssuanceFailed"
    MATERIALIZATION_FAILED = "MaterializationFailed"
    ARCHIVE_FAILED = "ArchiveFailed"
    CANCELLED = "Cancelled"
    TIMEOUT = "Timeout"
    ADAPTER_UNREACHABLE = "AdapterUnreachable"
    ADAPTER_AUTH = "AdapterAuth"
    ADAPTER_REMOTE = "AdapterRemote"
    TRANSIENT = "Transient"
    INTERNAL = "Internal"


_DEFAULT_STATUS: dict[ErrorKind, int] = {
    ErrorKind.NOT_FOUND: 404,
    ErrorKind.CONFLICT: 409,
    ErrorKind.INVALID_INPUT: 400,
    ErrorKind.INVALID_SCHEDULE: 400,
    ErrorKind.PASSPHRASE_REQUIRED: 400,
    ErrorKind.VAULT_SEALED: 503,
    ErrorKind.SIGNER_UNAVAILABLE: 422,
    ErrorKind.ISSUANCE_FAILED: 500,
    ErrorKind.MATERIALIZATION_FAILED: 500,
    ErrorKind.ARCHIVE_FAILED: 500,
    ErrorKind.CANCELLED: 409,
    ErrorKind.TIMEOUT: 504,
    ErrorKind.ADAPTER_UNREACHABLE: 502,
    ErrorKind.ADAPTER_AUTH: 502,
    ErrorKind.ADAPTER_REMOTE: 502,
    ErrorKind.TRANSIENT: 503,
    ErrorKind.INTERNAL: 500,
}

RETRYABLE_KINDS: frozenset[ErrorKind] = frozenset(
    {ErrorKind.TRANSIENT, ErrorKind.TIMEOUT, ErrorKind.ADAPTER_UNREACHABLE},
)

# Kinds reported under a broader public kind in the JSON envelope
_PUBLIC_KIND: dict[ErrorKind, ErrorKind] = {
    ErrorKind.INVALID_SCHEDULE: ErrorKind.INVALID_INPUT,
}


# ---------------------------------------------------------------------------
# Problem exception
# ---------------------------------------------------------------------------


class CertProblem(Exception):
    """An error that carries its own kind and doubles as a response.

    Raise anywhere in the engine; the registered Flask error handler
    catches it and calls :meth:`to_response`.  Outside of a request it
    behaves like any other exception and carries :attr:`kind` into
    logs and persisted renewal status.

    Parameters
    ----------
    kind:
        One of :class:`ErrorKind`.
    detail:
        Short human-readable message.  Never include secrets or traces.
    status:
        HTTP status code; defaults to the kind's standard status.
    payload:
        Extra JSON members merged into the response body.

    """

    def __init__(
        self,
        kind: ErrorKind,
        detail: str,
        status: int | None = None,
        *,
        payload: dict[str, Any] | None = None,
    ) -> None:
        self.kind = kind
        self.detail = detail
        self.status = status if status is not None else _DEFAULT_STATUS[kind]
        self.payload = payload or {}
        super().__init__(detail)

    @property
    def retryable(self) -> bool:
        return self.kind in RETRYABLE_KINDS

    @property
    def public_kind(self) -> ErrorKind:
        return _PUBLIC_KIND.get(self.kind, self.kind)

    def to_dict(self) -> dict[str, Any]:
        """Serialise to the error envelope."""
        body: dict[str, Any] = dict(self.payload)
        body.update(
            {
                "success": False,
                "message": self.detail,
                "kind": self.public_kind.value,
            },
        )
        return body

    def to_response(self):
        """Build a Flask :class:`~flask.Response`."""
        resp = jsonify(self.to_dict())
        resp.status_code = self.status
        resp.headers["Cache-Control"] = "no-store"
        return resp

    def __repr__(self) -> str:
        return f"CertProblem({self.kind.value}, {self.detail!r})"


def kind_of(exc: BaseException) -> ErrorKind:
    """Return the error kind for any exception raised inside the engine."""
    if isinstance(exc, CertProblem):
        return exc.kind
    if isinstance(exc, TimeoutError):
        return ErrorKind.TIMEOUT
    if isinstance(exc, (ConnectionError, OSError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.INTERNAL


# ---------------------------------------------------------------------------
# Flask error handler registration
# ---------------------------------------------------------------------------


def register_error_handlers(app: Flask) -> None:
    """Attach handlers that produce the JSON error envelope for all errors."""

    @app.errorhandler(CertProblem)
    def _handle_cert_problem(exc: CertProblem):
        if exc.status >= 500:
            log.error("Request failed: %s (%s)", exc.detail, exc.kind.value)
        return exc.to_response()

    @app.errorhandler(HTTPException)
    def _handle_http_exception(exc: HTTPException):
        kind = ErrorKind.NOT_FOUND if exc.code == 404 else ErrorKind.INVALID_INPUT
        if exc.code and exc.code >= 500:
            kind = ErrorKind.INTERNAL
        problem = CertProblem(
            kind,
            exc.description or "An error occurred",
            exc.code or 500,
        )
        return problem.to_response()

    @app.errorhandler(Exception)
    def _handle_unhandled(exc: Exception):
        # HTTPException subclasses are already caught above; this
        # handler covers everything else (genuine 500s).
        log.exception("Unhandled exception during request")
        problem = CertProblem(
            ErrorKind.INTERNAL,
            "An unexpected internal error occurred",
            500,
        )
        return problem.to_response()
