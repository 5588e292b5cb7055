"""Request helpers shared by the API blueprints.

Provides:
- ``certificate_route``: decorator canonicalising the ``fp`` path argument
- ``json_body``: the request's JSON object, or ``InvalidInput``
- ``success``: the ``{success: true, ...}`` response envelope
"""

from __future__ import annotations

import functools
from typing import Any

from flask import jsonify, request

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.crypto.backend import normalize_fingerprint


def certificate_route(view):
    """Strip any ``sha256 Fingerprint=`` prefix and canonicalise ``fp``."""

    @functools.wraps(view)
    def wrapper(*args, **kwargs):
        if "fp" in kwargs:
            kwargs["fp"] = normalize_fingerprint(kwargs["fp"])
        return view(*args, **kwargs)

    return wrapper


def json_body(*, required: bool = True) -> dict[str, Any]:
    """Return the JSON object sent with the request.

    An empty body yields ``{}`` unless *required*; anything that is not
    a JSON object is rejected.
    """
    if not request.get_data(cache=True):
        if required:
            raise CertProblem(ErrorKind.INVALID_INPUT, "Request body must be a JSON object")
        return {}
    data = request.get_json(silent=True)
    if not isinstance(data, dict):
        raise CertProblem(ErrorKind.INVALID_INPUT, "Request body must be a JSON object")
    return data


def query_flag(name: str, default: bool = False) -> bool:  # noqa: FBT001, FBT002
    raw = request.args.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in ("1", "true", "yes", "on")


def success(message: str | None = None, status: int = 200, **payload: Any):  # noqa: ANN401
    body: dict[str, Any] = {"success": True}
    if message:
        body["message"] = message
    body.update(payload)
    response = jsonify(body)
    response.status_code = status
    return response
