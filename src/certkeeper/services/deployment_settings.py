"""Global deployment settings shared by all deployment actions.

Three categories live in one JSON file:

``email``
    Default SMTP relay for email actions.
``nginxProxyManager``
    Default Nginx Proxy Manager instance and credentials.
``defaults``
    Per-kind action timeouts overriding the configured ones.

Secrets are stored as ``enc:v1:`` tokens and masked on every read
through the API.  Writing back a masked value keeps the stored secret.
"""

from __future__ import annotations

import copy
import logging
import threading
from typing import TYPE_CHECKING, Any

from jsonschema import Draft7Validator

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.fs import atomic_write_json, read_json
from certkeeper.models.action import SECRET_MASK

if TYPE_CHECKING:
    from pathlib import Path

    from certkeeper.vault.keys import SecretBox

log = logging.getLogger(__name__)

CATEGORIES = ("email", "nginxProxyManager", "defaults")

DEFAULTS: dict[str, dict[str, Any]] = {
    "email": {
        "smtp": {
            "host": "",
            "port": 587,
            "secure": False,
            "user": "",
            "password": "",
            "from": "",
        },
    },
    "nginxProxyManager": {
        "host": "",
        "port": 81,
        "useHttps": False,
        "username": "",
        "password": "",
        "accessToken": "",
        "refreshToken": "",
        "tokenExpiry": None,
    },
    "defaults": {"timeouts": {}},
}

_SECRETS: dict[str, tuple[tuple[str, ...], ...]] = {
    "email": (("smtp", "password"),),
    "nginxProxyManager": (("password",), ("accessToken",), ("refreshToken",)),
    "defaults": (),
}

_STR = {"type": "string"}
_SCHEMAS: dict[str, dict[str, Any]] = {
    "email": {
        "type": "object",
        "properties": {
            "smtp": {
                "type": "object",
                "properties": {
                    "host": _STR,
                    "port": {"type": "integer", "minimum": 1, "maximum": 65535},
                    "secure": {"type": "boolean"},
                    "user": _STR,
                    "password": _STR,
                    "from": _STR,
                },
                "additionalProperties": False,
            },
        },
        "additionalProperties": False,
    },
    "nginxProxyManager": {
        "type": "object",
        "properties": {
            "host": _STR,
            "port": {"type": "integer", "minimum": 1, "maximum": 65535},
            "useHttps": {"type": "boolean"},
            "username": _STR,
            "password": _STR,
            "accessToken": _STR,
            "refreshToken": _STR,
            "tokenExpiry": {"type": ["string", "null"]},
        },
        "additionalProperties": False,
    },
    "defaults": {
        "type": "object",
        "properties": {
            "timeouts": {
                "type": "object",
                "additionalProperties": {"type": "integer", "minimum": 1, "maximum": 3600},
            },
        },
        "additionalProperties": False,
    },
}


def _get_path(data: dict[str, Any], path: tuple[str, ...]) -> Any:  # noqa: ANN401
    node: Any = data
    for part in path:
        if not isinstance(node, dict):
            return None
        node = node.get(part)
    return node


def _set_path(data: dict[str, Any], path: tuple[str, ...], value: Any) -> None:  # noqa: ANN401
    node = data
    for part in path[:-1]:
        node = node.setdefault(part, {})
    node[path[-1]] = value


def _merge(base: dict[str, Any], patch: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in patch.items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


class DeploymentSettingsStore:
    """File-backed global deployment settings."""

    def __init__(self, path: str | Path, box: SecretBox) -> None:
        self._path = path
        self._box = box
        self._lock = threading.Lock()
        stored = read_json(path, default={}) or {}
        self._data = {c: _merge(DEFAULTS[c], stored.get(c) or {}) for c in CATEGORIES}

    @staticmethod
    def _check_category(category: str) -> None:
        if category not in CATEGORIES:
            raise CertProblem(
                ErrorKind.NOT_FOUND,
                f"Unknown deployment settings category '{category}'",
            )

    def get(self, category: str | None = None) -> dict[str, Any]:
        """Settings with every secret masked."""
        with self._lock:
            if category is None:
                return {c: self._masked(c) for c in CATEGORIES}
            self._check_category(category)
            return self._masked(category)

    def _masked(self, category: str) -> dict[str, Any]:
        data = copy.deepcopy(self._data[category])
        for path in _SECRETS[category]:
            if _get_path(data, path):
                _set_path(data, path, SECRET_MASK)
        return data

    def resolved(self, category: str) -> dict[str, Any]:
        """Settings with secrets decrypted, for use inside a dispatch."""
        self._check_category(category)
        with self._lock:
            data = copy.deepcopy(self._data[category])
        for path in _SECRETS[category]:
            value = _get_path(data, path)
            if value:
                _set_path(data, path, self._box.decrypt(value))
        return data

    def update(self, category: str, patch: dict[str, Any]) -> dict[str, Any]:
        """Merge *patch* into *category*; returns the masked result."""
        self._check_category(category)
        if not isinstance(patch, dict):
            raise CertProblem(ErrorKind.INVALID_INPUT, "Settings must be a JSON object")
        errors = list(Draft7Validator(_SCHEMAS[category]).iter_errors(patch))
        if errors:
            details = "; ".join(
                f"{'.'.join(str(p) for p in e.absolute_path) or category}: {e.message}"
                for e in errors
            )
            raise CertProblem(ErrorKind.INVALID_INPUT, f"Invalid {category} settings: {details}")

        with self._lock:
            current = self._data[category]
            merged = _merge(current, patch)
            for path in _SECRETS[category]:
                value = _get_path(patch, path)
                if value == SECRET_MASK:
                    _set_path(merged, path, _get_path(current, path))
                elif value:
                    _set_path(merged, path, self._box.encrypt(value))
            self._data[category] = merged
            self._write()
        log.info("Updated deployment settings category %s", category)
        return self.get(category)

    def _write(self) -> None:
        atomic_write_json(self._path, self._data, mode=0o600)
