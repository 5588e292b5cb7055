"""Redaction of secrets before data reaches a log handler.

Mapping values are hidden when their key names a secret (``password``,
``smtp_password``, ``signingCAPassphrase``, ``apiKey`` ...) and any PEM
block keeps its armour lines but loses its base64 body.
"""

from __future__ import annotations

import re
from typing import Any

REDACTED = "[REDACTED]"

# Matched against the key lower-cased with underscores and dashes removed
_SECRET_SUFFIXES = (
    "password",
    "passphrase",
    "secret",
    "token",
    "apikey",
    "privatekey",
    "authorization",
)

_PEM_BLOCK = re.compile(
    r"(?P<begin>-----BEGIN [A-Z0-9 ]+-----).*?(?P<end>-----END [A-Z0-9 ]+-----)",
    re.DOTALL,
)


def is_secret_key(key: str) -> bool:
    normalized = key.lower().replace("_", "").replace("-", "")
    return normalized.endswith(_SECRET_SUFFIXES)


def sanitize_pem(pem: str) -> str:
    """Keep the BEGIN/END lines of each PEM block and hide the body."""
    return _PEM_BLOCK.sub(rf"\g<begin>\n{REDACTED}\n\g<end>", pem)


def sanitize_for_logs(data: Any) -> Any:  # noqa: ANN401
    """Return a copy of *data* with secrets replaced by ``[REDACTED]``.

    Dicts, lists and tuples are walked recursively and keep their type.
    Empty secret values are left as they are, so a log still shows that
    a password was *not* set.
    """
    if isinstance(data, dict):
        cleaned = {}
        for key, value in data.items():
            hide = value and isinstance(key, str) and is_secret_key(key)
            cleaned[key] = REDACTED if hide else sanitize_for_logs(value)
        return cleaned
    if isinstance(data, (list, tuple)):
        return type(data)(map(sanitize_for_logs, data))
    if isinstance(data, str) and "-----BEGIN " in data:
        return sanitize_pem(data)
    return data
