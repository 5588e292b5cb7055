"""Master-secret key derivation and secret sealing.

The process-wide master secret never touches the disk.  Purpose-bound
AES-256 keys are derived from it with HKDF-SHA256 and a random salt
that is persisted next to the engine state.  :class:`SecretBox` seals
individual strings (deployment-action passwords, private keys,
deployment settings) under one of those keys.
"""

from __future__ import annotations

import base64
import logging
import os
import threading
from pathlib import Path

from cryptography.exceptions import InvalidTag
from cryptography.hazmat.primitives import hashes
from cryptography.hazmat.primitives.ciphers.aead import AESGCM
from cryptography.hazmat.primitives.kdf.hkdf import HKDF

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.fs import atomic_write_bytes

log = logging.getLogger(__name__)

_SALT_BYTES = 16
_NONCE_BYTES = 12
_TOKEN_PREFIX = "enc:v1:"
ALGORITHM = "AES-256-GCM"


class MasterKey:
    """Derives purpose-bound keys from the master secret.

    Parameters
    ----------
    secret:
        The master secret, or ``None`` when none is configured (sealed).
    salt_file:
        Where the HKDF salt lives; created with mode ``0600`` on first use.

    """

    def __init__(self, secret: str | None, salt_file: str | Path) -> None:
        self._secret = secret.encode("utf-8") if secret else None
        self._salt_file = Path(salt_file)
        self._salt: bytes | None = None
        self._lock = threading.Lock()
        self._cache: dict[bytes, bytes] = {}

    @property
    def sealed(self) -> bool:
        return self._secret is None

    def _load_salt(self) -> bytes:
        if self._salt is not None:
            return self._salt
        if self._salt_file.is_file():
            self._salt = self._salt_file.read_bytes()
        else:
            self._salt = os.urandom(_SALT_BYTES)
            atomic_write_bytes(self._salt_file, self._salt, mode=0o600)
            log.info("Created vault salt at %s", self._salt_file)
        return self._salt

    def derive(self, purpose: bytes) -> bytes:
        """Return the 256-bit key for *purpose*; raise ``VaultSealed`` without a secret."""
        if self._secret is None:
            raise CertProblem(
                ErrorKind.VAULT_SEALED,
                "Vault is sealed: no master secret is configured",
            )
        with self._lock:
            key = self._cache.get(purpose)
            if key is None:
                key = HKDF(
                    algorithm=hashes.SHA256(),
                    length=32,
                    salt=self._load_salt(),
                    info=b"certkeeper:" + purpose,
                ).derive(self._secret)
                self._cache[purpose] = key
            return key


def seal(key: bytes, plaintext: bytes, aad: bytes | None = None) -> tuple[bytes, bytes]:
    """Encrypt with AES-256-GCM; return ``(nonce, ciphertext_with_tag)``."""
    nonce = os.urandom(_NONCE_BYTES)
    return nonce, AESGCM(key).encrypt(nonce, plaintext, aad)


def unseal(key: bytes, nonce: bytes, ciphertext: bytes, aad: bytes | None = None) -> bytes:
    try:
        return AESGCM(key).decrypt(nonce, ciphertext, aad)
    except InvalidTag as exc:
        raise CertProblem(
            ErrorKind.INTERNAL,
            "Stored secret could not be decrypted (wrong master secret or corrupted data)",
        ) from exc


class SecretBox:
    """Seals individual configuration secrets as ``enc:v1:...`` tokens."""

    def __init__(self, master: MasterKey) -> None:
        self._master = master

    @property
    def sealed(self) -> bool:
        return self._master.sealed

    @staticmethod
    def is_token(value: object) -> bool:
        return isinstance(value, str) and value.startswith(_TOKEN_PREFIX)

    def encrypt(self, plaintext: str) -> str:
        nonce, ct = seal(self._master.derive(b"secrets"), plaintext.encode("utf-8"))
        return _TOKEN_PREFIX + base64.b64encode(nonce + ct).decode("ascii")

    def decrypt(self, token: str) -> str:
        if not self.is_token(token):
            return token
        raw = base64.b64decode(token[len(_TOKEN_PREFIX) :])
        key = self._master.derive(b"secrets")
        return unseal(key, raw[:_NONCE_BYTES], raw[_NONCE_BYTES:]).decode("utf-8")
