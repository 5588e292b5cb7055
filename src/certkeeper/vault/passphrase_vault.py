"""Passphrase vault: encrypted private-key passphrases keyed by fingerprint.

Lets auto-renewal proceed without a human typing the passphrase of a
certificate's key or of its signing CA.  Each entry is sealed with
AES-256-GCM under a key derived from the master secret; the entry's
fingerprint is bound in as associated data so blobs cannot be swapped
between certificates.  The vault file holds ciphertext only.

Usage::

    vault = PassphraseVault("/var/lib/certkeeper/passphrases.json", master_key)
    vault.put(fp, "s3cret")
    vault.get(fp)       # "s3cret"
    vault.delete(fp)    # idempotent
"""

from __future__ import annotations

import base64
import logging
from pathlib import Path
from typing import TYPE_CHECKING

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import utcnow
from certkeeper.core.fs import atomic_write_json, read_json
from certkeeper.core.locks import ReadWriteLock
from certkeeper.models.passphrase import StoredPassphrase
from certkeeper.vault.keys import ALGORITHM, seal, unseal

if TYPE_CHECKING:
    from certkeeper.vault.keys import MasterKey

log = logging.getLogger(__name__)

_FILE_VERSION = 1


class PassphraseVault:
    """Thread-safe, file-backed passphrase store.

    Reads run concurrently; writes are exclusive and rewrite the vault
    file atomically with mode ``0600``.
    """

    def __init__(self, path: str | Path, master: MasterKey) -> None:
        self._path = Path(path)
        self._master = master
        self._lock = ReadWriteLock()
        self._entries: dict[str, StoredPassphrase] = self._read()

    @property
    def sealed(self) -> bool:
        return self._master.sealed

    def _read(self) -> dict[str, StoredPassphrase]:
        raw = read_json(self._path, default={}) or {}
        entries = raw.get("entries", {})
        return {fp: StoredPassphrase.from_dict(fp, data) for fp, data in entries.items()}

    def _write(self) -> None:
        atomic_write_json(
            self._path,
            {
                "version": _FILE_VERSION,
                "entries": {fp: e.to_dict() for fp, e in self._entries.items()},
            },
            mode=0o600,
        )

    def _key(self) -> bytes:
        return self._master.derive(b"passphrase-vault")

    # -- operations ---------------------------------------------------------

    def put(self, fingerprint: str, plaintext: str) -> None:
        """Encrypt and store *plaintext* for *fingerprint*, replacing any entry."""
        if not plaintext:
            raise CertProblem(ErrorKind.INVALID_INPUT, "Passphrase must not be empty")
        nonce, ciphertext = seal(self._key(), plaintext.encode("utf-8"), fingerprint.encode())
        entry = StoredPassphrase(
            certificate_fingerprint=fingerprint,
            ciphertext=base64.b64encode(ciphertext).decode("ascii"),
            nonce=base64.b64encode(nonce).decode("ascii"),
            algorithm=ALGORITHM,
            created_at=utcnow(),
        )
        with self._lock.write():
            self._entries[fingerprint] = entry
            self._write()
        log.info("Stored passphrase", extra={"fingerprint": fingerprint})

    def get(self, fingerprint: str) -> str:
        """Return the plaintext passphrase.

        Raises ``NotFound`` when nothing is stored and ``VaultSealed``
        when the master secret is absent.
        """
        key = self._key()
        with self._lock.read():
            entry = self._entries.get(fingerprint)
        if entry is None:
            raise CertProblem(
                ErrorKind.NOT_FOUND,
                f"No stored passphrase for certificate {fingerprint}",
            )
        plaintext = unseal(
            key,
            base64.b64decode(entry.nonce),
            base64.b64decode(entry.ciphertext),
            fingerprint.encode(),
        )
        return plaintext.decode("utf-8")

    def delete(self, fingerprint: str) -> None:
        with self._lock.write():
            if self._entries.pop(fingerprint, None) is not None:
                self._write()
                log.info("Deleted stored passphrase", extra={"fingerprint": fingerprint})

    def has(self, fingerprint: str) -> bool:
        with self._lock.read():
            return fingerprint in self._entries

    def rekey(self, old_fingerprint: str, new_fingerprint: str) -> bool:
        """Move the entry of a renewed certificate to its new fingerprint."""
        if not self.has(old_fingerprint):
            return False
        plaintext = self.get(old_fingerprint)
        self.put(new_fingerprint, plaintext)
        self.delete(old_fingerprint)
        return True
