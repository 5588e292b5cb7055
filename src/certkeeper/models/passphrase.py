"""Stored passphrase record."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True)
class StoredPassphrase:
    """An encrypted passphrase as persisted in the vault file.

    The plaintext is never part of this record.
    """

    certificate_fingerprint: str
    ciphertext: str
    nonce: str
    algorithm: str
    created_at: datetime

    def to_dict(self) -> dict[str, str]:
        return {
            "ciphertext": self.ciphertext,
            "nonce": self.nonce,
            "algorithm": self.algorithm,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, fingerprint: str, data: dict[str, str]) -> StoredPassphrase:
        return cls(
            certificate_fingerprint=fingerprint,
            ciphertext=data["ciphertext"],
            nonce=data["nonce"],
            algorithm=data.get("algorithm", "AES-256-GCM"),
            created_at=datetime.fromisoformat(data["createdAt"]),
        )
