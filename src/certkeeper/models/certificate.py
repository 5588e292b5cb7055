"""Certificate entity and its value objects."""

from __future__ import annotations

import ipaddress
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from certkeeper.core.types import CertType, SanKind, SnapshotType

if TYPE_CHECKING:
    from datetime import datetime

    from certkeeper.config.settings import RenewalSettings
    from certkeeper.models.action import Action


@dataclass(frozen=True)
class SanEntry:
    """One subject alternative name; the first entry of a subject is the CN."""

    kind: SanKind
    value: str

    @property
    def key(self) -> tuple[str, str]:
        """Identity used for uniqueness checks (domains compare case-insensitively)."""
        if self.kind == SanKind.DOMAIN:
            return (self.kind.value, self.value.lower().rstrip("."))
        return (self.kind.value, str(ipaddress.ip_address(self.value)))

    def to_dict(self) -> dict[str, str]:
        return {"type": self.kind.value, "value": self.value}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> SanEntry:
        return cls(SanKind(data.get("type") or data.get("kind")), data["value"])


@dataclass(frozen=True)
class EffectivePolicy:
    """A :class:`RenewalPolicy` with every inherited field filled in."""

    auto_renew: bool
    validity_days: int
    renew_before_days: int
    key_size: int


@dataclass(frozen=True)
class RenewalPolicy:
    """Per-certificate renewal policy; ``None`` fields inherit global defaults."""

    auto_renew: bool | None = None
    validity_days: int | None = None
    renew_before_days: int | None = None
    key_size: int | None = None

    def effective(self, defaults: RenewalSettings, cert_type: CertType) -> EffectivePolicy:
        return EffectivePolicy(
            auto_renew=defaults.auto_renew if self.auto_renew is None else self.auto_renew,
            validity_days=self.validity_days or defaults.validity_days.for_type(cert_type),
            renew_before_days=(
                defaults.renew_before_days
                if self.renew_before_days is None
                else self.renew_before_days
            ),
            key_size=self.key_size or defaults.key_size,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "autoRenew": self.auto_renew,
            "validityDays": self.validity_days,
            "renewBeforeDays": self.renew_before_days,
            "keySize": self.key_size,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> RenewalPolicy:
        d = data or {}
        return cls(
            auto_renew=d.get("autoRenew"),
            validity_days=d.get("validityDays"),
            renew_before_days=d.get("renewBeforeDays"),
            key_size=d.get("keySize"),
        )


@dataclass(frozen=True)
class VersionEntry:
    """One archived snapshot of a certificate directory."""

    snapshot_id: str
    snapshot_type: SnapshotType
    version: int
    fingerprint: str | None
    valid_from: datetime | None
    valid_to: datetime | None
    archived_at: datetime
    archived_paths: dict[str, str] = field(default_factory=dict)
    description: str = ""


@dataclass(frozen=True)
class RenewalStatusRecord:
    """Outcome of the most recent renewal attempt."""

    state: str
    at: datetime
    kind: str | None = None
    message: str | None = None
    trigger: str | None = None


@dataclass(frozen=True)
class CertificateRecord:
    """A certificate as known to the store and the index.

    Cryptographic fields come from parsing the ``crt`` file; everything
    else comes from the per-certificate metadata file.  ``cert_id``
    names the certificate directory and stays the same across renewals
    while ``fingerprint`` changes.
    """

    cert_id: str
    name: str
    cert_type: CertType
    basename: str
    fingerprint: str | None = None
    subject: tuple[SanEntry, ...] = ()
    idle_subject: tuple[SanEntry, ...] = ()
    valid_from: datetime | None = None
    valid_to: datetime | None = None
    key_type: str | None = None
    key_size: int | None = None
    sig_alg: str | None = None
    issuer: str | None = None
    serial_number: str | None = None
    description: str = ""
    group: str = ""
    signer_fingerprint: str | None = None
    policy: RenewalPolicy = field(default_factory=RenewalPolicy)
    deployment_actions: tuple[Action, ...] = ()
    paths: dict[str, str] = field(default_factory=dict)
    needs_passphrase: bool = False
    version_history: tuple[VersionEntry, ...] = ()
    backups: tuple[VersionEntry, ...] = ()
    last_renewal: RenewalStatusRecord | None = None
    archive_counter: int = 0
    created_at: datetime | None = None
    parse_error: str | None = None
    # Password of the p12/pfx bundles as an ``enc:v1:`` token
    bundle_password: str | None = field(default=None, repr=False)

    @property
    def common_name(self) -> str | None:
        return self.subject[0].value if self.subject else None

    @property
    def domains(self) -> list[str]:
        return [s.value for s in self.subject if s.kind == SanKind.DOMAIN]

    @property
    def ips(self) -> list[str]:
        return [s.value for s in self.subject if s.kind == SanKind.IP]

    @property
    def is_self_signed(self) -> bool:
        return self.signer_fingerprint is None

    def find_action(self, action_id: str) -> Action | None:
        for action in self.deployment_actions:
            if action.id == action_id:
                return action
        return None
