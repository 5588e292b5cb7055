"""Enumerated types shared across certkeeper.

All enums inherit from :class:`enum.StrEnum` so their ``.value`` is a
plain string that round-trips through the JSON metadata files and the
HTTP API unchanged.
"""

from __future__ import annotations

from enum import StrEnum

# ---------------------------------------------------------------------------
# Certificates
# ---------------------------------------------------------------------------


class CertType(StrEnum):
    ROOT_CA = "rootCA"
    INTERMEDIATE_CA = "intermediateCA"
    STANDARD = "standard"

    @property
    def is_ca(self) -> bool:
        return self in (CertType.ROOT_CA, CertType.INTERMEDIATE_CA)


class SanKind(StrEnum):
    DOMAIN = "domain"
    IP = "ip"


class CertStatus(StrEnum):
    VALID = "valid"
    EXPIRING_SOON = "expiringSoon"
    EXPIRED = "expired"
    UNKNOWN = "unknown"


class KeyType(StrEnum):
    RSA = "rsa"
    EC = "ec"


class ArtifactForm(StrEnum):
    """On-disk artifact forms owned by a certificate directory."""

    CRT = "crt"
    KEY = "key"
    PEM = "pem"
    P12 = "p12"
    PFX = "pfx"
    CSR = "csr"
    CHAIN = "chain"
    FULLCHAIN = "fullchain"
    DER = "der"
    P7B = "p7b"
    CER = "cer"
    EXT = "ext"


PRIMARY_FORMS: frozenset[ArtifactForm] = frozenset(
    {ArtifactForm.CRT, ArtifactForm.KEY, ArtifactForm.CSR, ArtifactForm.EXT},
)

DERIVED_FORMS: frozenset[ArtifactForm] = frozenset(
    {
        ArtifactForm.PEM,
        ArtifactForm.P12,
        ArtifactForm.PFX,
        ArtifactForm.CHAIN,
        ArtifactForm.FULLCHAIN,
        ArtifactForm.DER,
        ArtifactForm.P7B,
        ArtifactForm.CER,
    },
)

PASSWORD_FORMS: frozenset[ArtifactForm] = frozenset({ArtifactForm.P12, ArtifactForm.PFX})


class SnapshotType(StrEnum):
    VERSION = "version"
    BACKUP = "backup"


# ---------------------------------------------------------------------------
# Renewal
# ---------------------------------------------------------------------------


class RenewalState(StrEnum):
    IDLE = "idle"
    PREFLIGHT = "preflight"
    PASSPHRASE_RESOLUTION = "passphraseResolution"
    NEEDS_PASSPHRASE = "needsPassphrase"
    ISSUANCE = "issuance"
    ARCHIVE = "archive"
    MATERIALIZE = "materialize"
    PUBLISH = "publish"
    ROLLBACK = "rollback"
    FAILED = "failed"


class RenewalTrigger(StrEnum):
    API = "api"
    SCHEDULE = "schedule"
    WATCH = "watch"
    CLI = "cli"


# ---------------------------------------------------------------------------
# Deployment
# ---------------------------------------------------------------------------


class ActionKind(StrEnum):
    COPY = "copy"
    DOCKER_RESTART = "docker-restart"
    NGINX_PROXY_MANAGER = "nginx-proxy-manager"
    SSH_COPY = "ssh-copy"
    SMB_COPY = "smb-copy"
    FTP_COPY = "ftp-copy"
    API_CALL = "api-call"
    WEBHOOK = "webhook"
    EMAIL = "email"
    COMMAND = "command"


class ActionStatus(StrEnum):
    SUCCESS = "success"
    FAILURE = "failure"
    SKIPPED = "skipped"


class DispatchMode(StrEnum):
    LIVE = "live"
    SIMULATE = "simulate"


class AdapterStatus(StrEnum):
    REACHABLE = "reachable"
    UNREACHABLE = "unreachable"
    AUTH_REQUIRED = "authRequired"
