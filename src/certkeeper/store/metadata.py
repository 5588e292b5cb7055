"""Mapping between :class:`CertificateRecord` and ``metadata.json``.

The metadata file carries everything that is not recoverable from the
certificate itself: labels, policy, deployment actions (secrets as
``enc:v1:`` tokens), pending SANs, snapshot index and the outcome of
the last renewal.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any

from certkeeper.core.types import CertType, SnapshotType
from certkeeper.models.action import action_from_dict
from certkeeper.models.certificate import (
    CertificateRecord,
    RenewalPolicy,
    RenewalStatusRecord,
    SanEntry,
    VersionEntry,
)

log = logging.getLogger(__name__)

METADATA_VERSION = 1


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _dt(value: str | None) -> datetime | None:
    return datetime.fromisoformat(value) if value else None


def version_to_dict(entry: VersionEntry) -> dict[str, Any]:
    return {
        "id": entry.snapshot_id,
        "type": entry.snapshot_type.value,
        "version": entry.version,
        "fingerprint": entry.fingerprint,
        "validFrom": _iso(entry.valid_from),
        "validTo": _iso(entry.valid_to),
        "archivedAt": _iso(entry.archived_at),
        "archivedPaths": dict(entry.archived_paths),
        "description": entry.description,
    }


def version_from_dict(data: dict[str, Any]) -> VersionEntry:
    return VersionEntry(
        snapshot_id=data["id"],
        snapshot_type=SnapshotType(data.get("type", SnapshotType.VERSION)),
        version=int(data.get("version", 0)),
        fingerprint=data.get("fingerprint"),
        valid_from=_dt(data.get("validFrom")),
        valid_to=_dt(data.get("validTo")),
        archived_at=datetime.fromisoformat(data["archivedAt"]),
        archived_paths=dict(data.get("archivedPaths") or {}),
        description=data.get("description", ""),
    )


def renewal_status_to_dict(status: RenewalStatusRecord) -> dict[str, Any]:
    body: dict[str, Any] = {"state": status.state, "at": _iso(status.at)}
    if status.kind:
        body["kind"] = status.kind
    if status.message:
        body["message"] = status.message
    if status.trigger:
        body["trigger"] = status.trigger
    return body


def renewal_status_from_dict(data: dict[str, Any] | None) -> RenewalStatusRecord | None:
    if not data:
        return None
    return RenewalStatusRecord(
        state=data["state"],
        at=datetime.fromisoformat(data["at"]),
        kind=data.get("kind"),
        message=data.get("message"),
        trigger=data.get("trigger"),
    )


def to_metadata(record: CertificateRecord) -> dict[str, Any]:
    return {
        "version": METADATA_VERSION,
        "id": record.cert_id,
        "name": record.name,
        "certType": record.cert_type.value,
        "basename": record.basename,
        "description": record.description,
        "group": record.group,
        "signerFingerprint": record.signer_fingerprint,
        "subject": [s.to_dict() for s in record.subject],
        "idleSubject": [s.to_dict() for s in record.idle_subject],
        "policy": record.policy.to_dict(),
        "deploymentActions": [a.to_dict() for a in record.deployment_actions],
        "versionHistory": [version_to_dict(v) for v in record.version_history],
        "backups": [version_to_dict(b) for b in record.backups],
        "lastRenewal": (
            renewal_status_to_dict(record.last_renewal) if record.last_renewal else None
        ),
        "archiveCounter": record.archive_counter,
        "bundlePassword": record.bundle_password,
        "createdAt": _iso(record.created_at),
    }


def from_metadata(data: dict[str, Any]) -> dict[str, Any]:
    """Return :class:`CertificateRecord` keyword arguments from metadata.

    Cryptographic fields are left out; the store fills them in from the
    parsed ``crt`` file.  Actions that no longer validate are dropped
    with a warning instead of making the whole certificate unreadable.
    """
    actions = []
    for raw in data.get("deploymentActions") or []:
        try:
            actions.append(action_from_dict(raw))
        except Exception:
            log.warning(
                "Dropping unreadable deployment action %r of %s",
                raw.get("name"),
                data.get("id"),
                exc_info=True,
            )
    return {
        "cert_id": data["id"],
        "name": data["name"],
        "cert_type": CertType(data["certType"]),
        "basename": data["basename"],
        "description": data.get("description", ""),
        "group": data.get("group", ""),
        "signer_fingerprint": data.get("signerFingerprint"),
        "subject": tuple(SanEntry.from_dict(s) for s in data.get("subject") or []),
        "idle_subject": tuple(SanEntry.from_dict(s) for s in data.get("idleSubject") or []),
        "policy": RenewalPolicy.from_dict(data.get("policy")),
        "deployment_actions": tuple(actions),
        "version_history": tuple(version_from_dict(v) for v in data.get("versionHistory") or []),
        "backups": tuple(version_from_dict(b) for b in data.get("backups") or []),
        "last_renewal": renewal_status_from_dict(data.get("lastRenewal")),
        "archive_counter": int(data.get("archiveCounter", 0)),
        "bundle_password": data.get("bundlePassword"),
        "created_at": _dt(data.get("createdAt")),
    }
