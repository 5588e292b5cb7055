"""Response serialization for the certkeeper HTTP API.

Each function takes a model entity (plus the index or service it needs
for derived fields) and produces a dictionary suitable for
``flask.jsonify``.
"""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from certkeeper.core.expiry import days_until_expiry, utcnow
from certkeeper.store.metadata import renewal_status_to_dict, version_to_dict

if TYPE_CHECKING:
    from datetime import datetime

    from certkeeper.index import MetadataIndex
    from certkeeper.models.certificate import CertificateRecord, EffectivePolicy, VersionEntry
    from certkeeper.renewal import RenewalEngine


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def serialize_policy(policy: EffectivePolicy) -> dict[str, Any]:
    return {
        "autoRenew": policy.auto_renew,
        "validityDays": policy.validity_days,
        "renewBeforeDays": policy.renew_before_days,
        "keySize": policy.key_size,
    }


def serialize_version(entry: VersionEntry) -> dict[str, Any]:
    """A snapshot without its on-disk paths."""
    body = version_to_dict(entry)
    body.pop("archivedPaths", None)
    body["files"] = sorted(entry.archived_paths)
    return body


def serialize_certificate(
    record: CertificateRecord,
    index: MetadataIndex,
    engine: RenewalEngine,
    *,
    has_stored_passphrase: bool,
    detail: bool = False,
) -> dict[str, Any]:
    """Serialize a certificate with its derived status.

    The list view leaves out actions and snapshots; *detail* adds them.
    Secret action fields are always masked.
    """
    now = utcnow()
    signer = index.signer_of(record)
    result: dict[str, Any] = {
        "id": record.cert_id,
        "name": record.name,
        "fingerprint": record.fingerprint,
        "certType": record.cert_type.value,
        "commonName": record.common_name,
        "subject": [s.to_dict() for s in record.subject],
        "idleSubject": [s.to_dict() for s in record.idle_subject],
        "domains": record.domains,
        "ips": record.ips,
        "validFrom": _iso(record.valid_from),
        "validTo": _iso(record.valid_to),
        "daysUntilExpiry": (
            days_until_expiry(record.valid_to, now) if record.valid_to is not None else None
        ),
        "status": index.status(record, now).value,
        "issuer": record.issuer,
        "serialNumber": record.serial_number,
        "keyType": record.key_type,
        "keySize": record.key_size,
        "signatureAlgorithm": record.sig_alg,
        "description": record.description,
        "group": record.group,
        "signerFingerprint": record.signer_fingerprint,
        "signerName": signer.name if signer is not None else None,
        "isSelfSigned": record.is_self_signed,
        "needsPassphrase": record.needs_passphrase,
        "hasStoredPassphrase": has_stored_passphrase,
        "policy": record.policy.to_dict(),
        "effectivePolicy": serialize_policy(index.effective_policy(record)),
        "renewalState": engine.state_of(record.cert_id).value,
        "lastRenewal": (
            renewal_status_to_dict(record.last_renewal) if record.last_renewal else None
        ),
        "actionCount": len(record.deployment_actions),
        "files": sorted(record.paths),
        "createdAt": _iso(record.created_at),
    }
    if record.parse_error:
        result["parseError"] = record.parse_error
    if detail:
        result["deploymentActions"] = [
            a.to_dict(mask_secrets=True) for a in record.deployment_actions
        ]
        result["versionHistory"] = [serialize_version(v) for v in record.version_history]
        result["backups"] = [serialize_version(b) for b in record.backups]
        result["children"] = [
            {"fingerprint": c.fingerprint, "name": c.name}
            for c in index.children_of(record.fingerprint or "")
        ]
    return result
