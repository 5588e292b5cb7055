"""Certificate service: everything the API does to a certificate.

Creation (self-signed or CA-signed), metadata and policy edits,
deletion guarded by signer references, SAN edits, conversions,
stored passphrases and explicit backups.  Renewals are delegated to
:class:`~certkeeper.renewal.RenewalEngine`.
"""

from __future__ import annotations

import ipaddress
import logging
import re
from dataclasses import replace
from typing import TYPE_CHECKING, Any

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import utcnow
from certkeeper.core.types import (
    DERIVED_FORMS,
    PASSWORD_FORMS,
    ArtifactForm,
    CertType,
    KeyType,
    SanKind,
    SnapshotType,
)
from certkeeper.crypto import (
    CryptoError,
    build_csr,
    create_self_signed,
    decrypt_key,
    generate_key,
    key_is_encrypted,
    serialize_cert,
    serialize_csr,
    serialize_key,
    sign_csr,
)
from certkeeper.crypto.profiles import render_ext
from certkeeper.models.certificate import CertificateRecord, RenewalPolicy, SanEntry
from certkeeper.renewal import RenewalRequest
from certkeeper.store import slugify

if TYPE_CHECKING:
    from certkeeper.config.settings import RenewalSettings
    from certkeeper.deploy import Dispatcher
    from certkeeper.hooks.registry import HookRegistry
    from certkeeper.index import MetadataIndex
    from certkeeper.models.certificate import VersionEntry
    from certkeeper.renewal import RenewalEngine, RenewalResult
    from certkeeper.store import CertificateStore
    from certkeeper.vault import PassphraseVault, SecretBox

log = logging.getLogger(__name__)

_DOMAIN_RE = re.compile(
    r"^(\*\.)?([a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?\.)*[a-z0-9]([a-z0-9-]{0,61}[a-z0-9])?$",
    re.IGNORECASE,
)
_MAX_DOMAIN_LENGTH = 253
_EC_SIZES = (256, 384)

# Download aliases accepted next to the artifact form names
FORM_ALIASES = {"cert": ArtifactForm.CRT}

_MIMETYPES = {
    ArtifactForm.CRT: "application/x-pem-file",
    ArtifactForm.KEY: "application/x-pem-file",
    ArtifactForm.PEM: "application/x-pem-file",
    ArtifactForm.CSR: "application/pkcs10",
    ArtifactForm.CHAIN: "application/x-pem-file",
    ArtifactForm.FULLCHAIN: "application/x-pem-file",
    ArtifactForm.DER: "application/x-x509-ca-cert",
    ArtifactForm.CER: "application/x-x509-ca-cert",
    ArtifactForm.P7B: "application/x-pkcs7-certificates",
    ArtifactForm.P12: "application/x-pkcs12",
    ArtifactForm.PFX: "application/x-pkcs12",
    ArtifactForm.EXT: "text/plain",
}


def parse_san(value: Any, kind: Any = None) -> SanEntry:  # noqa: ANN401
    """Validate one SAN value; *kind* is inferred when omitted."""
    if not isinstance(value, str) or not value.strip():
        raise CertProblem(ErrorKind.INVALID_INPUT, "SAN value must be a non-empty string")
    text = value.strip()
    if kind is None:
        try:
            ipaddress.ip_address(text)
        except ValueError:
            kind = SanKind.DOMAIN
        else:
            kind = SanKind.IP
    try:
        san_kind = SanKind(kind)
    except ValueError as exc:
        raise CertProblem(
            ErrorKind.INVALID_INPUT,
            f"SAN type must be 'domain' or 'ip', not '{kind}'",
        ) from exc
    if san_kind == SanKind.IP:
        try:
            return SanEntry(SanKind.IP, str(ipaddress.ip_address(text)))
        except ValueError as exc:
            raise CertProblem(ErrorKind.INVALID_INPUT, f"'{text}' is not a valid IP address") from exc
    domain = text.lower().rstrip(".")
    if len(domain) > _MAX_DOMAIN_LENGTH or not _DOMAIN_RE.match(domain):
        raise CertProblem(ErrorKind.INVALID_INPUT, f"'{text}' is not a valid domain name")
    return SanEntry(SanKind.DOMAIN, domain)


def parse_subject(items: Any) -> tuple[SanEntry, ...]:  # noqa: ANN401
    """Parse a subject list of ``{type, value}`` objects or bare strings."""
    if not isinstance(items, list) or not items:
        raise CertProblem(ErrorKind.INVALID_INPUT, "At least one domain or IP address is required")
    entries: list[SanEntry] = []
    seen: set[tuple[str, str]] = set()
    for item in items:
        if isinstance(item, dict):
            san = parse_san(item.get("value"), item.get("type") or item.get("kind"))
        else:
            san = parse_san(item)
        if san.key in seen:
            raise CertProblem(ErrorKind.CONFLICT, f"'{san.value}' is listed more than once")
        seen.add(san.key)
        entries.append(san)
    return tuple(entries)


def parse_policy(data: Any) -> RenewalPolicy:  # noqa: ANN401
    if data is None:
        return RenewalPolicy()
    if not isinstance(data, dict):
        raise CertProblem(ErrorKind.INVALID_INPUT, "policy must be a JSON object")
    auto_renew = data.get("autoRenew")
    if auto_renew is not None and not isinstance(auto_renew, bool):
        raise CertProblem(ErrorKind.INVALID_INPUT, "autoRenew must be a boolean")
    ints = {}
    for key, minimum in (("validityDays", 1), ("renewBeforeDays", 0), ("keySize", 256)):
        value = data.get(key)
        if value is not None and (isinstance(value, bool) or not isinstance(value, int) or value < minimum):
            raise CertProblem(ErrorKind.INVALID_INPUT, f"{key} must be an integer >= {minimum}")
        ints[key] = value
    return RenewalPolicy(
        auto_renew=auto_renew,
        validity_days=ints["validityDays"],
        renew_before_days=ints["renewBeforeDays"],
        key_size=ints["keySize"],
    )


def parse_form(value: Any) -> ArtifactForm:  # noqa: ANN401
    text = str(value or "").strip().lower().lstrip(".")
    if text in FORM_ALIASES:
        return FORM_ALIASES[text]
    try:
        return ArtifactForm(text)
    except ValueError as exc:
        raise CertProblem(
            ErrorKind.INVALID_INPUT,
            f"Unknown format '{value}'; expected one of {sorted(f.value for f in ArtifactForm)}",
        ) from exc


class CertificateService:
    """Certificate-level operations behind the HTTP API and the CLI."""

    def __init__(  # noqa: PLR0913
        self,
        store: CertificateStore,
        index: MetadataIndex,
        vault: PassphraseVault,
        engine: RenewalEngine,
        dispatcher: Dispatcher | None = None,
        hooks: HookRegistry | None = None,
        *,
        box: SecretBox | None = None,
    ) -> None:
        self._store = store
        self._index = index
        self._vault = vault
        self._engine = engine
        self._dispatcher = dispatcher
        self._hooks = hooks
        self._box = box

    @property
    def _defaults(self) -> RenewalSettings:
        return self._engine.settings

    # -- lookups ------------------------------------------------------------

    def get(self, fingerprint: str) -> CertificateRecord:
        return self._index.get(fingerprint)

    def list_all(self, group: str | None = None) -> list[CertificateRecord]:
        records = self._index.all()
        if group is not None:
            records = [r for r in records if r.group == group]
        return records

    def has_stored_passphrase(self, record: CertificateRecord) -> bool:
        return bool(record.fingerprint) and self._vault.has(record.fingerprint)

    def _fire(self, event: str, record: CertificateRecord, **extra: Any) -> None:  # noqa: ANN401
        if self._hooks is None:
            return
        self._hooks.dispatch(
            event,
            {"certificate": record.name, "fingerprint": record.fingerprint, **extra},
        )

    # -- creation -----------------------------------------------------------

    def _new_cert_id(self, name: str) -> str:
        base = slugify(name)
        candidate, n = base, 1
        while self._store.directory(candidate).exists():
            n += 1
            candidate = f"{base}-{n}"
        return candidate

    def _signer_key(self, signer: CertificateRecord, passphrase: str | None):
        if signer.needs_passphrase and not passphrase and self._vault.has(signer.fingerprint or ""):
            passphrase = self._vault.get(signer.fingerprint or "")
        if signer.needs_passphrase and not passphrase:
            raise CertProblem(
                ErrorKind.PASSPHRASE_REQUIRED,
                f"Passphrase required for signing CA '{signer.name}'",
                payload={
                    "required": [
                        {"fingerprint": signer.fingerprint, "name": signer.name, "role": "signer"},
                    ],
                },
            )
        try:
            return decrypt_key(self._store.read_artifact(signer, ArtifactForm.KEY), passphrase)
        except CryptoError as exc:
            raise exc.to_problem(ErrorKind.SIGNER_UNAVAILABLE) from exc

    def create(self, data: dict[str, Any]) -> CertificateRecord:  # noqa: C901, PLR0912
        """Issue a new certificate from an API request body."""
        name = str(data.get("name") or "").strip()
        if not name:
            raise CertProblem(ErrorKind.INVALID_INPUT, "name is required")
        try:
            cert_type = CertType(data.get("certType") or CertType.STANDARD)
        except ValueError as exc:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"certType must be one of {[t.value for t in CertType]}",
            ) from exc
        subject = parse_subject(data.get("subject") or data.get("domains"))
        policy = parse_policy(data.get("policy"))

        signer = None
        signer_fp = data.get("signerFingerprint") or None
        if signer_fp:
            problem = self._index.chain_integrity_problem(cert_type, signer_fp)
            if problem:
                raise CertProblem(ErrorKind.SIGNER_UNAVAILABLE, problem)
            signer = self._index.get(signer_fp)
        elif cert_type == CertType.INTERMEDIATE_CA:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                "An intermediate CA needs a root CA as signerFingerprint",
            )

        effective = policy.effective(self._defaults, cert_type)
        validity = data.get("validityDays") or effective.validity_days
        if isinstance(validity, bool) or not isinstance(validity, int) or validity < 1:
            raise CertProblem(ErrorKind.INVALID_INPUT, "validityDays must be a positive integer")
        key_type = str(data.get("keyType") or self._defaults.key_type).lower()
        if key_type not in (KeyType.RSA, KeyType.EC):
            raise CertProblem(ErrorKind.INVALID_INPUT, "keyType must be 'rsa' or 'ec'")
        key_size = data.get("keySize") or (
            _EC_SIZES[0] if key_type == KeyType.EC else effective.key_size
        )
        passphrase = data.get("passphrase") or None

        try:
            key = generate_key(key_type, key_size)
            csr = build_csr(subject, key)
            if signer is None:
                cert = create_self_signed(subject, key, validity, cert_type)
            else:
                ca_key = self._signer_key(signer, data.get("signerPassphrase") or None)
                cert = sign_csr(csr, self._store.load_x509(signer), ca_key, validity, cert_type)
        except CryptoError as exc:
            raise exc.to_problem(ErrorKind.ISSUANCE_FAILED) from exc

        cert_id = self._new_cert_id(name)
        record = CertificateRecord(
            cert_id=cert_id,
            name=name,
            cert_type=cert_type,
            basename=slugify(name),
            subject=subject,
            description=str(data.get("description") or ""),
            group=str(data.get("group") or ""),
            signer_fingerprint=signer.fingerprint if signer else None,
            policy=policy,
            created_at=utcnow(),
        )
        created = self._store.create(
            record,
            {
                ArtifactForm.CRT: serialize_cert(cert),
                ArtifactForm.KEY: serialize_key(key, passphrase),
                ArtifactForm.CSR: serialize_csr(csr),
                ArtifactForm.EXT: render_ext(subject, cert_type).encode("utf-8"),
            },
        )
        if passphrase and data.get("storePassphrase") and created.fingerprint:
            self._vault.put(created.fingerprint, passphrase)
        self._fire("certificate.created", created, cert_type=cert_type.value)
        return created

    # -- metadata -----------------------------------------------------------

    def update(self, fingerprint: str, data: dict[str, Any]) -> CertificateRecord:
        """Partial update of ``name``, ``description`` and ``group``."""
        record = self.get(fingerprint)
        changes: dict[str, Any] = {}
        if "name" in data:
            name = str(data["name"] or "").strip()
            if not name:
                raise CertProblem(ErrorKind.INVALID_INPUT, "name must not be empty")
            changes["name"] = name
        for key in ("description", "group"):
            if key in data:
                if data[key] is not None and not isinstance(data[key], str):
                    raise CertProblem(ErrorKind.INVALID_INPUT, f"{key} must be a string")
                changes[key] = (data[key] or "").strip()
        if not changes:
            return record
        with self._store.lock(record.cert_id):
            current = self._store.load(record.cert_id)
            return self._store.save(replace(current, **changes), previous=current)

    def update_policy(self, fingerprint: str, data: dict[str, Any]) -> CertificateRecord:
        """Replace the renewal policy of a certificate."""
        record = self.get(fingerprint)
        policy = parse_policy(data.get("policy", data))
        effective = policy.effective(self._defaults, record.cert_type)
        if effective.renew_before_days >= effective.validity_days:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"renewBeforeDays ({effective.renew_before_days}) must be shorter than "
                f"validityDays ({effective.validity_days})",
            )
        with self._store.lock(record.cert_id):
            current = self._store.load(record.cert_id)
            saved = self._store.save(replace(current, policy=policy), previous=current)
        log.info(
            "Updated renewal policy of %s",
            saved.name,
            extra={"cert_id": saved.cert_id, "policy": policy.to_dict()},
        )
        return saved

    def delete(self, fingerprint: str) -> None:
        record = self.get(fingerprint)
        children = self._index.children_of(record.fingerprint or "")
        if children:
            raise CertProblem(
                ErrorKind.CONFLICT,
                f"Certificate '{record.name}' cannot be deleted because it is used to sign "
                f"{len(children)} certificate(s)",
                payload={"children": [c.fingerprint for c in children]},
            )
        if self._dispatcher is not None:
            self._dispatcher.cancel(record.cert_id)
        self._store.delete(record)
        if record.fingerprint:
            self._vault.delete(record.fingerprint)
        if self._dispatcher is not None:
            self._dispatcher.forget(record.cert_id)
        self._fire("certificate.deleted", record)

    # -- SANs ---------------------------------------------------------------

    def add_san(self, fingerprint: str, data: dict[str, Any]) -> tuple[CertificateRecord, bool]:
        """Add a SAN; returns ``(record, renewed)``.

        Idle entries are only recorded.  Active entries re-issue the
        certificate right away with the extended subject.
        """
        record = self.get(fingerprint)
        san = parse_san(data.get("value"), data.get("type") or SanKind.DOMAIN)
        idle = bool(data.get("idle", False))
        if any(s.key == san.key for s in record.subject):
            raise CertProblem(
                ErrorKind.CONFLICT,
                f"'{san.value}' is already one of the certificate's active domains",
            )
        if any(s.key == san.key for s in record.idle_subject):
            raise CertProblem(
                ErrorKind.CONFLICT,
                f"'{san.value}' is already pending in the certificate's idle domains",
            )
        if idle:
            with self._store.lock(record.cert_id):
                current = self._store.load(record.cert_id)
                saved = self._store.save(
                    replace(current, idle_subject=(*current.idle_subject, san)),
                    previous=current,
                )
            log.info("Added idle SAN %s to %s", san.value, saved.name, extra={"cert_id": saved.cert_id})
            return saved, False
        result = self.renew(
            fingerprint,
            data,
            subject=(*record.subject, san),
            include_idle=False,
        )
        return result.record, True

    def remove_san(
        self,
        fingerprint: str,
        kind: str,
        value: str,
        *,
        idle: bool,
        options: dict[str, Any] | None = None,
    ) -> tuple[CertificateRecord, bool]:
        record = self.get(fingerprint)
        san = parse_san(value, kind)
        if idle:
            if not any(s.key == san.key for s in record.idle_subject):
                raise CertProblem(
                    ErrorKind.NOT_FOUND,
                    f"'{san.value}' is not among the idle domains of '{record.name}'",
                )
            with self._store.lock(record.cert_id):
                current = self._store.load(record.cert_id)
                saved = self._store.save(
                    replace(
                        current,
                        idle_subject=tuple(s for s in current.idle_subject if s.key != san.key),
                    ),
                    previous=current,
                )
            return saved, False

        if not any(s.key == san.key for s in record.subject):
            raise CertProblem(
                ErrorKind.NOT_FOUND,
                f"'{san.value}' is not among the active domains of '{record.name}'",
            )
        if record.subject[0].key == san.key:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"'{san.value}' is the common name of '{record.name}' and cannot be removed",
            )
        result = self.renew(
            fingerprint,
            options or {},
            subject=tuple(s for s in record.subject if s.key != san.key),
            include_idle=False,
        )
        return result.record, True

    def apply_idle(self, fingerprint: str, data: dict[str, Any]) -> RenewalResult:
        record = self.get(fingerprint)
        if not record.idle_subject:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"Certificate '{record.name}' has no idle domains to apply",
            )
        return self.renew(fingerprint, data, include_idle=True)

    # -- renewal ------------------------------------------------------------

    def renew(
        self,
        fingerprint: str,
        data: dict[str, Any] | None = None,
        *,
        subject: tuple[SanEntry, ...] | None = None,
        include_idle: bool | None = None,
    ) -> RenewalResult:
        """Renew now with the options of an API request body."""
        data = data or {}
        record = self.get(fingerprint)
        days = data.get("days")
        if days is not None and (isinstance(days, bool) or not isinstance(days, int) or days < 1):
            raise CertProblem(ErrorKind.INVALID_INPUT, "days must be a positive integer")
        request = RenewalRequest(
            validity_days=days,
            passphrase=data.get("passphrase") or None,
            signer_passphrase=data.get("signingCAPassphrase") or None,
            store_passphrases=bool(data.get("storePassphrases", False)),
            include_idle=include_idle,
            subject=subject,
        )
        return self._engine.renew(record.cert_id, request)

    def check_passphrases(self, fingerprint: str) -> dict[str, Any]:
        return self._engine.check_passphrases(self.get(fingerprint))

    # -- stored passphrases -------------------------------------------------

    def store_passphrase(self, fingerprint: str, passphrase: Any) -> None:  # noqa: ANN401
        record = self.get(fingerprint)
        if not isinstance(passphrase, str) or not passphrase:
            raise CertProblem(ErrorKind.INVALID_INPUT, "passphrase is required")
        key_bytes = self._store.read_artifact(record, ArtifactForm.KEY)
        if not key_is_encrypted(key_bytes):
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"The private key of '{record.name}' is not protected by a passphrase",
            )
        try:
            decrypt_key(key_bytes, passphrase)
        except CryptoError as exc:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"The passphrase does not decrypt the private key of '{record.name}'",
            ) from exc
        self._vault.put(record.fingerprint or "", passphrase)

    def delete_passphrase(self, fingerprint: str) -> None:
        record = self.get(fingerprint)
        self._vault.delete(record.fingerprint or "")

    # -- files and conversion -----------------------------------------------

    def files(self, fingerprint: str) -> list[dict[str, Any]]:
        return self._store.list_files(self.get(fingerprint))

    def download(self, fingerprint: str, form: str) -> tuple[bytes, str, str]:
        """``(data, filename, mimetype)`` of one artifact."""
        record = self.get(fingerprint)
        artifact = parse_form(form)
        data = self._store.read_artifact(record, artifact)
        path = self._store.artifact_path(record, artifact)
        return data, path.name, _MIMETYPES.get(artifact, "application/octet-stream")

    def zip(self, fingerprint: str, snapshot_id: str | None = None) -> tuple[bytes, str]:
        record = self.get(fingerprint)
        suffix = f"-{snapshot_id}" if snapshot_id else ""
        return self._store.zip_files(record, snapshot_id), f"{record.basename}{suffix}.zip"

    def _key_passphrase(self, record: CertificateRecord, supplied: str | None) -> str | None:
        if not record.needs_passphrase:
            return None
        if supplied:
            return supplied
        if record.fingerprint and self._vault.has(record.fingerprint):
            return self._vault.get(record.fingerprint)
        return None

    def convert(self, fingerprint: str, data: dict[str, Any]) -> tuple[CertificateRecord, ArtifactForm]:
        """Derive a new artifact form (``p12`` needs a password)."""
        record = self.get(fingerprint)
        form = parse_form(data.get("format"))
        if form not in DERIVED_FORMS:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"'{form.value}' cannot be derived; expected one of "
                f"{sorted(f.value for f in DERIVED_FORMS)}",
            )
        key_passphrase = self._key_passphrase(
            record,
            data.get("keyPassphrase") or data.get("password") or None,
        )
        chain = [
            self._store.load_x509(r) for r in self._index.path_to_root(record.fingerprint or "")[1:]
        ]
        password = data.get("password") or None
        with self._store.lock(record.cert_id):
            self._store.derive(
                record,
                form,
                password=password,
                key_passphrase=key_passphrase,
                chain=chain,
            )
            current = self._store.load(record.cert_id)
            if form in PASSWORD_FORMS:
                current = replace(
                    current, bundle_password=self._seal_bundle_password(record, password or key_passphrase),
                )
            saved = self._store.save(current, previous=record)
        return saved, form

    def _seal_bundle_password(self, record: CertificateRecord, password: str | None) -> str | None:
        """Token under which renewal finds the bundle password again."""
        if not password:
            return None
        if self._box is None or self._box.sealed:
            log.warning(
                "Vault sealed: the bundle password of '%s' is not stored, so renewal "
                "cannot re-create the bundle",
                record.name,
            )
            return None
        return self._box.encrypt(password)

    # -- history and backups ------------------------------------------------

    def history(self, fingerprint: str) -> CertificateRecord:
        return self.get(fingerprint)

    def _snapshot(self, record: CertificateRecord, snapshot_id: str) -> VersionEntry:
        for entry in (*record.backups, *record.version_history):
            if entry.snapshot_id == snapshot_id:
                return entry
        raise CertProblem(
            ErrorKind.NOT_FOUND,
            f"Snapshot {snapshot_id} not found for certificate '{record.name}'",
        )

    def create_backup(self, fingerprint: str, description: str = "") -> VersionEntry:
        record = self.get(fingerprint)
        with self._store.lock(record.cert_id):
            _, entry = self._store.snapshot(
                self._store.load(record.cert_id),
                SnapshotType.BACKUP,
                description or "Manual backup",
            )
        return entry

    def restore_backup(self, fingerprint: str, snapshot_id: str) -> CertificateRecord:
        """Restore a snapshot; the current artifacts are archived first."""
        record = self.get(fingerprint)
        with self._store.lock(record.cert_id):
            current = self._store.load(record.cert_id)
            entry = self._snapshot(current, snapshot_id)
            archived, _ = self._store.snapshot(
                current,
                SnapshotType.VERSION,
                f"Before restoring {snapshot_id}",
            )
            self._store.restore_files(archived, entry)
            restored = self._store.save(self._store.load(record.cert_id), previous=current)
        old_fp, new_fp = current.fingerprint, restored.fingerprint
        if (
            old_fp
            and new_fp
            and old_fp != new_fp
            and self._vault.has(old_fp)
            and not self._vault.has(new_fp)
        ):
            self._vault.put(new_fp, self._vault.get(old_fp))
        log.info(
            "Restored %s from %s",
            restored.name,
            snapshot_id,
            extra={"cert_id": restored.cert_id, "fingerprint": new_fp},
        )
        return restored

    def delete_backup(self, fingerprint: str, snapshot_id: str) -> None:
        record = self.get(fingerprint)
        with self._store.lock(record.cert_id):
            current = self._store.load(record.cert_id)
            if not any(b.snapshot_id == snapshot_id for b in current.backups):
                raise CertProblem(
                    ErrorKind.NOT_FOUND,
                    f"Backup {snapshot_id} not found for certificate '{record.name}'",
                )
            self._store.remove_snapshot(current, snapshot_id)
