"""Per-certificate renewal state machine and renewal sweeps.

One renewal walks::

    idle -> preflight -> passphraseResolution -> issuance -> archive
         -> materialize -> publish -> idle

A missing passphrase stops in ``needsPassphrase``; a failure after
issuance starts goes through ``rollback``, which restores the archived
artifacts and metadata so the certificate stays usable in its previous
form.  The outcome of every attempt is persisted on the certificate as
``lastRenewal``.

Renewals of one certificate are serialised by the store's
per-certificate lock, held for the whole walk.  A sweep renews the
due certificates on a bounded worker pool, CAs before the
certificates they sign, retrying transient failures with exponential
backoff.
"""

from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from contextlib import nullcontext
from dataclasses import dataclass, field, replace
from datetime import timedelta
from typing import TYPE_CHECKING, Any

from certkeeper.app.errors import CertProblem, ErrorKind, kind_of
from certkeeper.core.expiry import utcnow
from certkeeper.core.state import assert_transition, log_transition
from certkeeper.core.types import (
    DERIVED_FORMS,
    PASSWORD_FORMS,
    ArtifactForm,
    CertType,
    DispatchMode,
    KeyType,
    RenewalState,
    RenewalTrigger,
    SnapshotType,
)
from certkeeper.crypto import (
    CryptoError,
    build_csr,
    convert,
    create_self_signed,
    decrypt_key,
    generate_key,
    serialize_cert,
    serialize_csr,
    serialize_key,
    sign_csr,
)
from certkeeper.crypto.profiles import render_ext
from certkeeper.models.certificate import RenewalStatusRecord
from certkeeper.store.events import StoreEventKind

if TYPE_CHECKING:
    from concurrent.futures import Future

    from cryptography import x509
    from cryptography.hazmat.primitives.asymmetric.types import PrivateKeyTypes

    from certkeeper.app.shutdown import ShutdownCoordinator
    from certkeeper.config.settings import RenewalSettings
    from certkeeper.deploy.dispatcher import Dispatcher
    from certkeeper.hooks.registry import HookRegistry
    from certkeeper.index.metadata_index import MetadataIndex
    from certkeeper.models.certificate import CertificateRecord, EffectivePolicy, SanEntry, VersionEntry
    from certkeeper.store.certificate_store import CertificateStore
    from certkeeper.vault import PassphraseVault, SecretBox

log = logging.getLogger(__name__)

_EC_SIZES = (256, 384)
_TYPE_ORDER = (CertType.ROOT_CA, CertType.INTERMEDIATE_CA, CertType.STANDARD)


@dataclass(frozen=True)
class RenewalRequest:
    """Parameters of one renewal.

    ``validity_days`` overrides the effective policy; passphrases given
    here win over stored ones and are persisted in the vault when
    ``store_passphrases`` is set.  ``reuse_key=None`` keeps the key of
    a CA, so what it already signed still chains to it, and generates a
    new key for everything else.
    """

    validity_days: int | None = None
    passphrase: str | None = field(default=None, repr=False)
    signer_passphrase: str | None = field(default=None, repr=False)
    store_passphrases: bool = False
    include_idle: bool | None = None
    subject: tuple[SanEntry, ...] | None = None
    reuse_key: bool | None = None
    trigger: RenewalTrigger = RenewalTrigger.API


def _keeps_key(record: CertificateRecord, request: RenewalRequest) -> bool:
    if request.reuse_key is None:
        return record.cert_type.is_ca
    return request.reuse_key


@dataclass(frozen=True)
class RenewalResult:
    record: CertificateRecord
    previous_fingerprint: str | None
    version: VersionEntry | None
    dispatch: Future | None = None


@dataclass
class SweepResult:
    trigger: RenewalTrigger
    started_at: Any
    finished_at: Any = None
    candidates: int = 0
    renewed: list[str] = field(default_factory=list)
    failed: dict[str, str] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        return {
            "trigger": self.trigger.value,
            "startedAt": self.started_at.isoformat(),
            "finishedAt": self.finished_at.isoformat() if self.finished_at else None,
            "candidates": self.candidates,
            "renewed": len(self.renewed),
            "failed": len(self.failed),
            "failures": dict(self.failed),
        }


@dataclass
class _Secrets:
    own: str | None = None
    signer: str | None = None


class RenewalEngine:
    """Renews certificates one at a time or in sweeps.

    Parameters
    ----------
    store:
        Certificate store.
    index:
        Metadata index (signer lookups, candidates, children).
    vault:
        Passphrase vault consulted when no passphrase is supplied.
    settings:
        Renewal settings (workers, retries, global policy defaults).
    dispatcher:
        Receives one live dispatch per successful renewal.
    hooks:
        Receives ``certificate.renewed`` and ``certificate.renewal_failed``.
    shutdown:
        Tracks renewals; its stop event interrupts retry backoff.

    """

    def __init__(  # noqa: PLR0913
        self,
        store: CertificateStore,
        index: MetadataIndex,
        vault: PassphraseVault,
        settings: RenewalSettings,
        *,
        dispatcher: Dispatcher | None = None,
        hooks: HookRegistry | None = None,
        shutdown: ShutdownCoordinator | None = None,
        box: SecretBox | None = None,
    ) -> None:
        self._store = store
        self._index = index
        self._vault = vault
        self._box = box
        self._settings = settings
        self._dispatcher = dispatcher
        self._hooks = hooks
        self._shutdown = shutdown
        self._stop_event = shutdown.stop_event if shutdown else threading.Event()
        self._states: dict[str, RenewalState] = {}
        self._states_lock = threading.Lock()
        self._sweep_lock = threading.Lock()
        self._last_sweep: SweepResult | None = None

    @property
    def settings(self) -> RenewalSettings:
        return self._settings

    def update_settings(self, settings: RenewalSettings) -> None:
        self._settings = settings
        self._index.set_defaults(settings)

    @property
    def last_sweep(self) -> SweepResult | None:
        return self._last_sweep

    def state_of(self, cert_id: str) -> RenewalState:
        with self._states_lock:
            return self._states.get(cert_id, RenewalState.IDLE)

    def _transition(self, record: CertificateRecord, target: RenewalState, reason: str | None = None) -> None:
        with self._states_lock:
            current = self._states.get(record.cert_id, RenewalState.IDLE)
            assert_transition(current, target)
            if target == RenewalState.IDLE:
                self._states.pop(record.cert_id, None)
            else:
                self._states[record.cert_id] = target
        log_transition(record.name, current, target, reason=reason)

    # -- passphrases --------------------------------------------------------

    def _stored(self, fingerprint: str | None) -> str | None:
        if not fingerprint or not self._vault.has(fingerprint):
            return None
        return self._vault.get(fingerprint)

    def check_passphrases(self, record: CertificateRecord) -> dict[str, Any]:
        """Which passphrases a renewal of *record* needs and which are stored."""
        own_stored = bool(record.fingerprint) and self._vault.has(record.fingerprint)
        needs_vault = record.needs_passphrase
        can_renew = not record.needs_passphrase or own_stored
        signer = self._index.signer_of(record)
        signer_info = None
        if signer is not None:
            signer_stored = bool(signer.fingerprint) and self._vault.has(signer.fingerprint)
            signer_info = {
                "fingerprint": signer.fingerprint,
                "name": signer.name,
                "needsPassphrase": signer.needs_passphrase,
                "hasStoredPassphrase": signer_stored,
            }
            needs_vault = needs_vault or signer.needs_passphrase
            can_renew = can_renew and (not signer.needs_passphrase or signer_stored)
        elif record.signer_fingerprint:
            can_renew = False
        if needs_vault and self._vault.sealed:
            can_renew = False
        return {
            "needsPassphrase": record.needs_passphrase,
            "hasStoredPassphrase": own_stored,
            "signer": signer_info,
            "canAutoRenew": can_renew,
        }

    def _resolve_secrets(
        self,
        record: CertificateRecord,
        signer: CertificateRecord | None,
        request: RenewalRequest,
    ) -> _Secrets:
        secrets = _Secrets()
        missing: list[dict[str, str | None]] = []

        if record.needs_passphrase:
            secrets.own = request.passphrase or self._stored(record.fingerprint)
            if not secrets.own:
                missing.append(
                    {"fingerprint": record.fingerprint, "name": record.name, "role": "certificate"},
                )
            else:
                self._verify_key(record, secrets.own)
        if signer is not None and signer.needs_passphrase:
            secrets.signer = request.signer_passphrase or self._stored(signer.fingerprint)
            if not secrets.signer:
                missing.append(
                    {"fingerprint": signer.fingerprint, "name": signer.name, "role": "signer"},
                )
            else:
                self._verify_key(signer, secrets.signer)

        if missing:
            names = ", ".join(f"{m['name']} ({m['role']})" for m in missing)
            raise CertProblem(
                ErrorKind.PASSPHRASE_REQUIRED,
                f"Passphrase required for {names}",
                payload={"required": missing},
            )
        return secrets

    def _verify_key(self, record: CertificateRecord, passphrase: str) -> PrivateKeyTypes:
        try:
            return decrypt_key(self._store.read_artifact(record, ArtifactForm.KEY), passphrase)
        except CryptoError as exc:
            raise CertProblem(
                ErrorKind.PASSPHRASE_REQUIRED,
                f"Incorrect passphrase for '{record.name}'",
                payload={"required": [{"fingerprint": record.fingerprint, "name": record.name}]},
            ) from exc

    # -- preflight ----------------------------------------------------------

    def _preflight(
        self,
        record: CertificateRecord,
        request: RenewalRequest,
    ) -> tuple[CertificateRecord | None, EffectivePolicy]:
        if record.parse_error:
            raise CertProblem(
                ErrorKind.INVALID_INPUT,
                f"Certificate '{record.name}' cannot be renewed: {record.parse_error}",
            )
        signer = None
        if record.signer_fingerprint:
            problem = self._index.chain_integrity_problem(record.cert_type, record.signer_fingerprint)
            if problem:
                raise CertProblem(ErrorKind.SIGNER_UNAVAILABLE, problem)
            signer = self._index.signer_of(record)
            if signer is None or signer.parse_error:
                raise CertProblem(
                    ErrorKind.SIGNER_UNAVAILABLE,
                    f"Signing CA of '{record.name}' is not usable",
                )
            chain = self._index.path_to_root(signer.fingerprint or "")
            if not chain or chain[-1].cert_type != CertType.ROOT_CA:
                raise CertProblem(
                    ErrorKind.SIGNER_UNAVAILABLE,
                    f"Signer chain of '{record.name}' does not end at a root CA",
                )

        seen: set[tuple[str, str]] = set()
        for san in (*(request.subject or record.subject), *record.idle_subject):
            if san.key in seen:
                raise CertProblem(
                    ErrorKind.CONFLICT,
                    f"Duplicate subject entry '{san.value}' on '{record.name}'",
                )
            seen.add(san.key)

        if (
            record.cert_type.is_ca
            and not _keeps_key(record, request)
            and record.fingerprint
            and self._index.children_of(record.fingerprint)
        ):
            raise CertProblem(
                ErrorKind.CONFLICT,
                f"'{record.name}' still signs other certificates; a new CA key would "
                "leave them without a valid issuer",
            )

        policy = self._index.effective_policy(record)
        validity = request.validity_days or policy.validity_days
        # A one-off validity is not held against renewBeforeDays; only stored
        # policies are (see CertificateService.update_policy)
        if validity < 1:
            raise CertProblem(ErrorKind.INVALID_INPUT, "Validity must be at least one day")
        return signer, replace(policy, validity_days=validity)

    # -- issuance -----------------------------------------------------------

    def _key_params(self, record: CertificateRecord, policy: EffectivePolicy) -> tuple[str, int]:
        key_type = record.key_type or self._settings.key_type
        if key_type == KeyType.EC:
            return key_type, record.key_size if record.key_size in _EC_SIZES else _EC_SIZES[0]
        return KeyType.RSA.value, policy.key_size

    def _new_subject(
        self,
        record: CertificateRecord,
        request: RenewalRequest,
    ) -> tuple[tuple[SanEntry, ...], bool]:
        """The subject to issue and whether the idle entries were merged into it."""
        base = request.subject or record.subject
        include = (
            self._settings.include_idle_on_renewal
            if request.include_idle is None
            else request.include_idle
        )
        if include and record.idle_subject:
            return (*base, *record.idle_subject), True
        return base, False

    def _issue(  # noqa: PLR0913
        self,
        record: CertificateRecord,
        signer: CertificateRecord | None,
        subject: tuple[SanEntry, ...],
        policy: EffectivePolicy,
        secrets: _Secrets,
        request: RenewalRequest,
    ) -> tuple[x509.Certificate, PrivateKeyTypes, x509.CertificateSigningRequest]:
        if not subject:
            raise CertProblem(ErrorKind.INVALID_INPUT, f"Certificate '{record.name}' has no subject")
        try:
            if _keeps_key(record, request):
                key = decrypt_key(self._store.read_artifact(record, ArtifactForm.KEY), secrets.own)
            else:
                key = generate_key(*self._key_params(record, policy))
            csr = build_csr(subject, key)
            if signer is None:
                cert = create_self_signed(subject, key, policy.validity_days, record.cert_type)
            else:
                ca_cert = self._store.load_x509(signer)
                ca_key = decrypt_key(self._store.read_artifact(signer, ArtifactForm.KEY), secrets.signer)
                cert = sign_csr(csr, ca_cert, ca_key, policy.validity_days, record.cert_type)
        except CryptoError as exc:
            raise exc.to_problem(ErrorKind.ISSUANCE_FAILED) from exc
        return cert, key, csr

    # -- materialize --------------------------------------------------------

    def _bundle_password(
        self,
        record: CertificateRecord,
        form: ArtifactForm,
        key_passphrase: str | None,
    ) -> str:
        """The password an existing p12/pfx bundle was created with."""
        if record.bundle_password and self._box is not None:
            return self._box.decrypt(record.bundle_password)
        # Bundles converted without an explicit password used the key passphrase
        if key_passphrase:
            return key_passphrase
        raise CertProblem(
            ErrorKind.PASSPHRASE_REQUIRED,
            f"The {form.value} bundle of '{record.name}' cannot be re-created: its "
            "password is not stored; convert it again or remove it before renewing",
            payload={
                "required": [
                    {"fingerprint": record.fingerprint, "name": record.name, "role": "certificate"},
                ],
            },
        )

    def _materialize(  # noqa: PLR0913
        self,
        record: CertificateRecord,
        signer: CertificateRecord | None,
        cert: x509.Certificate,
        key: PrivateKeyTypes,
        csr: x509.CertificateSigningRequest,
        subject: tuple[SanEntry, ...],
        passphrase: str | None,
    ) -> None:
        chain: list[x509.Certificate] = []
        if signer is not None and signer.fingerprint:
            chain = [self._store.load_x509(r) for r in self._index.path_to_root(signer.fingerprint)]

        artifacts: dict[ArtifactForm, bytes] = {
            ArtifactForm.CRT: serialize_cert(cert),
            ArtifactForm.KEY: serialize_key(key, passphrase),
            ArtifactForm.CSR: serialize_csr(csr),
            ArtifactForm.EXT: render_ext(subject, record.cert_type).encode("utf-8"),
        }
        for name in record.paths:
            form = ArtifactForm(name)
            if form not in DERIVED_FORMS:
                continue
            password = self._bundle_password(record, form, passphrase) if form in PASSWORD_FORMS else None
            try:
                artifacts[form] = convert(cert, key, form, password=password, chain=chain)
            except CryptoError as exc:
                raise exc.to_problem(ErrorKind.MATERIALIZATION_FAILED) from exc
        try:
            self._store.write_artifacts(record, artifacts)
        except OSError as exc:
            raise CertProblem(
                ErrorKind.MATERIALIZATION_FAILED,
                f"Could not write renewed files: {exc.strerror or exc}",
            ) from exc

    # -- the state machine --------------------------------------------------

    def renew(self, cert_id: str, request: RenewalRequest | None = None) -> RenewalResult:
        """Renew one certificate now; raises :class:`CertProblem` on failure."""
        request = request or RenewalRequest()
        tracker = self._shutdown.track("renewal") if self._shutdown else nullcontext()
        with tracker, self._store.lock(cert_id, timeout=self._settings.lock_timeout_seconds):
            record = self._store.load(cert_id)
            try:
                return self._walk(record, request)
            except CertProblem as exc:
                self._record_failure(cert_id, request, exc)
                raise

    def _walk(self, original: CertificateRecord, request: RenewalRequest) -> RenewalResult:
        self._transition(original, RenewalState.PREFLIGHT, request.trigger.value)
        try:
            signer, policy = self._preflight(original, request)
        except CertProblem as exc:
            self._fail(original, exc)
            raise

        self._transition(original, RenewalState.PASSPHRASE_RESOLUTION)
        try:
            secrets = self._resolve_secrets(original, signer, request)
        except CertProblem as exc:
            if exc.kind == ErrorKind.PASSPHRASE_REQUIRED:
                self._transition(original, RenewalState.NEEDS_PASSPHRASE, exc.detail)
                self._transition(original, RenewalState.IDLE)
            else:
                self._fail(original, exc)
            raise

        subject, merged_idle = self._new_subject(original, request)
        snapshot: VersionEntry | None = None
        current = original
        self._transition(original, RenewalState.ISSUANCE)
        try:
            cert, key, csr = self._issue(original, signer, subject, policy, secrets, request)

            self._transition(original, RenewalState.ARCHIVE)
            current, snapshot = self._store.snapshot(original, SnapshotType.VERSION, "Before renewal")

            self._transition(original, RenewalState.MATERIALIZE)
            self._materialize(current, signer, cert, key, csr, subject, secrets.own)
            renewed = self._store.save(
                replace(
                    current,
                    subject=subject,
                    idle_subject=() if merged_idle else original.idle_subject,
                    signer_fingerprint=signer.fingerprint if signer else None,
                    last_renewal=RenewalStatusRecord(
                        state=RenewalState.IDLE.value,
                        at=utcnow(),
                        message="Renewed",
                        trigger=request.trigger.value,
                    ),
                ),
                previous=original,
                kind=StoreEventKind.RENEWED,
            )
        except Exception as exc:
            problem = exc if isinstance(exc, CertProblem) else CertProblem(
                kind_of(exc),
                f"Renewal failed: {exc}",
            )
            if not isinstance(exc, CertProblem):
                log.exception("Unexpected error renewing %s", original.name)
            self._rollback(original, current, snapshot, problem)
            raise problem from exc

        self._transition(original, RenewalState.PUBLISH)
        try:
            self._publish(original, renewed, snapshot, secrets, signer, request)
        finally:
            self._transition(original, RenewalState.IDLE)
        dispatch = None
        if self._dispatcher is not None and renewed.deployment_actions:
            dispatch = self._dispatcher.enqueue(renewed.cert_id, DispatchMode.LIVE, "renewal")
        return RenewalResult(renewed, original.fingerprint, snapshot, dispatch)

    def _fail(self, record: CertificateRecord, problem: CertProblem) -> None:
        self._transition(record, RenewalState.FAILED, problem.detail)
        self._transition(record, RenewalState.IDLE)

    def _rollback(
        self,
        original: CertificateRecord,
        current: CertificateRecord,
        snapshot: VersionEntry | None,
        problem: CertProblem,
    ) -> None:
        self._transition(original, RenewalState.ROLLBACK, problem.detail)
        try:
            if snapshot is not None:
                self._undo(original, current, snapshot)
        finally:
            self._fail(original, problem)

    def _undo(self, original: CertificateRecord, current: CertificateRecord, snapshot: VersionEntry) -> None:
        try:
            self._store.restore_files(current, snapshot)
            # Snapshot ids stay monotonic even when the snapshot is discarded
            self._store.save(replace(original, archive_counter=snapshot.version), previous=current)
            self._store.discard_snapshot(original.cert_id, snapshot.snapshot_id)
        except (CertProblem, OSError):
            log.exception(
                "Rollback of %s failed; snapshot %s kept for manual recovery",
                original.name,
                snapshot.snapshot_id,
            )

    def _publish(  # noqa: PLR0913
        self,
        original: CertificateRecord,
        renewed: CertificateRecord,
        snapshot: VersionEntry | None,
        secrets: _Secrets,
        signer: CertificateRecord | None,
        request: RenewalRequest,
    ) -> None:
        old_fp, new_fp = original.fingerprint, renewed.fingerprint
        try:
            if old_fp and new_fp and old_fp != new_fp:
                self._vault.rekey(old_fp, new_fp)
            if request.store_passphrases:
                if secrets.own and new_fp:
                    self._vault.put(new_fp, secrets.own)
                if secrets.signer and signer is not None and signer.fingerprint:
                    self._vault.put(signer.fingerprint, secrets.signer)
        except CertProblem:
            log.exception("Could not update stored passphrases of %s", renewed.name)

        if renewed.cert_type.is_ca and old_fp and new_fp and old_fp != new_fp:
            for child in self._index.children_of(new_fp):
                if child.signer_fingerprint == old_fp:
                    self._store.save(replace(child, signer_fingerprint=new_fp), previous=child)

        if snapshot is not None and not self._settings.backups_enabled:
            self._store.remove_snapshot(renewed, snapshot.snapshot_id)
        elif not self._settings.keep_backups_forever:
            cutoff = utcnow() - timedelta(days=self._settings.backup_retention_days)
            self._store.prune_versions(self._store.load(renewed.cert_id), cutoff)

        log.info(
            "Renewed %s, valid until %s",
            renewed.name,
            renewed.valid_to.isoformat() if renewed.valid_to else "?",
            extra={
                "cert_id": renewed.cert_id,
                "fingerprint": new_fp,
                "previous_fingerprint": old_fp,
                "trigger": request.trigger.value,
            },
        )
        if self._hooks is not None:
            self._hooks.dispatch(
                "certificate.renewed",
                {
                    "certificate": renewed.name,
                    "fingerprint": new_fp,
                    "previous_fingerprint": old_fp,
                    "valid_to": renewed.valid_to.isoformat() if renewed.valid_to else None,
                    "trigger": request.trigger.value,
                },
            )

    def _record_failure(self, cert_id: str, request: RenewalRequest, problem: CertProblem) -> None:
        state = (
            RenewalState.NEEDS_PASSPHRASE
            if problem.kind == ErrorKind.PASSPHRASE_REQUIRED
            else RenewalState.FAILED
        )
        try:
            record = self._store.load(cert_id)
            self._store.save(
                replace(
                    record,
                    last_renewal=RenewalStatusRecord(
                        state=state.value,
                        at=utcnow(),
                        kind=problem.public_kind.value,
                        message=problem.detail,
                        trigger=request.trigger.value,
                    ),
                ),
                previous=record,
            )
        except CertProblem:
            log.exception("Could not record renewal failure of %s", cert_id)
            record = None
        log.warning(
            "Renewal of %s failed: %s",
            record.name if record else cert_id,
            problem.detail,
            extra={"cert_id": cert_id, "kind": problem.kind.value, "trigger": request.trigger.value},
        )
        if self._hooks is not None:
            self._hooks.dispatch(
                "certificate.renewal_failed",
                {
                    "certificate": record.name if record else cert_id,
                    "fingerprint": record.fingerprint if record else None,
                    "kind": problem.public_kind.value,
                    "message": problem.detail,
                    "trigger": request.trigger.value,
                },
            )

    # -- retries and sweeps -------------------------------------------------

    def renew_with_retry(self, cert_id: str, request: RenewalRequest) -> RenewalResult:
        """:meth:`renew`, retrying transient failures with exponential backoff."""
        attempt = 0
        while True:
            try:
                return self.renew(cert_id, request)
            except CertProblem as exc:
                if not exc.retryable or attempt >= self._settings.max_retries:
                    raise
                delay = self._settings.retry_base_seconds * (2**attempt)
                attempt += 1
                log.info(
                    "Retrying renewal of %s in %.1fs (attempt %d/%d): %s",
                    cert_id,
                    delay,
                    attempt,
                    self._settings.max_retries,
                    exc.detail,
                    extra={"cert_id": cert_id, "attempt": attempt},
                )
                if self._stop_event.wait(timeout=delay):
                    raise CertProblem(ErrorKind.CANCELLED, "Shutting down") from exc

    def sweep(self, trigger: RenewalTrigger = RenewalTrigger.SCHEDULE) -> SweepResult | None:
        """Renew every due auto-renew certificate.

        Returns ``None`` when another sweep is already running; that
        sweep covers this request.
        """
        if not self._sweep_lock.acquire(blocking=False):
            log.info("Renewal sweep already running; %s trigger coalesced", trigger.value)
            return None
        try:
            return self._sweep(trigger)
        finally:
            self._sweep_lock.release()

    def _sweep(self, trigger: RenewalTrigger) -> SweepResult:
        result = SweepResult(trigger=trigger, started_at=utcnow())
        candidates = self._index.renewal_candidates(result.started_at)
        result.candidates = len(candidates)
        log.info(
            "Renewal sweep found %d candidate(s)",
            len(candidates),
            extra={"trigger": trigger.value},
        )
        request = RenewalRequest(trigger=trigger)
        with ThreadPoolExecutor(
            max_workers=max(1, self._settings.workers),
            thread_name_prefix="renewal",
        ) as pool:
            # CAs finish before the certificates they sign are issued
            for cert_type in _TYPE_ORDER:
                tier = [r for r in candidates if r.cert_type == cert_type]
                futures = {
                    r.cert_id: (r, pool.submit(self.renew_with_retry, r.cert_id, request))
                    for r in tier
                    if not self._stop_event.is_set()
                }
                for cert_id, (record, future) in futures.items():
                    try:
                        future.result()
                        result.renewed.append(cert_id)
                    except CertProblem as exc:
                        result.failed[record.name] = f"{exc.public_kind.value}: {exc.detail}"
                    except Exception as exc:
                        log.exception("Renewal of %s crashed", record.name)
                        result.failed[record.name] = f"{ErrorKind.INTERNAL.value}: {exc}"
        result.finished_at = utcnow()
        self._last_sweep = result
        log.info(
            "Renewal sweep finished: %d renewed, %d failed",
            len(result.renewed),
            len(result.failed),
            extra={"trigger": trigger.value, "duration_ms": _ms_between(result)},
        )
        return result


def _ms_between(result: SweepResult) -> int:
    return int((result.finished_at - result.started_at).total_seconds() * 1000)
