"""In-memory projection of the certificate store.

Rebuilt from :meth:`CertificateStore.scan` at startup and kept current
by subscribing to the store's event bus.  Readers share a read lock;
each store event is applied under the exclusive write lock, in the
order the bus delivers them.

Relationships are held by id and looked up on demand, never as object
references.  A certificate's ``signer_fingerprint`` is resolved
against current fingerprints first and then against archived ones, so
a child still resolves to its CA after the CA has been renewed.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import status_for, utcnow
from certkeeper.core.locks import ReadWriteLock
from certkeeper.core.types import CertStatus, CertType
from certkeeper.store.events import StoreEvent, StoreEventKind

if TYPE_CHECKING:
    from collections.abc import Iterable
    from datetime import datetime

    from certkeeper.config.settings import RenewalSettings
    from certkeeper.models.certificate import CertificateRecord, EffectivePolicy, SanEntry

log = logging.getLogger(__name__)

_MAX_CHAIN_DEPTH = 8


class MetadataIndex:
    """Queryable view over every known certificate.

    Parameters
    ----------
    defaults:
        Global renewal defaults used to fill in inherited policy fields.

    """

    def __init__(self, defaults: RenewalSettings) -> None:
        self._defaults = defaults
        self._lock = ReadWriteLock()
        self._by_id: dict[str, CertificateRecord] = {}
        self._by_fp: dict[str, str] = {}
        self._archived_fp: dict[str, str] = {}
        self._by_san: dict[tuple[str, str], set[str]] = {}

    # -- maintenance --------------------------------------------------------

    def set_defaults(self, defaults: RenewalSettings) -> None:
        with self._lock.write():
            self._defaults = defaults

    @property
    def defaults(self) -> RenewalSettings:
        return self._defaults

    def rebuild(self, records: Iterable[CertificateRecord]) -> None:
        with self._lock.write():
            self._by_id.clear()
            self._by_fp.clear()
            self._archived_fp.clear()
            self._by_san.clear()
            for record in records:
                self._insert(record)
        log.info("Metadata index rebuilt with %d certificate(s)", len(self._by_id))

    def apply(self, event: StoreEvent) -> None:
        """Store-event subscriber."""
        with self._lock.write():
            old = self._by_id.get(event.cert_id)
            if old is not None:
                self._remove(old)
            if event.kind != StoreEventKind.DELETED and event.record is not None:
                self._insert(event.record)
        log.debug(
            "Index applied %s event for %s",
            event.kind.value,
            event.cert_id,
            extra={"cert_id": event.cert_id, "sequence": event.sequence},
        )

    def _insert(self, record: CertificateRecord) -> None:
        self._by_id[record.cert_id] = record
        if record.fingerprint:
            self._by_fp[record.fingerprint] = record.cert_id
        for entry in record.version_history:
            if entry.fingerprint:
                self._archived_fp[entry.fingerprint] = record.cert_id
        for san in (*record.subject, *record.idle_subject):
            self._by_san.setdefault(san.key, set()).add(record.cert_id)

    def _remove(self, record: CertificateRecord) -> None:
        self._by_id.pop(record.cert_id, None)
        if record.fingerprint and self._by_fp.get(record.fingerprint) == record.cert_id:
            del self._by_fp[record.fingerprint]
        for fp in [fp for fp, cid in self._archived_fp.items() if cid == record.cert_id]:
            del self._archived_fp[fp]
        for san in (*record.subject, *record.idle_subject):
            owners = self._by_san.get(san.key)
            if owners is not None:
                owners.discard(record.cert_id)
                if not owners:
                    del self._by_san[san.key]

    # -- lookups ------------------------------------------------------------

    def _resolve_id(self, fingerprint: str) -> str | None:
        return self._by_fp.get(fingerprint) or self._archived_fp.get(fingerprint)

    def find(self, fingerprint: str) -> CertificateRecord | None:
        with self._lock.read():
            cert_id = self._resolve_id(fingerprint)
            return self._by_id.get(cert_id) if cert_id else None

    def get(self, fingerprint: str) -> CertificateRecord:
        """Return the certificate whose current fingerprint is *fingerprint*."""
        with self._lock.read():
            cert_id = self._by_fp.get(fingerprint)
            record = self._by_id.get(cert_id) if cert_id else None
        if record is None:
            raise CertProblem(ErrorKind.NOT_FOUND, f"Certificate {fingerprint} not found")
        return record

    def get_by_id(self, cert_id: str) -> CertificateRecord:
        with self._lock.read():
            record = self._by_id.get(cert_id)
        if record is None:
            raise CertProblem(ErrorKind.NOT_FOUND, f"Certificate {cert_id} not found")
        return record

    def all(self) -> list[CertificateRecord]:
        with self._lock.read():
            records = list(self._by_id.values())
        return sorted(records, key=lambda r: (r.name.lower(), r.cert_id))

    def __len__(self) -> int:
        with self._lock.read():
            return len(self._by_id)

    # -- relationships ------------------------------------------------------

    def signer_of(self, record: CertificateRecord) -> CertificateRecord | None:
        if not record.signer_fingerprint:
            return None
        with self._lock.read():
            cert_id = self._resolve_id(record.signer_fingerprint)
            return self._by_id.get(cert_id) if cert_id else None

    def children_of(self, fingerprint: str) -> list[CertificateRecord]:
        """Certificates whose signer resolves to the certificate at *fingerprint*."""
        with self._lock.read():
            parent_id = self._resolve_id(fingerprint)
            if parent_id is None:
                return []
            return [
                r
                for r in self._by_id.values()
                if r.signer_fingerprint
                and r.cert_id != parent_id
                and self._resolve_id(r.signer_fingerprint) == parent_id
            ]

    def path_to_root(self, fingerprint: str) -> list[CertificateRecord]:
        """The certificate followed by its issuers, up to a self-signed root.

        Stops at an unresolvable signer or a cycle.
        """
        path: list[CertificateRecord] = []
        seen: set[str] = set()
        with self._lock.read():
            cert_id = self._resolve_id(fingerprint)
            while cert_id and cert_id not in seen and len(path) < _MAX_CHAIN_DEPTH:
                record = self._by_id.get(cert_id)
                if record is None:
                    break
                seen.add(cert_id)
                path.append(record)
                cert_id = (
                    self._resolve_id(record.signer_fingerprint)
                    if record.signer_fingerprint
                    else None
                )
        return path

    def chain_integrity_problem(
        self,
        cert_type: CertType,
        signer_fingerprint: str | None,
    ) -> str | None:
        """Describe why *signer_fingerprint* cannot sign a *cert_type*, or ``None``."""
        if signer_fingerprint is None:
            return None
        signer = self.find(signer_fingerprint)
        if signer is None:
            return f"Signing CA {signer_fingerprint} is not present in the store"
        if not signer.cert_type.is_ca:
            return f"Certificate '{signer.name}' is not a CA and cannot sign certificates"
        if cert_type == CertType.INTERMEDIATE_CA and signer.cert_type != CertType.ROOT_CA:
            return "Intermediate CAs can only be signed by a root CA"
        if cert_type == CertType.ROOT_CA:
            return "Root CAs are self-signed and cannot have a signer"
        return None

    # -- SANs and groups ----------------------------------------------------

    def owners_of(self, san: SanEntry) -> set[str]:
        with self._lock.read():
            return set(self._by_san.get(san.key, ()))

    def groups(self) -> list[str]:
        with self._lock.read():
            return sorted({r.group for r in self._by_id.values() if r.group})

    # -- status -------------------------------------------------------------

    def effective_policy(self, record: CertificateRecord) -> EffectivePolicy:
        return record.policy.effective(self._defaults, record.cert_type)

    def status(self, record: CertificateRecord, now: datetime | None = None) -> CertStatus:
        if record.parse_error:
            return CertStatus.UNKNOWN
        return status_for(
            record.valid_to,
            self.effective_policy(record).renew_before_days,
            now,
        )

    def renewal_candidates(self, now: datetime | None = None) -> list[CertificateRecord]:
        """Auto-renew certificates that are expiring soon or expired.

        Signers come before the certificates they sign so a sweep that
        renews both issues the child under the fresh CA.
        """
        now = now or utcnow()
        due = [
            r
            for r in self.all()
            if not r.parse_error
            and self.effective_policy(r).auto_renew
            and self.status(r, now) in (CertStatus.EXPIRING_SOON, CertStatus.EXPIRED)
        ]
        order = {CertType.ROOT_CA: 0, CertType.INTERMEDIATE_CA: 1, CertType.STANDARD: 2}
        return sorted(due, key=lambda r: order[r.cert_type])
