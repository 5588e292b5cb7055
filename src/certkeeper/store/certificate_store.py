"""Filesystem-backed certificate store.

Layout of the storage root::

    <root>/
        <cert_id>/
            metadata.json
            <basename>.crt  <basename>.key  <basename>.csr  <basename>.ext
            <basename>.p12  <basename>.chain.pem  ...      (derived forms)
            archive/
                v0001/      snapshot taken before a renewal
                    snapshot.json
                    <basename>.crt ...
                b0002/      explicit backup

``cert_id`` is assigned at creation and never changes; the
fingerprint changes with every renewal.  All artifact and metadata
writes go through :func:`~certkeeper.core.fs.atomic_write_bytes`, so
lock-free readers always see a complete file.  Mutations of one
certificate are serialised by a per-certificate re-entrant lock and
announced on the :class:`~certkeeper.store.events.EventBus` while that
lock is still held.
"""

from __future__ import annotations

import io
import logging
import re
import shutil
import threading
import zipfile
from contextlib import contextmanager
from dataclasses import replace
from pathlib import Path
from typing import TYPE_CHECKING, Any

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import utcnow
from certkeeper.core.fs import atomic_write_bytes, atomic_write_json, read_json
from certkeeper.core.locks import KeyedLocks
from certkeeper.core.types import ArtifactForm, CertType, SnapshotType
from certkeeper.crypto import (
    CryptoError,
    convert,
    decrypt_key,
    key_is_encrypted,
    load_certificate,
    parse_cert,
)
from certkeeper.models.certificate import CertificateRecord, VersionEntry
from certkeeper.store.events import EventBus, StoreEventKind
from certkeeper.store.metadata import from_metadata, to_metadata, version_to_dict

if TYPE_CHECKING:
    from collections.abc import Generator, Sequence
    from datetime import datetime

    from cryptography import x509

log = logging.getLogger(__name__)

METADATA_FILE = "metadata.json"
ARCHIVE_DIR = "archive"
SNAPSHOT_FILE = "snapshot.json"

_FORM_SUFFIX = {
    ArtifactForm.CHAIN: ".chain.pem",
    ArtifactForm.FULLCHAIN: ".fullchain.pem",
}

SECRET_FORMS: frozenset[ArtifactForm] = frozenset(
    {ArtifactForm.KEY, ArtifactForm.PEM, ArtifactForm.P12, ArtifactForm.PFX},
)

_SLUG_RE = re.compile(r"[^a-z0-9._-]+")


def slugify(name: str) -> str:
    """File-system safe base name for a certificate's artifacts."""
    slug = _SLUG_RE.sub("-", name.strip().lower()).strip("-.")
    return slug or "certificate"


def artifact_filename(basename: str, form: ArtifactForm) -> str:
    return basename + _FORM_SUFFIX.get(form, f".{form.value}")


class CertificateStore:
    """Owns every file under the storage root.

    Parameters
    ----------
    root:
        Storage root directory; created when missing.
    bus:
        Event bus receiving change notifications.
    lock_timeout:
        Seconds to wait for a per-certificate lock before giving up
        with a ``Transient`` problem.

    """

    def __init__(
        self,
        root: str | Path,
        bus: EventBus | None = None,
        *,
        lock_timeout: float = 300.0,
    ) -> None:
        self._root = Path(root)
        self._root.mkdir(parents=True, exist_ok=True)
        self._bus = bus or EventBus()
        self._locks = KeyedLocks()
        self._lock_timeout = lock_timeout
        self._adopt_lock = threading.Lock()

    @property
    def root(self) -> Path:
        return self._root

    @property
    def bus(self) -> EventBus:
        return self._bus

    def directory(self, cert_id: str) -> Path:
        return self._root / cert_id

    def artifact_path(self, record: CertificateRecord, form: ArtifactForm) -> Path:
        return self.directory(record.cert_id) / artifact_filename(record.basename, form)

    # -- locking ------------------------------------------------------------

    @contextmanager
    def lock(self, cert_id: str, timeout: float | None = None) -> Generator[None, None, None]:
        """Hold the exclusive lock of one certificate."""
        lock = self._locks.get(cert_id)
        wait = self._lock_timeout if timeout is None else timeout
        if not lock.acquire(timeout=wait):
            raise CertProblem(
                ErrorKind.TRANSIENT,
                f"Certificate {cert_id} is busy, try again later",
            )
        try:
            yield
        finally:
            lock.release()

    # -- reading ------------------------------------------------------------

    def scan(self) -> list[CertificateRecord]:
        """Load every certificate directory under the root.

        Directories that hold a ``.crt`` but no metadata file are
        adopted.  Unreadable certificates are returned with
        ``parse_error`` set; scanning never aborts on one bad entry.
        """
        records: list[CertificateRecord] = []
        for entry in sorted(self._root.iterdir()):
            if not entry.is_dir() or entry.name.startswith("."):
                continue
            try:
                if (entry / METADATA_FILE).is_file():
                    records.append(self.load(entry.name))
                else:
                    adopted = self._adopt(entry)
                    if adopted is not None:
                        records.append(adopted)
            except (OSError, ValueError, KeyError):
                log.exception("Skipping unreadable certificate directory %s", entry)
        log.info("Scanned %d certificate(s) under %s", len(records), self._root)
        return records

    def load(self, cert_id: str) -> CertificateRecord:
        directory = self.directory(cert_id)
        meta = read_json(directory / METADATA_FILE)
        if meta is None:
            raise CertProblem(ErrorKind.NOT_FOUND, f"Certificate {cert_id} not found")
        return self._with_crypto(CertificateRecord(**from_metadata(meta)))

    def refresh(self, cert_id: str) -> CertificateRecord | None:
        """Re-read a directory changed behind the store's back and announce it.

        Returns ``None`` when the directory is gone or holds no certificate.
        """
        directory = self.directory(cert_id)
        with self.lock(cert_id):
            if not directory.is_dir():
                self._bus.publish(StoreEventKind.DELETED, cert_id, None)
                return None
            if (directory / METADATA_FILE).is_file():
                record = self.load(cert_id)
                self._bus.publish(StoreEventKind.UPDATED, cert_id, record)
                return record
            record = self._adopt(directory)
            if record is not None:
                self._bus.publish(StoreEventKind.CREATED, cert_id, record)
            return record

    def _present(self, cert_id: str, basename: str) -> dict[ArtifactForm, Path]:
        directory = self.directory(cert_id)
        present = {}
        for form in ArtifactForm:
            path = directory / artifact_filename(basename, form)
            if path.is_file():
                present[form] = path
        return present

    def _with_crypto(self, record: CertificateRecord) -> CertificateRecord:
        """Fill in the fields derived from the files on disk."""
        present = self._present(record.cert_id, record.basename)
        updates: dict[str, Any] = {
            "paths": {form.value: str(path) for form, path in present.items()},
            "parse_error": None,
        }
        crt = present.get(ArtifactForm.CRT)
        if crt is None:
            updates["parse_error"] = "Certificate file is missing"
        else:
            try:
                parsed = parse_cert(crt.read_bytes())
            except (CryptoError, ValueError) as exc:
                updates["parse_error"] = f"Could not parse certificate: {exc}"
                log.warning(
                    "Certificate %s could not be parsed: %s",
                    record.cert_id,
                    exc,
                )
            else:
                updates.update(
                    fingerprint=parsed.fingerprint,
                    subject=parsed.subject or record.subject,
                    valid_from=parsed.valid_from,
                    valid_to=parsed.valid_to,
                    key_type=parsed.key_type,
                    key_size=parsed.key_size,
                    sig_alg=parsed.sig_alg,
                    issuer=parsed.issuer,
                    serial_number=parsed.serial_number,
                )
        key = present.get(ArtifactForm.KEY)
        updates["needs_passphrase"] = key is not None and key_is_encrypted(key.read_bytes())
        return replace(record, **updates)

    def _adopt(self, directory: Path) -> CertificateRecord | None:
        crts = sorted(directory.glob("*.crt"))
        if not crts:
            return None
        with self._adopt_lock:
            crt = crts[0]
            basename = crt.name[: -len(".crt")]
            cert_type = CertType.STANDARD
            name = basename
            try:
                parsed = parse_cert(crt.read_bytes())
            except (CryptoError, ValueError):
                log.warning("Adopting unparseable certificate %s", crt)
            else:
                name = parsed.common_name or basename
                if parsed.is_ca:
                    cert_type = (
                        CertType.ROOT_CA if parsed.self_signed else CertType.INTERMEDIATE_CA
                    )
            record = CertificateRecord(
                cert_id=directory.name,
                name=name,
                cert_type=cert_type,
                basename=basename,
                created_at=utcnow(),
            )
            self._write_metadata(record)
            log.info("Adopted unmanaged certificate %s as %s", crt, directory.name)
            return self._with_crypto(record)

    def read_artifact(self, record: CertificateRecord, form: ArtifactForm) -> bytes:
        path = self.artifact_path(record, form)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise CertProblem(
                ErrorKind.NOT_FOUND,
                f"Certificate '{record.name}' has no {form.value} artifact",
            ) from exc

    def load_x509(self, record: CertificateRecord) -> x509.Certificate:
        return load_certificate(self.read_artifact(record, ArtifactForm.CRT))

    def list_files(self, record: CertificateRecord) -> list[dict[str, Any]]:
        files = []
        for form, path in self._present(record.cert_id, record.basename).items():
            stat = path.stat()
            files.append(
                {
                    "form": form.value,
                    "name": path.name,
                    "path": str(path),
                    "size": stat.st_size,
                    "modified": stat.st_mtime,
                },
            )
        return files

    # -- writing ------------------------------------------------------------

    def _write_metadata(self, record: CertificateRecord) -> None:
        atomic_write_json(self.directory(record.cert_id) / METADATA_FILE, to_metadata(record))

    def write_artifacts(
        self,
        record: CertificateRecord,
        artifacts: dict[ArtifactForm, bytes],
    ) -> None:
        """Atomically write *artifacts*; key material gets mode ``0600``."""
        with self.lock(record.cert_id):
            for form, data in artifacts.items():
                atomic_write_bytes(
                    self.artifact_path(record, form),
                    data,
                    mode=0o600 if form in SECRET_FORMS else 0o644,
                )

    def create(
        self,
        record: CertificateRecord,
        artifacts: dict[ArtifactForm, bytes],
    ) -> CertificateRecord:
        """Create the directory of a new certificate and announce it."""
        directory = self.directory(record.cert_id)
        with self.lock(record.cert_id):
            if directory.exists():
                raise CertProblem(
                    ErrorKind.CONFLICT,
                    f"Certificate directory {record.cert_id} already exists",
                )
            try:
                directory.mkdir(parents=True)
                self.write_artifacts(record, artifacts)
                self._write_metadata(record)
            except OSError as exc:
                shutil.rmtree(directory, ignore_errors=True)
                raise CertProblem(
                    ErrorKind.MATERIALIZATION_FAILED,
                    f"Could not write certificate files: {exc.strerror or exc}",
                ) from exc
            created = self._with_crypto(record)
            self._bus.publish(StoreEventKind.CREATED, record.cert_id, created)
        log.info(
            "Created certificate %s",
            created.name,
            extra={"cert_id": created.cert_id, "fingerprint": created.fingerprint},
        )
        return created

    def save(
        self,
        record: CertificateRecord,
        *,
        previous: CertificateRecord | None = None,
        kind: StoreEventKind = StoreEventKind.UPDATED,
    ) -> CertificateRecord:
        """Persist the metadata of *record* and announce the change."""
        with self.lock(record.cert_id):
            if not self.directory(record.cert_id).is_dir():
                raise CertProblem(ErrorKind.NOT_FOUND, f"Certificate {record.cert_id} not found")
            self._write_metadata(record)
            saved = self._with_crypto(record)
            self._bus.publish(kind, record.cert_id, saved, previous)
        return saved

    def delete(self, record: CertificateRecord) -> None:
        with self.lock(record.cert_id):
            shutil.rmtree(self.directory(record.cert_id))
            self._bus.publish(StoreEventKind.DELETED, record.cert_id, None, record)
        self._locks.discard(record.cert_id)
        log.info("Deleted certificate %s", record.name, extra={"cert_id": record.cert_id})

    # -- derived forms ------------------------------------------------------

    def derive(
        self,
        record: CertificateRecord,
        form: ArtifactForm,
        *,
        password: str | None = None,
        key_passphrase: str | None = None,
        chain: Sequence[x509.Certificate] = (),
    ) -> bytes:
        """Derive *form* from the canonical ``crt``/``key`` and write it.

        ``pem`` and ``p12``/``pfx`` need the private key, so an encrypted
        key requires *key_passphrase*; the bundle itself is protected
        with *password* (falling back to *key_passphrase*).
        """
        with self.lock(record.cert_id):
            try:
                cert = self.load_x509(record)
                key = None
                if form in (ArtifactForm.PEM, ArtifactForm.P12, ArtifactForm.PFX):
                    key = decrypt_key(self.read_artifact(record, ArtifactForm.KEY), key_passphrase)
                data = convert(cert, key, form, password=password or key_passphrase, chain=chain)
            except CryptoError as exc:
                raise exc.to_problem(ErrorKind.MATERIALIZATION_FAILED) from exc
            try:
                self.write_artifacts(record, {form: data})
            except OSError as exc:
                raise CertProblem(
                    ErrorKind.MATERIALIZATION_FAILED,
                    f"Could not write {form.value} artifact: {exc.strerror or exc}",
                ) from exc
        log.info(
            "Derived %s for %s",
            form.value,
            record.name,
            extra={"cert_id": record.cert_id, "form": form.value},
        )
        return data

    # -- snapshots ----------------------------------------------------------

    def _snapshot_dir(self, cert_id: str, snapshot_id: str) -> Path:
        return self.directory(cert_id) / ARCHIVE_DIR / snapshot_id

    def snapshot(
        self,
        record: CertificateRecord,
        snapshot_type: SnapshotType,
        description: str = "",
    ) -> tuple[CertificateRecord, VersionEntry]:
        """Copy every current artifact into a new archive snapshot.

        Snapshot ids come from a monotonic per-certificate counter and
        an existing snapshot directory is never reused.
        """
        with self.lock(record.cert_id):
            counter = record.archive_counter + 1
            prefix = "v" if snapshot_type == SnapshotType.VERSION else "b"
            snapshot_id = f"{prefix}{counter:04d}"
            target = self._snapshot_dir(record.cert_id, snapshot_id)
            try:
                target.mkdir(parents=True, exist_ok=False)
                archived = {}
                for form, path in self._present(record.cert_id, record.basename).items():
                    dest = target / path.name
                    shutil.copy2(path, dest)
                    archived[form.value] = str(dest)
                entry = VersionEntry(
                    snapshot_id=snapshot_id,
                    snapshot_type=snapshot_type,
                    version=counter,
                    fingerprint=record.fingerprint,
                    valid_from=record.valid_from,
                    valid_to=record.valid_to,
                    archived_at=utcnow(),
                    archived_paths=archived,
                    description=description,
                )
                atomic_write_json(
                    target / SNAPSHOT_FILE,
                    {
                        **version_to_dict(entry),
                        "basename": record.basename,
                        "subject": [s.to_dict() for s in record.subject],
                        "idleSubject": [s.to_dict() for s in record.idle_subject],
                    },
                )
            except OSError as exc:
                if not isinstance(exc, FileExistsError):
                    shutil.rmtree(target, ignore_errors=True)
                raise CertProblem(
                    ErrorKind.ARCHIVE_FAILED,
                    f"Could not archive certificate files: {exc.strerror or exc}",
                ) from exc

            if snapshot_type == SnapshotType.VERSION:
                updated = replace(
                    record,
                    archive_counter=counter,
                    version_history=(*record.version_history, entry),
                )
            else:
                updated = replace(
                    record,
                    archive_counter=counter,
                    backups=(*record.backups, entry),
                )
            saved = self.save(updated, previous=record)
        log.info(
            "Archived %s as %s",
            record.name,
            snapshot_id,
            extra={"cert_id": record.cert_id, "fingerprint": record.fingerprint},
        )
        return saved, entry

    def restore_files(self, record: CertificateRecord, entry: VersionEntry) -> None:
        """Make the artifact set equal to the one captured in *entry*."""
        with self.lock(record.cert_id):
            source = self._snapshot_dir(record.cert_id, entry.snapshot_id)
            keep = {ArtifactForm(form) for form in entry.archived_paths}
            try:
                for form in keep:
                    archived = source / Path(entry.archived_paths[form.value]).name
                    atomic_write_bytes(
                        self.artifact_path(record, form),
                        archived.read_bytes(),
                        mode=0o600 if form in SECRET_FORMS else 0o644,
                    )
                for form, path in self._present(record.cert_id, record.basename).items():
                    if form not in keep:
                        path.unlink()
            except OSError as exc:
                raise CertProblem(
                    ErrorKind.ARCHIVE_FAILED,
                    f"Could not restore snapshot {entry.snapshot_id}: {exc.strerror or exc}",
                ) from exc
        log.info(
            "Restored files of %s from %s",
            record.name,
            entry.snapshot_id,
            extra={"cert_id": record.cert_id},
        )

    def discard_snapshot(self, cert_id: str, snapshot_id: str) -> None:
        """Remove a snapshot directory without touching metadata."""
        shutil.rmtree(self._snapshot_dir(cert_id, snapshot_id), ignore_errors=True)

    def remove_snapshot(self, record: CertificateRecord, snapshot_id: str) -> CertificateRecord:
        with self.lock(record.cert_id):
            found = any(
                e.snapshot_id == snapshot_id for e in (*record.version_history, *record.backups)
            )
            if not found:
                raise CertProblem(
                    ErrorKind.NOT_FOUND,
                    f"Snapshot {snapshot_id} not found for certificate '{record.name}'",
                )
            self.discard_snapshot(record.cert_id, snapshot_id)
            updated = replace(
                record,
                version_history=tuple(
                    e for e in record.version_history if e.snapshot_id != snapshot_id
                ),
                backups=tuple(e for e in record.backups if e.snapshot_id != snapshot_id),
            )
            return self.save(updated, previous=record)

    def prune_versions(self, record: CertificateRecord, cutoff: datetime) -> CertificateRecord:
        """Drop version snapshots archived before *cutoff*; backups are kept."""
        stale = [e for e in record.version_history if e.archived_at < cutoff]
        if not stale:
            return record
        with self.lock(record.cert_id):
            for entry in stale:
                self.discard_snapshot(record.cert_id, entry.snapshot_id)
            updated = replace(
                record,
                version_history=tuple(e for e in record.version_history if e not in stale),
            )
            saved = self.save(updated, previous=record)
        log.info(
            "Pruned %d version snapshot(s) of %s",
            len(stale),
            record.name,
            extra={"cert_id": record.cert_id},
        )
        return saved

    def zip_files(self, record: CertificateRecord, snapshot_id: str | None = None) -> bytes:
        """Zip the current artifacts, or those of one snapshot."""
        if snapshot_id is None:
            paths = list(self._present(record.cert_id, record.basename).values())
        else:
            entry = next(
                (
                    e
                    for e in (*record.version_history, *record.backups)
                    if e.snapshot_id == snapshot_id
                ),
                None,
            )
            if entry is None:
                raise CertProblem(
                    ErrorKind.NOT_FOUND,
                    f"Snapshot {snapshot_id} not found for certificate '{record.name}'",
                )
            source = self._snapshot_dir(record.cert_id, snapshot_id)
            paths = [source / Path(p).name for p in entry.archived_paths.values()]

        buffer = io.BytesIO()
        with zipfile.ZipFile(buffer, "w", zipfile.ZIP_DEFLATED) as zf:
            for path in paths:
                if path.is_file():
                    zf.write(path, arcname=path.name)
        return buffer.getvalue()
