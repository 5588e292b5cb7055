"""Tests for certkeeper.store.certificate_store."""

from __future__ import annotations

import io
import json
import os
import stat
import threading
import zipfile
from dataclasses import replace
from datetime import timedelta

import pytest

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import utcnow
from certkeeper.core.types import ArtifactForm, CertType, SanKind, SnapshotType
from certkeeper.crypto import (
    build_csr,
    create_self_signed,
    generate_key,
    serialize_cert,
    serialize_csr,
    serialize_key,
)
from certkeeper.models.certificate import CertificateRecord, SanEntry
from certkeeper.store import CertificateStore, EventBus, StoreEventKind
from certkeeper.store.certificate_store import artifact_filename, slugify

SUBJECT = (SanEntry(SanKind.DOMAIN, "app.example.com"),)


def _artifacts(cert_type=CertType.STANDARD, passphrase=None, subject=SUBJECT):
    key = generate_key("ec", 256)
    cert = create_self_signed(subject, key, 90, cert_type)
    return {
        ArtifactForm.CRT: serialize_cert(cert),
        ArtifactForm.KEY: serialize_key(key, passphrase),
        ArtifactForm.CSR: serialize_csr(build_csr(subject, key)),
    }


def _record(cert_id="app", **extra):
    return CertificateRecord(
        cert_id=cert_id,
        name=extra.pop("name", "App"),
        cert_type=extra.pop("cert_type", CertType.STANDARD),
        basename=extra.pop("basename", cert_id),
        subject=SUBJECT,
        created_at=utcnow(),
        **extra,
    )


@pytest.fixture()
def events():
    return []


@pytest.fixture()
def store(tmp_path, events):
    bus = EventBus()
    bus.subscribe(events.append)
    return CertificateStore(tmp_path / "certs", bus, lock_timeout=1)


class TestNaming:
    def test_slugify(self):
        assert slugify("My Web Server!") == "my-web-server"
        assert slugify("  ..  ") == "certificate"

    def test_artifact_filenames(self):
        assert artifact_filename("web", ArtifactForm.CRT) == "web.crt"
        assert artifact_filename("web", ArtifactForm.CHAIN) == "web.chain.pem"
        assert artifact_filename("web", ArtifactForm.FULLCHAIN) == "web.fullchain.pem"


class TestCreateAndLoad:
    def test_create_fills_crypto_fields(self, store, events):
        created = store.create(_record(), _artifacts())
        assert created.fingerprint
        assert created.common_name == "app.example.com"
        assert created.key_type == "ec"
        assert created.needs_passphrase is False
        assert set(created.paths) == {"crt", "key", "csr"}
        assert [e.kind for e in events] == [StoreEventKind.CREATED]

    def test_key_is_private(self, store):
        created = store.create(_record(), _artifacts())
        key_mode = stat.S_IMODE(os.stat(created.paths["key"]).st_mode)
        crt_mode = stat.S_IMODE(os.stat(created.paths["crt"]).st_mode)
        assert key_mode == 0o600
        assert crt_mode == 0o644

    def test_encrypted_key_detected(self, store):
        created = store.create(_record(), _artifacts(passphrase="pw"))
        assert created.needs_passphrase is True

    def test_duplicate_directory(self, store):
        store.create(_record(), _artifacts())
        with pytest.raises(CertProblem) as exc_info:
            store.create(_record(), _artifacts())
        assert exc_info.value.kind == ErrorKind.CONFLICT

    def test_load_round_trips_metadata(self, store):
        store.create(_record(description="front door", group="edge"), _artifacts())
        loaded = store.load("app")
        assert loaded.description == "front door"
        assert loaded.group == "edge"
        assert loaded.name == "App"

    def test_load_missing(self, store):
        with pytest.raises(CertProblem) as exc_info:
            store.load("nope")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_missing_crt_sets_parse_error(self, store):
        created = store.create(_record(), _artifacts())
        os.unlink(created.paths["crt"])
        assert store.load("app").parse_error == "Certificate file is missing"

    def test_garbage_crt_sets_parse_error(self, store):
        created = store.create(_record(), _artifacts())
        with open(created.paths["crt"], "wb") as f:
            f.write(b"garbage")
        assert "Could not parse" in store.load("app").parse_error

    def test_read_missing_artifact(self, store):
        created = store.create(_record(), _artifacts())
        with pytest.raises(CertProblem) as exc_info:
            store.read_artifact(created, ArtifactForm.P12)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_list_files(self, store):
        created = store.create(_record(), _artifacts())
        names = sorted(f["name"] for f in store.list_files(created))
        assert names == ["app.crt", "app.csr", "app.key"]


class TestScan:
    def test_scan_loads_managed_directories(self, store):
        store.create(_record("a"), _artifacts())
        store.create(_record("b", name="B"), _artifacts())
        assert sorted(r.cert_id for r in store.scan()) == ["a", "b"]

    def test_scan_adopts_bare_certificates(self, store):
        directory = store.root / "legacy"
        directory.mkdir()
        artifacts = _artifacts(CertType.ROOT_CA, subject=(SanEntry(SanKind.DOMAIN, "legacy-ca.local"),))
        (directory / "legacy.crt").write_bytes(artifacts[ArtifactForm.CRT])
        (directory / "legacy.key").write_bytes(artifacts[ArtifactForm.KEY])

        (record,) = store.scan()
        assert record.cert_id == "legacy"
        assert record.name == "legacy-ca.local"
        assert record.cert_type == CertType.ROOT_CA
        assert (directory / "metadata.json").is_file()

    def test_scan_skips_hidden_and_empty(self, store):
        (store.root / ".certkeeper").mkdir()
        (store.root / "empty").mkdir()
        assert store.scan() == []


class TestRefresh:
    def test_refresh_updated(self, store, events):
        store.create(_record(), _artifacts())
        events.clear()
        record = store.refresh("app")
        assert record is not None
        assert events[-1].kind == StoreEventKind.UPDATED

    def test_refresh_deleted_directory(self, store, events):
        created = store.create(_record(), _artifacts())
        import shutil

        shutil.rmtree(store.directory(created.cert_id))
        assert store.refresh("app") is None
        assert events[-1].kind == StoreEventKind.DELETED

    def test_refresh_adopts_new_directory(self, store, events):
        directory = store.root / "dropped"
        directory.mkdir()
        (directory / "dropped.crt").write_bytes(_artifacts()[ArtifactForm.CRT])
        record = store.refresh("dropped")
        assert record is not None
        assert events[-1].kind == StoreEventKind.CREATED


class TestSaveAndDelete:
    def test_save_publishes_previous(self, store, events):
        created = store.create(_record(), _artifacts())
        saved = store.save(replace(created, description="new"), previous=created)
        assert saved.description == "new"
        assert events[-1].kind == StoreEventKind.UPDATED
        assert events[-1].previous is created

    def test_save_of_deleted_certificate(self, store):
        created = store.create(_record(), _artifacts())
        store.delete(created)
        with pytest.raises(CertProblem) as exc_info:
            store.save(created)
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_delete_removes_directory(self, store, events):
        created = store.create(_record(), _artifacts())
        store.delete(created)
        assert not store.directory("app").exists()
        assert events[-1].kind == StoreEventKind.DELETED
        assert events[-1].record is None

    def test_events_are_sequenced(self, store, events):
        created = store.create(_record(), _artifacts())
        store.save(created)
        assert [e.sequence for e in events] == [1, 2]


class TestLocking:
    def test_busy_certificate_is_transient(self, store):
        store.create(_record(), _artifacts())
        held = threading.Event()
        release = threading.Event()

        def hold():
            with store.lock("app"):
                held.set()
                release.wait(5)

        t = threading.Thread(target=hold)
        t.start()
        held.wait(5)
        try:
            with pytest.raises(CertProblem) as exc_info:
                with store.lock("app", timeout=0.05):
                    pass
            assert exc_info.value.kind == ErrorKind.TRANSIENT
        finally:
            release.set()
            t.join()

    def test_lock_is_reentrant(self, store):
        created = store.create(_record(), _artifacts())
        with store.lock("app"):
            store.save(created)


class TestDerive:
    def test_derive_fullchain_without_key(self, store):
        created = store.create(_record(), _artifacts())
        data = store.derive(created, ArtifactForm.FULLCHAIN)
        assert data.startswith(b"-----BEGIN CERTIFICATE-----")
        assert store.load("app").paths["fullchain"].endswith("app.fullchain.pem")

    def test_derive_p12_needs_password(self, store):
        created = store.create(_record(), _artifacts())
        with pytest.raises(CertProblem) as exc_info:
            store.derive(created, ArtifactForm.P12)
        assert exc_info.value.kind == ErrorKind.PASSPHRASE_REQUIRED

    def test_derive_p12_with_encrypted_key(self, store):
        created = store.create(_record(), _artifacts(passphrase="pw"))
        store.derive(created, ArtifactForm.P12, key_passphrase="pw")
        path = store.load("app").paths["p12"]
        assert stat.S_IMODE(os.stat(path).st_mode) == 0o600


class TestSnapshots:
    def test_version_snapshot(self, store):
        created = store.create(_record(), _artifacts())
        saved, entry = store.snapshot(created, SnapshotType.VERSION, "Before renewal")
        assert entry.snapshot_id == "v0001"
        assert entry.fingerprint == created.fingerprint
        assert set(entry.archived_paths) == {"crt", "key", "csr"}
        assert saved.archive_counter == 1
        assert saved.version_history == (entry,)
        meta = json.loads(
            (store.directory("app") / "archive" / "v0001" / "snapshot.json").read_text(),
        )
        assert meta["basename"] == "app"

    def test_ids_keep_counting_across_types(self, store):
        created = store.create(_record(), _artifacts())
        saved, _ = store.snapshot(created, SnapshotType.VERSION)
        saved, entry = store.snapshot(saved, SnapshotType.BACKUP, "manual")
        assert entry.snapshot_id == "b0002"
        assert saved.backups == (entry,)

    def test_existing_snapshot_directory_is_not_reused(self, store):
        created = store.create(_record(), _artifacts())
        (store.directory("app") / "archive" / "v0001").mkdir(parents=True)
        with pytest.raises(CertProblem) as exc_info:
            store.snapshot(created, SnapshotType.VERSION)
        assert exc_info.value.kind == ErrorKind.ARCHIVE_FAILED

    def test_restore_files(self, store):
        created = store.create(_record(), _artifacts())
        saved, entry = store.snapshot(created, SnapshotType.BACKUP)
        original_crt = store.read_artifact(saved, ArtifactForm.CRT)
        store.write_artifacts(saved, _artifacts())
        store.derive(saved, ArtifactForm.DER)
        store.restore_files(saved, entry)
        assert store.read_artifact(saved, ArtifactForm.CRT) == original_crt
        assert "der" not in store.load("app").paths

    def test_remove_snapshot(self, store):
        created = store.create(_record(), _artifacts())
        saved, entry = store.snapshot(created, SnapshotType.BACKUP)
        updated = store.remove_snapshot(saved, entry.snapshot_id)
        assert updated.backups == ()
        assert not (store.directory("app") / "archive" / entry.snapshot_id).exists()

    def test_remove_unknown_snapshot(self, store):
        created = store.create(_record(), _artifacts())
        with pytest.raises(CertProblem) as exc_info:
            store.remove_snapshot(created, "v0099")
        assert exc_info.value.kind == ErrorKind.NOT_FOUND

    def test_prune_versions_keeps_backups(self, store):
        created = store.create(_record(), _artifacts())
        saved, version = store.snapshot(created, SnapshotType.VERSION)
        saved, backup = store.snapshot(saved, SnapshotType.BACKUP)
        pruned = store.prune_versions(saved, utcnow() + timedelta(seconds=1))
        assert pruned.version_history == ()
        assert pruned.backups == (backup,)

    def test_prune_nothing_stale(self, store):
        created = store.create(_record(), _artifacts())
        saved, _ = store.snapshot(created, SnapshotType.VERSION)
        assert store.prune_versions(saved, utcnow() - timedelta(days=1)) is saved

    def test_zip_current_and_snapshot(self, store):
        created = store.create(_record(), _artifacts())
        saved, entry = store.snapshot(created, SnapshotType.BACKUP)
        current = zipfile.ZipFile(io.BytesIO(store.zip_files(saved)))
        assert sorted(current.namelist()) == ["app.crt", "app.csr", "app.key"]
        archived = zipfile.ZipFile(io.BytesIO(store.zip_files(saved, entry.snapshot_id)))
        assert sorted(archived.namelist()) == ["app.crt", "app.csr", "app.key"]

    def test_zip_unknown_snapshot(self, store):
        created = store.create(_record(), _artifacts())
        with pytest.raises(CertProblem):
            store.zip_files(created, "b0042")
