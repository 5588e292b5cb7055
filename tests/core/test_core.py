"""Tests for certkeeper.core: expiry arithmetic, state machine, locks and file helpers."""

from __future__ import annotations

import json
import threading
from datetime import UTC, datetime, timedelta

import pytest

from certkeeper.core.expiry import days_until_expiry, is_due, renewal_due_at, status_for
from certkeeper.core.fs import atomic_write_bytes, atomic_write_json, read_json
from certkeeper.core.locks import KeyedLocks, ReadWriteLock
from certkeeper.core.state import RENEWAL_TRANSITIONS, assert_transition
from certkeeper.core.types import CertStatus, CertType, RenewalState

NOW = datetime(2026, 6, 1, 12, 0, tzinfo=UTC)


class TestExpiry:
    def test_due_exactly_at_boundary(self):
        valid_to = NOW + timedelta(days=30)
        assert renewal_due_at(valid_to, 30) == NOW
        assert is_due(valid_to, 30, NOW)
        assert not is_due(valid_to, 30, NOW - timedelta(seconds=1))

    def test_status_valid(self):
        assert status_for(NOW + timedelta(days=60), 30, NOW) == CertStatus.VALID

    def test_status_expiring_soon(self):
        assert status_for(NOW + timedelta(days=10), 30, NOW) == CertStatus.EXPIRING_SOON

    def test_status_expired_at_valid_to(self):
        assert status_for(NOW, 30, NOW) == CertStatus.EXPIRED

    def test_status_unknown_without_date(self):
        assert status_for(None, 30, NOW) == CertStatus.UNKNOWN

    def test_days_until_expiry(self):
        assert days_until_expiry(NOW + timedelta(days=5), NOW) == 5
        assert days_until_expiry(NOW - timedelta(days=2), NOW) == -2


class TestStateMachine:
    def test_happy_path_is_allowed(self):
        path = [
            RenewalState.IDLE,
            RenewalState.PREFLIGHT,
            RenewalState.PASSPHRASE_RESOLUTION,
            RenewalState.ISSUANCE,
            RenewalState.ARCHIVE,
            RenewalState.MATERIALIZE,
            RenewalState.PUBLISH,
            RenewalState.IDLE,
        ]
        for current, target in zip(path, path[1:], strict=False):
            assert_transition(current, target)

    def test_failures_after_issuance_go_through_rollback(self):
        for state in (RenewalState.ISSUANCE, RenewalState.ARCHIVE, RenewalState.MATERIALIZE):
            assert RenewalState.ROLLBACK in RENEWAL_TRANSITIONS[state]
            assert RenewalState.FAILED not in RENEWAL_TRANSITIONS[state]

    def test_invalid_transition(self):
        with pytest.raises(ValueError, match="Invalid transition"):
            assert_transition(RenewalState.IDLE, RenewalState.PUBLISH)

    def test_needs_passphrase_returns_to_idle(self):
        assert_transition(RenewalState.NEEDS_PASSPHRASE, RenewalState.IDLE)
        with pytest.raises(ValueError):
            assert_transition(RenewalState.NEEDS_PASSPHRASE, RenewalState.ISSUANCE)

    def test_every_state_has_an_entry(self):
        assert set(RENEWAL_TRANSITIONS) == set(RenewalState)


class TestTypes:
    def test_is_ca(self):
        assert CertType.ROOT_CA.is_ca
        assert CertType.INTERMEDIATE_CA.is_ca
        assert not CertType.STANDARD.is_ca


class TestLocks:
    def test_keyed_locks_are_reentrant(self):
        locks = KeyedLocks()
        with locks.hold("a"), locks.hold("a"):
            pass

    def test_keyed_lock_timeout(self):
        locks = KeyedLocks()
        held = threading.Event()
        release = threading.Event()

        def holder():
            with locks.hold("a"):
                held.set()
                release.wait(5)

        t = threading.Thread(target=holder)
        t.start()
        try:
            held.wait(5)
            with pytest.raises(TimeoutError, match="lock on a"), locks.hold("a", timeout=0.05):
                pass
            with locks.hold("b", timeout=0.05):
                pass
        finally:
            release.set()
            t.join()

    def test_same_key_same_lock(self):
        locks = KeyedLocks()
        assert locks.get("x") is locks.get("x")
        locks.discard("x")
        locks.discard("x")

    def test_readers_share(self):
        lock = ReadWriteLock()
        with lock.read(), lock.read():
            pass

    def test_writer_excludes_readers(self):
        lock = ReadWriteLock()
        order: list[str] = []
        entered = threading.Event()

        def reader():
            entered.set()
            with lock.read():
                order.append("read")

        with lock.write():
            t = threading.Thread(target=reader)
            t.start()
            entered.wait(5)
            order.append("write")
        t.join(5)
        assert order == ["write", "read"]


class TestFs:
    def test_atomic_write_json_round_trip(self, tmp_path):
        path = tmp_path / "nested" / "data.json"
        atomic_write_json(path, {"a": 1})
        assert read_json(path) == {"a": 1}
        assert json.loads(path.read_text(encoding="utf-8")) == {"a": 1}

    def test_no_temp_files_left(self, tmp_path):
        atomic_write_bytes(tmp_path / "f.bin", b"data", mode=0o600)
        assert [p.name for p in tmp_path.iterdir()] == ["f.bin"]

    def test_read_json_default(self, tmp_path):
        assert read_json(tmp_path / "missing.json", default={}) == {}
