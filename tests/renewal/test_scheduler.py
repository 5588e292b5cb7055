"""Tests for certkeeper.renewal.scheduler."""

from __future__ import annotations

import json
from dataclasses import replace
from datetime import UTC, datetime, timedelta
from unittest.mock import MagicMock

import pytest

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.config import build_settings
from certkeeper.core.types import RenewalTrigger
from certkeeper.renewal import RenewalScheduler
from certkeeper.renewal.engine import SweepResult
from certkeeper.renewal.scheduler import next_run_after, validate_schedule

NOW = datetime(2026, 3, 10, 15, 30, tzinfo=UTC)


class _Clock:
    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture()
def engine():
    eng = MagicMock()
    eng.settings = build_settings({}).renewal

    def _update(settings):
        eng.settings = settings

    eng.update_settings.side_effect = _update
    eng.sweep.return_value = SweepResult(
        trigger=RenewalTrigger.SCHEDULE,
        started_at=NOW,
        finished_at=NOW,
        candidates=2,
        renewed=["a"],
        failed={"b": "Internal: boom"},
    )
    return eng


@pytest.fixture()
def clock():
    return _Clock(NOW)


@pytest.fixture()
def state_file(tmp_path):
    return tmp_path / "scheduler.json"


@pytest.fixture()
def scheduler(engine, state_file, clock):
    return RenewalScheduler(engine, state_file, clock=clock)


class TestValidateSchedule:
    def test_normalises_whitespace(self):
        assert validate_schedule("  0  3 * *   * ") == "0 3 * * *"

    @pytest.mark.parametrize("expr", ["", "every day", "0 0 * *", "0 0 0 * * *", "61 0 * * *"])
    def test_rejected(self, expr):
        with pytest.raises(CertProblem) as exc_info:
            validate_schedule(expr)
        assert exc_info.value.kind == ErrorKind.INVALID_SCHEDULE
        assert exc_info.value.public_kind == ErrorKind.INVALID_INPUT

    def test_next_run_strictly_after(self):
        first = next_run_after("*/5 * * * *", NOW)
        assert first > NOW
        assert first - NOW <= timedelta(minutes=5)
        assert first.tzinfo is not None


class TestTick:
    def test_not_due_yet(self, scheduler, engine):
        assert not scheduler.tick(scheduler.next_run - timedelta(seconds=1))
        engine.sweep.assert_not_called()

    def test_missed_instants_collapse_into_one_sweep(self, scheduler, engine):
        late = scheduler.next_run + timedelta(days=3, hours=1)
        assert scheduler.tick(late)
        engine.sweep.assert_called_once_with(RenewalTrigger.SCHEDULE)
        assert scheduler.next_run > late
        assert not scheduler.tick(late)

    def test_disabled_never_runs(self, scheduler, engine):
        scheduler.update_settings({"enabled": False})
        assert scheduler.next_run is None
        assert not scheduler.tick(NOW + timedelta(days=30))
        engine.sweep.assert_not_called()

    def test_result_recorded(self, scheduler, state_file):
        scheduler.tick(scheduler.next_run)
        status = scheduler.status()
        assert status["lastRun"] == NOW.isoformat()
        assert status["lastResult"] == {"candidates": 2, "renewed": 1, "failed": 1}
        saved = json.loads(state_file.read_text(encoding="utf-8"))
        assert saved["lastResult"]["renewed"] == 1

    def test_coalesced_sweep_not_recorded(self, scheduler, engine):
        engine.sweep.return_value = None
        assert scheduler.tick(scheduler.next_run)
        assert scheduler.status()["lastRun"] is None


class TestSettings:
    def test_update_and_status(self, scheduler, engine, clock):
        status = scheduler.update_settings(
            {"schedule": "30 2 * * *", "renewBeforeDays": 14, "includeIdleDomainsOnRenewal": False},
        )
        assert engine.settings.schedule == "30 2 * * *"
        assert engine.settings.renew_before_days == 14
        assert status["schedule"] == "30 2 * * *"
        assert status["renewBeforeDays"] == 14
        assert status["includeIdleDomainsOnRenewal"] is False
        assert status["nextRun"] == next_run_after("30 2 * * *", clock.now).isoformat()

    def test_invalid_schedule_leaves_settings(self, scheduler, engine):
        with pytest.raises(CertProblem):
            scheduler.update_settings({"schedule": "whenever"})
        assert engine.settings.schedule == "0 0 * * *"

    @pytest.mark.parametrize(
        "body",
        [{"enabled": "yes"}, {"renewBeforeDays": -1}, {"renewBeforeDays": True}],
    )
    def test_invalid_values(self, scheduler, body):
        with pytest.raises(CertProblem) as exc_info:
            scheduler.update_settings(body)
        assert exc_info.value.kind == ErrorKind.INVALID_INPUT

    def test_settings_survive_restart(self, scheduler, engine, state_file, clock):
        scheduler.update_settings({"schedule": "15 4 * * 1", "enabled": True})
        fresh = MagicMock()
        fresh.settings = build_settings({}).renewal
        fresh.update_settings.side_effect = lambda s: setattr(fresh, "settings", s)
        RenewalScheduler(fresh, state_file, clock=clock)
        assert fresh.settings.schedule == "15 4 * * 1"

    def test_bad_persisted_settings_ignored(self, engine, state_file, clock):
        state_file.write_text(json.dumps({"settings": {"schedule": "nope"}}), encoding="utf-8")
        RenewalScheduler(engine, state_file, clock=clock)
        assert engine.settings.schedule == "0 0 * * *"


class TestRunNow:
    def test_wait_returns_result(self, scheduler, engine):
        result = scheduler.run_now(wait=True)
        assert result is engine.sweep.return_value
        engine.sweep.assert_called_once_with(RenewalTrigger.API)

    def test_status_flags(self, scheduler):
        status = scheduler.status()
        assert status["running"] is False
        assert status["sweepInProgress"] is False
        assert status["enabled"] is True

    def test_start_stop(self, engine, state_file, clock):
        engine.settings = replace(engine.settings, enabled=False)
        sched = RenewalScheduler(engine, state_file, clock=clock)
        sched.start()
        assert sched.running
        sched.stop()
        assert not sched.running
