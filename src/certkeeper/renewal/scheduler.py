"""Cron-driven renewal sweeps.

Daemon thread that runs :meth:`RenewalEngine.sweep` at the instants of
a five-field cron expression, evaluated in the server's local time.
When the process pauses across one or more scheduled instants the
missed sweeps collapse into a single run and the next instant is
computed from the current time.

Settings changed over the API, and the outcome of the last sweep,
are persisted to a small JSON state file so they survive restarts.

Usage::

    scheduler = RenewalScheduler(engine, state_file)
    scheduler.start()
    ...
    scheduler.stop()
"""

from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any

from croniter import croniter

from certkeeper.app.errors import CertProblem, ErrorKind
from certkeeper.core.expiry import utcnow
from certkeeper.core.fs import atomic_write_json, read_json
from certkeeper.core.types import RenewalTrigger

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from certkeeper.renewal.engine import RenewalEngine, SweepResult

log = logging.getLogger(__name__)

# Upper bound on one sleep so clock jumps are noticed
_MAX_SLEEP_SECONDS = 60.0
_CRON_FIELDS = 5


def validate_schedule(expression: str) -> str:
    """Return the normalised cron *expression* or raise ``InvalidSchedule``."""
    expr = " ".join(str(expression or "").split())
    if len(expr.split()) != _CRON_FIELDS or not croniter.is_valid(expr):
        raise CertProblem(
            ErrorKind.INVALID_SCHEDULE,
            f"'{expression}' is not a valid five-field cron expression",
        )
    return expr


def next_run_after(expression: str, after: datetime) -> datetime:
    """The first instant of *expression* strictly after *after*, in UTC."""
    base = after.astimezone()
    return croniter(expression, base).get_next(datetime).astimezone(UTC)


class RenewalScheduler:
    """Runs renewal sweeps on a cron schedule.

    Parameters
    ----------
    engine:
        The renewal engine; its settings hold ``enabled`` and ``schedule``.
    state_file:
        JSON file persisting settings overrides and the last result.
    clock:
        Returns the current UTC time; replaced in tests.

    """

    def __init__(
        self,
        engine: RenewalEngine,
        state_file: str | Path,
        *,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._engine = engine
        self._state_file = state_file
        self._clock = clock
        self._stop_event = threading.Event()
        self._wake = threading.Event()
        self._thread: threading.Thread | None = None
        self._lock = threading.Lock()
        self._last_run: datetime | None = None
        self._last_result: dict[str, Any] | None = None
        self._running_sweep = False
        self._load_state()
        self._next_run = self._compute_next(self._clock())

    # -- persisted state ----------------------------------------------------

    def _load_state(self) -> None:
        state = read_json(self._state_file, default={}) or {}
        overrides = state.get("settings") or {}
        if overrides:
            try:
                self._engine.update_settings(self._apply(overrides))
            except CertProblem as exc:
                log.warning("Ignoring persisted scheduler settings: %s", exc.detail)
        if state.get("lastRun"):
            self._last_run = datetime.fromisoformat(state["lastRun"])
        self._last_result = state.get("lastResult")

    def _save_state(self) -> None:
        settings = self._engine.settings
        atomic_write_json(
            self._state_file,
            {
                "settings": {
                    "enabled": settings.enabled,
                    "schedule": settings.schedule,
                    "renewBeforeDays": settings.renew_before_days,
                    "includeIdleDomainsOnRenewal": settings.include_idle_on_renewal,
                },
                "lastRun": self._last_run.isoformat() if self._last_run else None,
                "lastResult": self._last_result,
            },
        )

    # -- settings -----------------------------------------------------------

    def _apply(self, data: dict[str, Any]):
        settings = self._engine.settings
        changes: dict[str, Any] = {}
        if "enabled" in data:
            if not isinstance(data["enabled"], bool):
                raise CertProblem(ErrorKind.INVALID_INPUT, "enabled must be a boolean")
            changes["enabled"] = data["enabled"]
        if "schedule" in data:
            changes["schedule"] = validate_schedule(data["schedule"])
        if "renewBeforeDays" in data:
            days = data["renewBeforeDays"]
            if isinstance(days, bool) or not isinstance(days, int) or days < 0:
                raise CertProblem(
                    ErrorKind.INVALID_INPUT,
                    "renewBeforeDays must be a non-negative integer",
                )
            changes["renew_before_days"] = days
        if "includeIdleDomainsOnRenewal" in data:
            if not isinstance(data["includeIdleDomainsOnRenewal"], bool):
                raise CertProblem(
                    ErrorKind.INVALID_INPUT,
                    "includeIdleDomainsOnRenewal must be a boolean",
                )
            changes["include_idle_on_renewal"] = data["includeIdleDomainsOnRenewal"]
        return replace(settings, **changes)

    def update_settings(self, data: dict[str, Any]) -> dict[str, Any]:
        """Validate and apply scheduler settings; returns the new status."""
        new = self._apply(data)
        with self._lock:
            self._engine.update_settings(new)
            self._next_run = self._compute_next(self._clock())
            self._save_state()
        log.info(
            "Scheduler settings updated (enabled=%s, schedule=%r, renew_before_days=%d)",
            new.enabled,
            new.schedule,
            new.renew_before_days,
        )
        self._wake.set()
        return self.status()

    def _compute_next(self, now: datetime) -> datetime | None:
        settings = self._engine.settings
        if not settings.enabled:
            return None
        return next_run_after(settings.schedule, now)

    # -- status -------------------------------------------------------------

    @property
    def running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    @property
    def next_run(self) -> datetime | None:
        return self._next_run

    def status(self) -> dict[str, Any]:
        settings = self._engine.settings
        return {
            "running": self.running,
            "sweepInProgress": self._running_sweep,
            "enabled": settings.enabled,
            "schedule": settings.schedule,
            "renewBeforeDays": settings.renew_before_days,
            "includeIdleDomainsOnRenewal": settings.include_idle_on_renewal,
            "nextRun": self._next_run.isoformat() if self._next_run else None,
            "lastRun": self._last_run.isoformat() if self._last_run else None,
            "lastResult": self._last_result,
        }

    # -- running sweeps -----------------------------------------------------

    def _sweep(self, trigger: RenewalTrigger) -> SweepResult | None:
        self._running_sweep = True
        try:
            result = self._engine.sweep(trigger)
        finally:
            self._running_sweep = False
        if result is not None:
            with self._lock:
                self._last_run = result.started_at
                self._last_result = {
                    "candidates": result.candidates,
                    "renewed": len(result.renewed),
                    "failed": len(result.failed),
                }
                self._save_state()
        return result

    def tick(self, now: datetime | None = None) -> bool:
        """Run the sweep if its instant has passed; returns whether it ran.

        However many instants were missed, one sweep runs and the next
        instant is computed from *now*.
        """
        now = now or self._clock()
        with self._lock:
            due = self._next_run is not None and now >= self._next_run
            if due:
                self._next_run = self._compute_next(now)
        if due:
            self._sweep(RenewalTrigger.SCHEDULE)
        return due

    def run_now(self, *, wait: bool = False) -> SweepResult | None:
        """Start an immediate sweep, in the background unless *wait*."""
        if wait:
            return self._sweep(RenewalTrigger.API)
        threading.Thread(
            target=self._sweep,
            args=(RenewalTrigger.API,),
            name="renewal-sweep",
            daemon=True,
        ).start()
        return None

    # -- thread -------------------------------------------------------------

    def start(self) -> None:
        """Start the scheduler thread."""
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._run, name="renewal-scheduler", daemon=True)
        self._thread.start()
        log.info(
            "Renewal scheduler started (schedule=%r, next run %s)",
            self._engine.settings.schedule,
            self._next_run.isoformat() if self._next_run else "never",
        )

    def stop(self) -> None:
        """Signal the scheduler to stop and wait for it."""
        self._stop_event.set()
        self._wake.set()
        if self._thread is not None:
            self._thread.join(timeout=_MAX_SLEEP_SECONDS)
            log.info("Renewal scheduler stopped")

    def _run(self) -> None:
        consecutive_failures = 0
        while not self._stop_event.is_set():
            try:
                self.tick()
                consecutive_failures = 0
            except Exception:
                consecutive_failures += 1
                log.exception(
                    "Scheduled renewal sweep failed (consecutive: %d)",
                    consecutive_failures,
                )
                self._stop_event.wait(timeout=min(5 * 2**consecutive_failures, 300))
                continue
            self._wake.wait(timeout=self._sleep_seconds())
            self._wake.clear()

    def _sleep_seconds(self) -> float:
        if self._next_run is None:
            return _MAX_SLEEP_SECONDS
        remaining = (self._next_run - self._clock()).total_seconds()
        return max(0.0, min(remaining, _MAX_SLEEP_SECONDS))
